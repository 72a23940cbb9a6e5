"""Closed classification vocabularies and the default enrichment prompts."""

from __future__ import annotations

TOPICS: tuple[str, ...] = (
    "Perioperative and Surgery",
    "Hemodialysis",
    "Dialysis Vascular Access",
    "Peritoneal Dialysis",
    "Genetic Kidney Disease",
    "Kidney Transplantation",
    "Drug Safety",
    "Drug Dosing and Metabolism",
    "Acute Kidney Injury",
    "Glomerular Disease",
    "Diabetes and Metabolism",
    "Chronic Kidney Disease",
    "Obesity",
    "Hypertension",
    "Cardiovascular Disease",
    "Bone Health",
    "Kidney Disease in Cancer",
    "Health Systems",
    "Remote Monitoring and Care",
    "Clinical Decision Support",
    "Education",
    "Research Ethics",
)

STUDY_DESIGNS: tuple[str, ...] = (
    "Interventional Study",
    "Observational Study",
    "Systematic Evidence Synthesis",
    "Narrative Review",
    "Clinical Practice Guideline",
    "Qualitative Study",
    "Case Report / Case Series",
    "Commentary / Editorial",
)

METHODOLOGICAL_FOCUS: tuple[str, ...] = (
    "Pragmatic Trial",
    "Innovation in Study Design or Analysis",
    "Research Automation",
    "Health Economics",
    "Biomarker Development or Validation",
    "Diagnostic Accuracy",
    "Advanced Imaging",
    "Genomics / Genetic Testing",
    "Machine Learning / AI",
    "Administrative Data",
    "Survey Research",
    "Consensus Methods",
    "Patient-Reported Outcomes",
    "Risk Estimation and Prognosis",
    "Preclinical",
)

VOCABULARIES: dict[str, tuple[str, ...]] = {
    "topics": TOPICS,
    "study_design": STUDY_DESIGNS,
    "methodological_focus": METHODOLOGICAL_FOCUS,
}

DEFAULT_SYSTEM_PROMPT = """You write plain-language summaries of medical research for a general audience.
Be accurate but avoid jargon. Explain what was studied, what was found, and why it matters.
Keep summaries to 2-3 sentences."""


def _bullets(values: tuple[str, ...]) -> str:
    return "\n".join(f"- {value}" for value in values)


_TAXONOMY_BLOCK = f"""Topic categories (assign 1 or more):
{_bullets(TOPICS)}

Study design (assign 1 or more, select ALL that apply):
{_bullets(STUDY_DESIGNS)}

Methodological focus (assign 0 or more, only if central to the paper):
{_bullets(METHODOLOGICAL_FOCUS)}

Use only the exact tag names listed above. Set "exclude" to true for corrections or errata only."""

ENRICHMENT_INSTRUCTIONS = f"""Write a 2-3 sentence plain-language summary of the publication below and classify it.

{_TAXONOMY_BLOCK}

Respond ONLY with valid JSON following this schema. No prose, no markdown.
{{
  "summary": "<2-3 plain-language sentences>",
  "topics": [],
  "study_design": [],
  "methodological_focus": [],
  "exclude": false
}}"""

DEFAULT_CLASSIFICATION_PROMPT = f"""You are a research librarian classifying research publications.
Given a publication's title, abstract and lay summary (any may be missing), assign tags.

{_TAXONOMY_BLOCK}

Respond ONLY with valid JSON following this schema. No prose, no markdown.
{{
  "topics": [],
  "study_design": [],
  "methodological_focus": [],
  "exclude": false
}}"""
