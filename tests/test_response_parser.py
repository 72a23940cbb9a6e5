from itertools import permutations

import pytest

from response_parser import (
    canonicalize_tags,
    check_summary_quality,
    coerce_exclude,
    extract_json_object,
    sanitize_summary,
)


def test_extract_json_object_ignores_wrapping_text_and_fences() -> None:
    text = 'Sure! Here you go:\n```json\n{"summary": "A. B.", "topics": ["Obesity"]}\n```\nHope this helps.'
    assert extract_json_object(text) == {"summary": "A. B.", "topics": ["Obesity"]}


def test_extract_json_object_handles_braces_inside_strings() -> None:
    text = 'prefix {"summary": "uses {curly} and \\"quoted\\" text", "nested": {"a": [1, {"b": 2}]}} suffix'
    parsed = extract_json_object(text)
    assert parsed == {"summary": 'uses {curly} and "quoted" text', "nested": {"a": [1, {"b": 2}]}}


def test_extract_json_object_resumes_after_undecodable_span() -> None:
    text = 'Template: {summary: ...} Answer: {"summary": "Real one."}'
    assert extract_json_object(text) == {"summary": "Real one."}


def test_extract_json_object_returns_none_without_object() -> None:
    assert extract_json_object("no structured data here") is None
    assert extract_json_object('{"unterminated": "value"') is None
    assert extract_json_object("") is None


def test_sanitize_summary_truncates_to_three_sentences() -> None:
    assert sanitize_summary("X. Y. Z. W.", "Title") == "X. Y. Z."


def test_sanitize_summary_drops_headings_title_and_markdown() -> None:
    raw = (
        "## Lay summary\n"
        "Effects of Salt on Blood Pressure\n"
        "**Summary:** Researchers studied *salt* intake in 500 adults.\n"
        "Key findings:\n"
        "- Lower salt reduced blood pressure!\n"
    )
    cleaned = sanitize_summary(raw, "Effects of salt on blood pressure.")
    assert cleaned == "Researchers studied salt intake in 500 adults. Lower salt reduced blood pressure!"


def test_sanitize_summary_strips_code_fences() -> None:
    assert sanitize_summary("```\nPlain text here.\n```", None) == "Plain text here."


def test_quality_rejects_empty_and_unbalanced() -> None:
    assert check_summary_quality("") is not None
    assert check_summary_quality("The result (p<0.05 was strong.") is not None
    assert check_summary_quality("A list] of things.") is not None
    assert check_summary_quality("X. Y. Z.") is None


def test_strict_quality_rejects_short_and_corrupted_text() -> None:
    assert check_summary_quality("Too short.", strict=True) is not None
    assert check_summary_quality("12345 67890 12345 67890 12 %%", strict=True) == "low letter density"
    garbled = "Résumé " + "ü" * 12 + " of the study outcome in adults."
    assert "non-ASCII" in check_summary_quality(garbled, strict=True)
    assert check_summary_quality("Researchers found that lower salt intake reduced blood pressure.", strict=True) is None


def test_canonicalize_routes_every_permutation() -> None:
    tags = ["hemodialysis", "OBSERVATIONAL STUDY", "Machine Learning / AI", "Astrophysics"]
    for order in permutations(tags):
        routed = canonicalize_tags(list(order))
        assert routed == {
            "topics": ["Hemodialysis"],
            "study_design": ["Observational Study"],
            "methodological_focus": ["Machine Learning / AI"],
        }


def test_canonicalize_repairs_misplaced_tags_and_dedupes() -> None:
    routed = canonicalize_tags(
        ["Pragmatic Trial", "Obesity"],
        ["obesity", "Narrative Review"],
        "Hypertension",
    )
    assert routed == {
        "topics": ["Obesity", "Hypertension"],
        "study_design": ["Narrative Review"],
        "methodological_focus": ["Pragmatic Trial"],
    }


def test_canonicalize_tolerates_garbage_input() -> None:
    routed = canonicalize_tags(None, 42, [None, "", "Unknown"])
    assert routed == {"topics": [], "study_design": [], "methodological_focus": []}


@pytest.mark.parametrize(
    ("value", "expected"),
    [(True, True), ("true", True), (" TRUE ", True), (False, False), ("false", False), ("yes", False), (1, False), (None, False)],
)
def test_coerce_exclude(value, expected) -> None:
    assert coerce_exclude(value) is expected
