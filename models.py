"""Shared typed models for the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True, slots=True)
class Enrichment:
    """AI-generated lay summary and taxonomy tags attached to a publication."""

    lay_summary: str | None = None
    topics: list[str] = field(default_factory=list)
    study_design: list[str] = field(default_factory=list)
    methodological_focus: list[str] = field(default_factory=list)
    exclude: bool = False

    @property
    def has_classification(self) -> bool:
        return bool(self.topics or self.study_design or self.methodological_focus)

    def to_dict(self) -> dict[str, Any]:
        return {
            "laySummary": self.lay_summary,
            "topics": list(self.topics),
            "studyDesign": list(self.study_design),
            "methodologicalFocus": list(self.methodological_focus),
            "exclude": self.exclude,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Enrichment:
        return cls(
            lay_summary=data.get("laySummary") or None,
            topics=list(data.get("topics") or []),
            study_design=list(data.get("studyDesign") or []),
            methodological_focus=list(data.get("methodologicalFocus") or []),
            exclude=bool(data.get("exclude")),
        )


@dataclass(frozen=True, slots=True)
class Publication:
    """Normalized bibliographic record keyed by PMID."""

    pmid: str
    title: str
    authors: list[str] = field(default_factory=list)
    journal: str = ""
    year: int | None = None
    month: int | None = None
    month_name: str | None = None
    published_at: str | None = None
    abstract: str = ""
    doi: str | None = None
    url: str = ""
    volume: str = ""
    issue: str = ""
    pages: str = ""
    enrichment: Enrichment = field(default_factory=Enrichment)

    def with_enrichment(self, enrichment: Enrichment) -> Publication:
        return replace(self, enrichment=enrichment)

    def with_abstract(self, abstract: str) -> Publication:
        return replace(self, abstract=abstract)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the cache document's keyed array item shape."""
        return {
            "_key": self.pmid,
            "pmid": self.pmid,
            "title": self.title,
            "authors": list(self.authors),
            "journal": self.journal,
            "year": self.year,
            "month": self.month,
            "monthName": self.month_name,
            "publishedAt": self.published_at,
            "abstract": self.abstract,
            "doi": self.doi,
            "pubmedUrl": self.url,
            "volume": self.volume,
            "issue": self.issue,
            "pages": self.pages,
            **self.enrichment.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Publication:
        return cls(
            pmid=str(data.get("pmid") or data.get("_key") or ""),
            title=data.get("title") or "",
            authors=list(data.get("authors") or []),
            journal=data.get("journal") or "",
            year=_as_int(data.get("year")),
            month=_as_int(data.get("month")),
            month_name=data.get("monthName"),
            published_at=data.get("publishedAt"),
            abstract=data.get("abstract") or "",
            doi=data.get("doi") or None,
            url=data.get("pubmedUrl") or data.get("url") or "",
            volume=data.get("volume") or "",
            issue=data.get("issue") or "",
            pages=data.get("pages") or "",
            enrichment=Enrichment.from_dict(data),
        )


@dataclass(frozen=True, slots=True)
class Researcher:
    """Investigator whose PubMed query feeds the cache."""

    id: str
    name: str = ""
    query: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Researcher:
        return cls(
            id=str(data.get("id") or data.get("_id") or data.get("name") or ""),
            name=data.get("name") or "",
            query=(data.get("query") or data.get("pubmedQuery") or "").strip(),
        )


@dataclass(slots=True)
class CacheStats:
    total_publications: int = 0
    total_with_summary: int = 0
    last_summary_model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalPublications": self.total_publications,
            "totalWithSummary": self.total_with_summary,
            "lastSummaryModel": self.last_summary_model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CacheStats:
        data = data or {}
        return cls(
            total_publications=int(data.get("totalPublications") or 0),
            total_with_summary=int(data.get("totalWithSummary") or 0),
            last_summary_model=data.get("lastSummaryModel"),
        )

    @classmethod
    def compute(cls, publications: list[Publication], model: str | None = None) -> CacheStats:
        return cls(
            total_publications=len(publications),
            total_with_summary=sum(1 for p in publications if p.enrichment.lay_summary),
            last_summary_model=model,
        )


@dataclass(slots=True)
class CacheDocument:
    """The single persisted aggregate shared by every refresh and reader."""

    cache_key: str
    generated_at: str | None = None
    publications: list[Publication] = field(default_factory=list)
    provenance: dict[str, set[str]] = field(default_factory=dict)
    refresh_in_progress: bool = False
    refresh_started_at: str | None = None
    refresh_heartbeat_at: str | None = None
    stats: CacheStats = field(default_factory=CacheStats)
    revision: str | None = None

    def publications_by_pmid(self) -> dict[str, Publication]:
        return {pub.pmid: pub for pub in self.publications}

    def to_store_fields(self) -> dict[str, Any]:
        """Fields written on a full write (lock fields are left to the coordinator)."""
        return {
            "cacheKey": self.cache_key,
            "generatedAt": self.generated_at,
            "publications": [pub.to_dict() for pub in self.publications],
            "provenance": provenance_to_list(self.provenance),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_store(cls, doc: dict[str, Any]) -> CacheDocument:
        return cls(
            cache_key=doc.get("cacheKey") or "",
            generated_at=doc.get("generatedAt"),
            publications=[
                Publication.from_dict(item)
                for item in doc.get("publications") or []
                if isinstance(item, dict)
            ],
            provenance=provenance_from_list(doc.get("provenance")),
            refresh_in_progress=bool(doc.get("refreshInProgress")),
            refresh_started_at=doc.get("refreshStartedAt"),
            refresh_heartbeat_at=doc.get("refreshHeartbeatAt"),
            stats=CacheStats.from_dict(doc.get("stats")),
            revision=doc.get("_rev"),
        )


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def provenance_to_list(provenance: dict[str, set[str]]) -> list[dict[str, Any]]:
    return [
        {"_key": pmid, "pmid": pmid, "researcherIds": sorted(ids)}
        for pmid, ids in sorted(provenance.items())
    ]


def provenance_from_list(items: Any) -> dict[str, set[str]]:
    if isinstance(items, dict):
        return {str(pmid): set(ids or []) for pmid, ids in items.items()}
    provenance: dict[str, set[str]] = {}
    for item in items or []:
        if not isinstance(item, dict) or not item.get("pmid"):
            continue
        provenance.setdefault(str(item["pmid"]), set()).update(item.get("researcherIds") or [])
    return provenance
