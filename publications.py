"""Refresh orchestration: fetch across researchers, dedupe, enrich, write the shared cache."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any, Callable, Iterable

from doi_abstract import fetch_abstract_from_doi
from document_store import StoreError
from enrichment import EnrichmentOptions, classify_batch, enrich_batch, select_for_enrichment
from models import CacheDocument, CacheStats, Publication, Researcher
from pubmed_cache import CacheCoordinator, RefreshCancelledError, RefreshInProgressError
from pubmed_feed import fetch_publications
from settings import Settings

TOTAL_CAP = 5000
INCREMENTAL_MAX_NEW = 10
INCREMENTAL_MAX_UPDATED = 10
DOI_BACKFILL_LIMIT = 25

LOGGER = logging.getLogger(__name__)

Fetcher = Callable[[str, int], list[Publication]]


@dataclass(slots=True)
class RefreshStats:
    skipped: bool = False
    write_mode: str = "none"
    fetched: int = 0
    new: int = 0
    updated: int = 0
    enrichment_attempted: int = 0
    enriched: int = 0
    enrichment_failed: int = 0
    total_publications: int = 0
    total_with_summary: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class MaintenanceStats:
    attempted: int = 0
    generated: int = 0
    abstracts_backfilled: int = 0
    remaining: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PublicationListing:
    publications: list[Publication] = field(default_factory=list)
    provenance: dict[str, list[str]] = field(default_factory=dict)
    by_year: dict[str, list[Publication]] = field(default_factory=dict)
    years: list[str] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    generated_at: str | None = None
    refresh_in_progress: bool = False


def since_year(years_back: int, now: datetime | None = None) -> int:
    """First calendar year kept in the cache window."""
    return (now or datetime.now(UTC)).year - years_back


def build_cache_key(researchers: Iterable[Researcher], max_per_researcher: int, since: int) -> str:
    parts = sorted(
        ({"id": researcher.id, "query": researcher.query} for researcher in researchers),
        key=lambda part: part["id"],
    )
    return json.dumps(
        {"max": max_per_researcher, "researchers": parts, "window": {"mode": "since_year", "sinceYear": since}},
        sort_keys=True,
    )


def collect_publications(
    researchers: Iterable[Researcher],
    max_per_researcher: int,
    *,
    fetcher: Fetcher = fetch_publications,
    should_stop: Callable[[], bool] | None = None,
    since: int | None = None,
    total_cap: int = TOTAL_CAP,
) -> tuple[list[Publication], dict[str, set[str]]]:
    """Fetch every researcher's query and dedupe by PMID, accumulating provenance.

    A researcher whose fetch fails is logged and skipped. Records older than
    ``since`` (or without a year, when a window is given) are dropped.
    """
    publications: list[Publication] = []
    provenance: dict[str, set[str]] = {}
    seen: set[str] = set()

    for researcher in researchers:
        if not researcher.query:
            continue
        if len(publications) >= total_cap:
            LOGGER.warning("Publication cap of %s reached; remaining researchers skipped", total_cap)
            break
        if should_stop is not None and should_stop():
            raise RefreshCancelledError(f"Refresh cancelled before researcher {researcher.name or researcher.id}")

        try:
            items = fetcher(researcher.query, max_per_researcher)
        except Exception as exc:
            LOGGER.warning("PubMed fetch failed for researcher=%s: %s", researcher.name or researcher.id, exc)
            continue

        for pub in items:
            if len(publications) >= total_cap:
                break
            if not pub.pmid:
                continue
            provenance.setdefault(pub.pmid, set()).add(researcher.id)
            if pub.pmid not in seen:
                seen.add(pub.pmid)
                publications.append(pub)

    if since is not None:
        publications = [pub for pub in publications if pub.year is not None and pub.year >= since]
        kept = {pub.pmid for pub in publications}
        provenance = {pmid: ids for pmid, ids in provenance.items() if pmid in kept}

    LOGGER.info("Collected %s unique publications across researchers", len(publications))
    return publications, provenance


def refresh(
    researchers: list[Researcher],
    *,
    coordinator: CacheCoordinator,
    settings: Settings | None = None,
    options: EnrichmentOptions | None = None,
    fetcher: Fetcher | None = None,
    max_per_researcher: int | None = None,
    summaries_per_run: int | None = None,
    force: bool = False,
) -> RefreshStats:
    """Refresh the shared cache unless it is fresh for this researcher set.

    Raises RefreshInProgressError when another refresh holds the lock and
    RefreshCancelledError when the lock is cleared mid-run.
    """
    settings = settings or Settings.from_env()
    options = options or settings.enrichment_options()
    fetcher = fetcher or _settings_fetcher(settings)
    max_per_researcher = max_per_researcher or settings.pubmed_max_per_researcher
    if summaries_per_run is None:
        summaries_per_run = settings.llm_summaries_per_refresh

    since = since_year(settings.since_years_back)
    key = build_cache_key(researchers, max_per_researcher, since)
    current = coordinator.read()
    if not force and current is not None and current.cache_key == key and not coordinator.is_stale(current):
        LOGGER.info("Cache is fresh (generated %s); skipping refresh", current.generated_at)
        return RefreshStats(
            skipped=True,
            total_publications=len(current.publications),
            total_with_summary=current.stats.total_with_summary,
        )

    def locked(token: str) -> RefreshStats:
        return _refresh_locked(
            token,
            researchers,
            coordinator=coordinator,
            settings=settings,
            options=options,
            fetcher=fetcher,
            key=key,
            since=since,
            max_per_researcher=max_per_researcher,
            summaries_per_run=summaries_per_run,
        )

    return coordinator.with_lock(locked)


def _refresh_locked(
    token: str,
    researchers: list[Researcher],
    *,
    coordinator: CacheCoordinator,
    settings: Settings,
    options: EnrichmentOptions,
    fetcher: Fetcher,
    key: str,
    since: int,
    max_per_researcher: int,
    summaries_per_run: int | None,
) -> RefreshStats:
    should_stop = _lock_poller(coordinator, token)

    def check_cancelled(stage: str) -> None:
        if should_stop():
            raise RefreshCancelledError(f"Refresh cancelled ({stage})")

    check_cancelled("start")
    existing_doc = coordinator.read()
    existing = existing_doc.publications_by_pmid() if existing_doc else {}

    fetched, provenance = collect_publications(
        researchers,
        max_per_researcher,
        fetcher=fetcher,
        should_stop=should_stop,
        since=since,
    )
    check_cancelled("after fetch")

    merged = [_carry_over(pub, existing.get(pub.pmid)) for pub in fetched]
    new_pmids = {pub.pmid for pub in merged if pub.pmid not in existing}
    merged, backfilled = _backfill_abstracts(
        merged, only=new_pmids, limit=DOI_BACKFILL_LIMIT, should_stop=should_stop
    )

    stats = RefreshStats(fetched=len(fetched), new=len(new_pmids))
    results = {}
    if summaries_per_run != 0:
        stats.enrichment_attempted = len(select_for_enrichment(merged, max_items=summaries_per_run))
        if stats.enrichment_attempted:
            check_cancelled("before enrichment")
            results = enrich_batch(
                merged,
                options,
                width=settings.llm_concurrency,
                delay_seconds=settings.llm_batch_delay_seconds,
                max_items=summaries_per_run,
                should_stop=should_stop,
            )
        stats.enriched = len(results)
        stats.enrichment_failed = stats.enrichment_attempted - stats.enriched
    check_cancelled("before write")

    merged = [pub.with_enrichment(results[pub.pmid].to_enrichment()) if pub.pmid in results else pub for pub in merged]
    new = [pub for pub in merged if pub.pmid in new_pmids]
    updated = [pub for pub in merged if pub.pmid not in new_pmids and (pub.pmid in results or pub.pmid in backfilled)]
    stats.updated = len(updated)
    summary_model = options.model_label if results else None

    full_write = (
        existing_doc is None
        or existing_doc.cache_key != key
        or len(new) > INCREMENTAL_MAX_NEW
        or len(updated) > INCREMENTAL_MAX_UPDATED
    )
    if full_write:
        for pmid, ids in provenance.items():
            ids.update(existing_doc.provenance.get(pmid, set()) if existing_doc else set())
        coordinator.write(
            CacheDocument(
                cache_key=key,
                generated_at=coordinator.now_iso(),
                publications=merged,
                provenance=provenance,
                stats=CacheStats.compute(
                    merged,
                    summary_model or (existing_doc.stats.last_summary_model if existing_doc else None),
                ),
            )
        )
        stats.write_mode = "full"
    else:
        coordinator.write_incremental(new, updated, provenance, cache_key=key, summary_model=summary_model)
        stats.write_mode = "incremental" if new or updated else "touch"

    final = coordinator.read()
    if final is not None:
        stats.total_publications = len(final.publications)
        stats.total_with_summary = final.stats.total_with_summary

    LOGGER.info(
        "Refresh complete: fetched=%s new=%s updated=%s enriched=%s failed=%s write=%s",
        stats.fetched,
        stats.new,
        stats.updated,
        stats.enriched,
        stats.enrichment_failed,
        stats.write_mode,
    )
    return stats


def get_enriched_publications(
    researchers: list[Researcher],
    max_per_researcher: int | None = None,
    *,
    coordinator: CacheCoordinator,
    settings: Settings | None = None,
    **refresh_kwargs: Any,
) -> PublicationListing:
    """Listing for display: fresh cache if possible, otherwise whatever cache exists.

    Never raises. Excluded records are omitted.
    """
    try:
        settings = settings or Settings.from_env()
        max_per_researcher = max_per_researcher or settings.pubmed_max_per_researcher
        current = coordinator.read()
        key = build_cache_key(researchers, max_per_researcher, since_year(settings.since_years_back))
        if current is not None and current.cache_key == key and not coordinator.is_stale(current):
            return build_listing(current)

        try:
            refresh(
                researchers,
                coordinator=coordinator,
                settings=settings,
                max_per_researcher=max_per_researcher,
                **refresh_kwargs,
            )
        except RefreshInProgressError:
            LOGGER.info("Refresh already in progress; serving cached publications")
        except Exception:
            LOGGER.exception("Publication refresh failed; serving cached publications")

        latest = coordinator.read() or current
        return build_listing(latest) if latest is not None else PublicationListing()
    except Exception:
        LOGGER.exception("Could not load publications")
        return PublicationListing()


def generate_missing_enrichments(
    max_items: int = 5,
    *,
    coordinator: CacheCoordinator,
    settings: Settings | None = None,
    options: EnrichmentOptions | None = None,
) -> MaintenanceStats:
    """Fill in lay summaries for cached records that lack one, under the refresh lock."""
    settings = settings or Settings.from_env()
    options = options or settings.enrichment_options()

    def locked(token: str) -> MaintenanceStats:
        should_stop = _lock_poller(coordinator, token)
        doc = coordinator.read()
        if doc is None:
            return MaintenanceStats()

        missing = {pub.pmid for pub in doc.publications if not pub.enrichment.lay_summary}
        publications, backfilled = _backfill_abstracts(
            doc.publications, only=missing, limit=max_items, should_stop=should_stop
        )
        stats = MaintenanceStats(abstracts_backfilled=len(backfilled))
        stats.attempted = len(select_for_enrichment(publications, max_items=max_items))
        results = enrich_batch(
            publications,
            options,
            width=settings.llm_concurrency,
            delay_seconds=settings.llm_batch_delay_seconds,
            max_items=max_items,
            should_stop=should_stop,
        )
        stats.generated = len(results)

        changed = [
            pub.with_enrichment(results[pub.pmid].to_enrichment()) if pub.pmid in results else pub
            for pub in publications
            if pub.pmid in results or pub.pmid in backfilled
        ]
        if changed:
            coordinator.write_incremental(
                [], changed, {}, summary_model=options.model_label if results else None
            )
        stats.remaining = len(select_for_enrichment(publications)) - stats.generated
        LOGGER.info("Missing-summary pass: %s", stats.to_dict())
        return stats

    return coordinator.with_lock(locked)


def reclassify_publications(
    pmids: Iterable[str] | None = None,
    max_items: int | None = None,
    *,
    coordinator: CacheCoordinator,
    settings: Settings | None = None,
    options: EnrichmentOptions | None = None,
) -> MaintenanceStats:
    """Re-run classification for ``pmids``, or for every unclassified record."""
    settings = settings or Settings.from_env()
    options = options or settings.enrichment_options()
    wanted = {str(pmid) for pmid in pmids} if pmids is not None else None

    def locked(token: str) -> MaintenanceStats:
        doc = coordinator.read()
        if doc is None:
            return MaintenanceStats()

        if wanted is not None:
            targets = [pub for pub in doc.publications if pub.pmid in wanted]
        else:
            targets = [
                pub
                for pub in doc.publications
                if not pub.enrichment.has_classification and not pub.enrichment.exclude
            ]
        remaining = len(targets)
        if max_items is not None:
            targets = targets[: max(0, max_items)]

        results = classify_batch(
            targets,
            options,
            width=settings.llm_concurrency,
            delay_seconds=settings.llm_batch_delay_seconds,
            should_stop=_lock_poller(coordinator, token),
        )
        changed = [
            pub.with_enrichment(results[pub.pmid].apply_to(pub.enrichment))
            for pub in targets
            if pub.pmid in results
        ]
        if changed:
            coordinator.write_incremental([], changed, {})
        stats = MaintenanceStats(attempted=len(targets), generated=len(changed), remaining=remaining - len(changed))
        LOGGER.info("Reclassification pass: %s", stats.to_dict())
        return stats

    return coordinator.with_lock(locked)


def cancel_refresh(coordinator: CacheCoordinator) -> bool:
    return coordinator.request_cancel()


def find_researchers_for_publication(
    pub: Publication,
    researchers: Iterable[Researcher],
    provenance: dict[str, set[str]] | None = None,
) -> list[Researcher]:
    """Researchers credited with a record: provenance first, then author-surname match."""
    researchers = list(researchers)
    credited = (provenance or {}).get(pub.pmid) or set()
    matches = [researcher for researcher in researchers if researcher.id in credited]
    if matches or not pub.authors:
        return matches

    authors = [author.lower() for author in pub.authors]
    for researcher in researchers:
        name = researcher.name.strip().lower()
        if not name:
            continue
        surname = name.split()[-1]
        if any(name in author or surname in author for author in authors):
            matches.append(researcher)
    return matches


def build_listing(doc: CacheDocument) -> PublicationListing:
    visible = [pub for pub in doc.publications if not pub.enrichment.exclude]
    visible.sort(key=lambda pub: (pub.year or 0, pub.published_at or ""), reverse=True)

    by_year: dict[str, list[Publication]] = {}
    for pub in visible:
        by_year.setdefault(str(pub.year) if pub.year else "Unknown", []).append(pub)

    years = sorted((year for year in by_year if year != "Unknown"), key=int, reverse=True)
    if "Unknown" in by_year:
        years.append("Unknown")

    known_years = [pub.year for pub in visible if pub.year]
    visible_pmids = {pub.pmid for pub in visible}
    return PublicationListing(
        publications=visible,
        provenance={pmid: sorted(ids) for pmid, ids in doc.provenance.items() if pmid in visible_pmids},
        by_year=by_year,
        years=years,
        stats={
            "totalPublications": len(visible),
            "totalWithSummary": sum(1 for pub in visible if pub.enrichment.lay_summary),
            "yearsSpan": f"{min(known_years)}-{max(known_years)}" if known_years else None,
        },
        generated_at=doc.generated_at,
        refresh_in_progress=doc.refresh_in_progress,
    )


def _carry_over(pub: Publication, previous: Publication | None) -> Publication:
    if previous is None:
        return pub
    if not pub.abstract and previous.abstract:
        pub = pub.with_abstract(previous.abstract)
    return pub.with_enrichment(previous.enrichment)


def _backfill_abstracts(
    publications: list[Publication],
    *,
    only: set[str],
    limit: int,
    should_stop: Callable[[], bool] | None = None,
) -> tuple[list[Publication], set[str]]:
    """Fill empty abstracts from DOI landing pages for up to ``limit`` records in ``only``."""
    backfilled: set[str] = set()
    result: list[Publication] = []
    attempts = 0
    stopped = False
    for pub in publications:
        wanted = not stopped and attempts < limit and pub.pmid in only and not pub.abstract and bool(pub.doi)
        if wanted and should_stop is not None and should_stop():
            stopped, wanted = True, False
        if wanted:
            attempts += 1
            abstract = fetch_abstract_from_doi(pub.doi)
            if abstract:
                pub = pub.with_abstract(abstract)
                backfilled.add(pub.pmid)
        result.append(pub)
    if backfilled:
        LOGGER.info("Backfilled %s abstracts from DOI landing pages", len(backfilled))
    return result, backfilled


def _lock_poller(coordinator: CacheCoordinator, token: str) -> Callable[[], bool]:
    """Stop signal for work done under the lock; every poll that finds the lock still ours renews its heartbeat."""

    def should_stop() -> bool:
        if coordinator.is_cancel_requested(token):
            return True
        try:
            coordinator.touch_lock(token)
        except StoreError as exc:
            LOGGER.warning("Could not renew refresh lock heartbeat: %s", exc)
        return False

    return should_stop


def _settings_fetcher(settings: Settings) -> Fetcher:
    return partial(
        fetch_publications,
        api_key=settings.pubmed_api_key,
        timeout=settings.pubmed_timeout_seconds,
        retries=settings.pubmed_retries,
        backoff_seconds=settings.pubmed_backoff_seconds,
    )
