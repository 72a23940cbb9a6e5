"""Shared publication cache document: staleness, refresh lock, full and incremental writes.

The refresh lock lives in the cache document itself (``refreshInProgress`` +
``refreshStartedAt``) and is taken with a revision-guarded write, so independent
processes exclude each other without a separate lock service. The
``refreshStartedAt`` value written at acquisition doubles as the holder's token.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Iterable, TypeVar

from document_store import RevisionConflictError, SanityDocumentStore, StoreError
from models import CacheDocument, CacheStats, Publication, provenance_to_list

DEFAULT_DOC_ID = "pubmedCache"
DEFAULT_LOCK_TTL = timedelta(minutes=2)
DEFAULT_MAX_AGE = timedelta(hours=24)
MAX_LOCK_ATTEMPTS = 5

_LOCK_CLEARED = {"refreshInProgress": False, "refreshStartedAt": None, "refreshHeartbeatAt": None}

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class RefreshInProgressError(RuntimeError):
    """Another refresh holds a fresh lock."""


class LockUnavailableError(RuntimeError):
    """Lock acquisition kept losing revision races."""


class RefreshCancelledError(RuntimeError):
    """The lock was cleared under a running refresh."""


class CacheCoordinator:
    def __init__(
        self,
        store: SanityDocumentStore,
        doc_id: str = DEFAULT_DOC_ID,
        lock_ttl: timedelta = DEFAULT_LOCK_TTL,
        max_age: timedelta = DEFAULT_MAX_AGE,
        max_lock_attempts: int = MAX_LOCK_ATTEMPTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.doc_id = doc_id
        self.lock_ttl = lock_ttl
        self.max_age = max_age
        self.max_lock_attempts = max_lock_attempts
        self._clock = clock or (lambda: datetime.now(UTC))

    def read(self) -> CacheDocument | None:
        """Current cache document, or None when missing or unreadable."""
        try:
            raw = self.store.get(self.doc_id)
        except (StoreError, ValueError) as exc:
            LOGGER.warning("Could not read cache document %s: %s", self.doc_id, exc)
            return None
        return CacheDocument.from_store(raw) if raw else None

    def is_stale(self, doc: CacheDocument | None) -> bool:
        if doc is None:
            return True
        generated_at = _parse_timestamp(doc.generated_at)
        if generated_at is None:
            return True
        return self._clock() - generated_at > self.max_age

    def is_lock_stale(self, doc: CacheDocument) -> bool:
        stamps = [
            ts
            for ts in (_parse_timestamp(doc.refresh_started_at), _parse_timestamp(doc.refresh_heartbeat_at))
            if ts is not None
        ]
        if not stamps:
            return True
        return self._clock() - max(stamps) > self.lock_ttl

    def is_locked(self, doc: CacheDocument | None) -> bool:
        return doc is not None and doc.refresh_in_progress and not self.is_lock_stale(doc)

    def acquire_lock(self) -> str:
        """Take the refresh lock and return its token.

        Raises RefreshInProgressError when a fresh lock is held and
        LockUnavailableError after ``max_lock_attempts`` lost races.
        """
        for attempt in range(1, self.max_lock_attempts + 1):
            raw = self.store.get(self.doc_id)
            token = self.now_iso()
            lock_fields = {"refreshInProgress": True, "refreshStartedAt": token, "refreshHeartbeatAt": None}

            if raw is None:
                try:
                    self.store.conditional_set(
                        self.doc_id,
                        {"cacheKey": "", "publications": [], "provenance": [], **lock_fields},
                        None,
                    )
                except RevisionConflictError:
                    LOGGER.info("Cache document created concurrently; retrying lock (attempt %s/%s)", attempt, self.max_lock_attempts)
                    continue
                LOGGER.info("Created cache document %s with refresh lock", self.doc_id)
                return token

            doc = CacheDocument.from_store(raw)
            if doc.refresh_in_progress:
                if not self.is_lock_stale(doc):
                    raise RefreshInProgressError(f"Refresh already in progress (started {doc.refresh_started_at})")
                LOGGER.warning("Clearing stale refresh lock started at %s", doc.refresh_started_at)

            try:
                self.store.conditional_set(self.doc_id, lock_fields, doc.revision)
            except RevisionConflictError:
                LOGGER.info("Lost refresh lock race on attempt %s/%s", attempt, self.max_lock_attempts)
                continue
            LOGGER.info("Acquired refresh lock on %s", self.doc_id)
            return token

        raise LockUnavailableError(f"Could not acquire refresh lock after {self.max_lock_attempts} attempts")

    def release_lock(self, token: str) -> bool:
        """Clear the lock if it still carries ``token``; never clears someone else's lock."""
        for _ in range(self.max_lock_attempts):
            raw = self.store.get(self.doc_id)
            if raw is None:
                return False
            doc = CacheDocument.from_store(raw)
            if not doc.refresh_in_progress or doc.refresh_started_at != token:
                LOGGER.info("Refresh lock no longer held by this run; leaving it untouched")
                return False
            try:
                self.store.conditional_set(self.doc_id, dict(_LOCK_CLEARED), doc.revision)
            except RevisionConflictError:
                continue
            LOGGER.info("Released refresh lock on %s", self.doc_id)
            return True

        LOGGER.warning("Could not release refresh lock on %s; it will expire after %s", self.doc_id, self.lock_ttl)
        return False

    def with_lock(self, action: Callable[[str], T]) -> T:
        """Run ``action(token)`` under the refresh lock, releasing it afterwards."""
        token = self.acquire_lock()
        try:
            return action(token)
        finally:
            try:
                self.release_lock(token)
            except StoreError as exc:
                LOGGER.warning("Failed to release refresh lock: %s", exc)

    def touch_lock(self, token: str) -> bool:
        """Heartbeat: push back lock expiry while a long refresh is still working."""
        for _ in range(self.max_lock_attempts):
            raw = self.store.get(self.doc_id)
            if raw is None:
                return False
            doc = CacheDocument.from_store(raw)
            if not doc.refresh_in_progress or doc.refresh_started_at != token:
                return False
            try:
                self.store.conditional_set(self.doc_id, {"refreshHeartbeatAt": self.now_iso()}, doc.revision)
            except RevisionConflictError:
                continue
            return True
        return False

    def request_cancel(self) -> bool:
        """Ask a running refresh to stop by clearing its lock. Returns False if none was running."""
        raw = self.store.get(self.doc_id)
        if raw is None or not raw.get("refreshInProgress"):
            return False
        self.store.patch(self.doc_id, dict(_LOCK_CLEARED))
        LOGGER.info("Cancellation requested for refresh started at %s", raw.get("refreshStartedAt"))
        return True

    def is_cancel_requested(self, token: str) -> bool:
        try:
            raw = self.store.get(self.doc_id)
        except StoreError as exc:
            LOGGER.warning("Could not poll refresh lock: %s", exc)
            return False
        if raw is None:
            return True
        return not raw.get("refreshInProgress") or raw.get("refreshStartedAt") != token

    def write(self, payload: CacheDocument) -> None:
        """Replace every cache field with ``payload``; lock fields are left alone."""
        fields = payload.to_store_fields()
        if self.store.get(self.doc_id) is None:
            self.store.conditional_set(self.doc_id, fields, None)
        else:
            self.store.patch(self.doc_id, fields)
        LOGGER.info(
            "Full cache write: %s publications, %s with summary",
            payload.stats.total_publications,
            payload.stats.total_with_summary,
        )

    def write_incremental(
        self,
        new: Iterable[Publication],
        updated: Iterable[Publication],
        provenance_delta: dict[str, set[str]],
        *,
        cache_key: str | None = None,
        summary_model: str | None = None,
    ) -> None:
        """Append new records, patch updated enrichments by key, union provenance, bump counters."""
        new = list(new)
        updated = list(updated)
        raw = self.store.get(self.doc_id)
        if raw is None:
            LOGGER.info("Cache document missing; incremental write degrades to a full write")
            publications = list({pub.pmid: pub for pub in [*new, *updated]}.values())
            self.write(
                CacheDocument(
                    cache_key=cache_key or "",
                    generated_at=self.now_iso(),
                    publications=publications,
                    provenance={pmid: set(ids) for pmid, ids in provenance_delta.items()},
                    stats=CacheStats.compute(publications, summary_model),
                )
            )
            return

        doc = CacheDocument.from_store(raw)
        existing = doc.publications_by_pmid()
        appended = [pub for pub in new if pub.pmid not in existing]
        patched = [*updated, *(pub for pub in new if pub.pmid in existing)]

        if appended:
            self.store.append(self.doc_id, "publications", [pub.to_dict() for pub in appended])

        set_values: dict[str, Any] = {}
        summary_delta = sum(1 for pub in appended if pub.enrichment.lay_summary)
        for pub in patched:
            if pub.pmid not in existing:
                continue
            for key, value in pub.enrichment.to_dict().items():
                set_values[f'publications[_key=="{pub.pmid}"].{key}'] = value
            if pub.abstract and pub.abstract != existing[pub.pmid].abstract:
                set_values[f'publications[_key=="{pub.pmid}"].abstract'] = pub.abstract
            had_summary = bool(existing[pub.pmid].enrichment.lay_summary)
            summary_delta += int(bool(pub.enrichment.lay_summary)) - int(had_summary)

        new_provenance: dict[str, set[str]] = {}
        for pmid, ids in provenance_delta.items():
            current = doc.provenance.get(pmid)
            if current is None:
                new_provenance[pmid] = set(ids)
            elif not set(ids) <= current:
                set_values[f'provenance[_key=="{pmid}"].researcherIds'] = sorted(current | set(ids))
        if new_provenance:
            self.store.append(self.doc_id, "provenance", provenance_to_list(new_provenance))

        set_values["generatedAt"] = self.now_iso()
        if cache_key is not None:
            set_values["cacheKey"] = cache_key
        if summary_model:
            set_values["stats.lastSummaryModel"] = summary_model
        self.store.patch(self.doc_id, set_values)

        deltas = {
            key: value
            for key, value in (
                ("stats.totalPublications", len(appended)),
                ("stats.totalWithSummary", summary_delta),
            )
            if value
        }
        if deltas:
            self.store.increment(self.doc_id, deltas)

        LOGGER.info(
            "Incremental cache write: %s appended, %s patched, %s provenance entries added",
            len(appended),
            len(patched),
            len(new_provenance),
        )

    def now_iso(self) -> str:
        return self._clock().isoformat()


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
