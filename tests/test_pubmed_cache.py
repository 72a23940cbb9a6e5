from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import make_publication
from document_store import StoreError
from models import CacheDocument, CacheStats, Enrichment
from pubmed_cache import (
    CacheCoordinator,
    LockUnavailableError,
    RefreshInProgressError,
)


def _coordinator(store, clock, **kwargs) -> CacheCoordinator:
    return CacheCoordinator(store, clock=clock, **kwargs)


def _seed(coordinator: CacheCoordinator, pubs, provenance=None, generated_at=None) -> None:
    coordinator.write(
        CacheDocument(
            cache_key="key",
            generated_at=generated_at,
            publications=list(pubs),
            provenance=provenance or {pub.pmid: {"r1"} for pub in pubs},
            stats=CacheStats.compute(list(pubs)),
        )
    )


def test_read_missing_document_returns_none(store, clock) -> None:
    assert _coordinator(store, clock).read() is None


def test_read_swallows_store_errors(clock) -> None:
    class BrokenStore:
        def get(self, doc_id):
            raise StoreError("unreachable")

    assert CacheCoordinator(BrokenStore(), clock=clock).read() is None


def test_staleness_uses_generated_at(store, clock) -> None:
    coordinator = _coordinator(store, clock)
    _seed(coordinator, [make_publication("1")], generated_at=clock().isoformat())
    doc = coordinator.read()
    assert coordinator.is_stale(doc) is False

    clock.advance(hours=25)
    assert coordinator.is_stale(doc) is True
    assert coordinator.is_stale(None) is True


def test_with_lock_creates_missing_document_and_releases(store, clock) -> None:
    coordinator = _coordinator(store, clock)

    def action(token: str) -> str:
        doc = coordinator.read()
        assert doc.refresh_in_progress is True
        assert doc.refresh_started_at == token
        return "done"

    assert coordinator.with_lock(action) == "done"
    doc = coordinator.read()
    assert doc.refresh_in_progress is False
    assert doc.refresh_started_at is None


def test_lock_released_when_action_fails(store, clock) -> None:
    coordinator = _coordinator(store, clock)

    def boom(token: str) -> None:
        raise ValueError("action failed")

    with pytest.raises(ValueError):
        coordinator.with_lock(boom)
    assert coordinator.read().refresh_in_progress is False


def test_second_caller_fails_fast_then_succeeds_after_release(store, clock) -> None:
    coordinator = _coordinator(store, clock)
    executed: list[str] = []

    def outer(token: str) -> None:
        executed.append("outer")
        with pytest.raises(RefreshInProgressError):
            coordinator.with_lock(lambda t: executed.append("inner"))

    coordinator.with_lock(outer)
    assert executed == ["outer"]

    coordinator.with_lock(lambda t: executed.append("after"))
    assert executed == ["outer", "after"]


def test_concurrent_with_lock_runs_exactly_one_action(store, clock) -> None:
    coordinator = _coordinator(store, clock)
    inside = threading.Event()
    release = threading.Event()
    outcomes: list[str] = []

    def slow_action(token: str) -> None:
        inside.set()
        release.wait(timeout=5)
        outcomes.append("ran")

    holder = threading.Thread(target=coordinator.with_lock, args=(slow_action,))
    holder.start()
    assert inside.wait(timeout=5)

    with pytest.raises(RefreshInProgressError):
        coordinator.with_lock(lambda t: outcomes.append("second"))

    release.set()
    holder.join(timeout=5)
    assert outcomes == ["ran"]


def test_stale_lock_is_taken_over(store, clock) -> None:
    coordinator = _coordinator(store, clock, lock_ttl=timedelta(minutes=2))
    crashed_token = coordinator.acquire_lock()

    clock.advance(minutes=3)
    new_token = coordinator.acquire_lock()
    assert new_token != crashed_token

    assert coordinator.release_lock(crashed_token) is False
    assert coordinator.read().refresh_in_progress is True
    assert coordinator.release_lock(new_token) is True


def test_heartbeat_extends_lock(store, clock) -> None:
    coordinator = _coordinator(store, clock, lock_ttl=timedelta(minutes=2))
    token = coordinator.acquire_lock()
    clock.advance(minutes=1, seconds=30)
    assert coordinator.touch_lock(token) is True

    clock.advance(minutes=1)
    with pytest.raises(RefreshInProgressError):
        coordinator.acquire_lock()


def test_revision_races_are_retried_then_exhausted(store, clock) -> None:
    coordinator = _coordinator(store, clock, max_lock_attempts=3)
    _seed(coordinator, [make_publication("1")])
    store.calls.clear()
    original_get = store.get

    def racing_get(doc_id):
        doc = original_get(doc_id)
        store.patch(doc_id, {"touchedBy": "someone-else"})
        return doc

    store.get = racing_get
    with pytest.raises(LockUnavailableError):
        coordinator.acquire_lock()
    assert store.calls_to("conditional_set") == 3


def test_cancel_clears_lock_and_is_observed(store, clock) -> None:
    coordinator = _coordinator(store, clock)
    token = coordinator.acquire_lock()
    assert coordinator.is_cancel_requested(token) is False

    assert coordinator.request_cancel() is True
    assert coordinator.is_cancel_requested(token) is True
    assert coordinator.request_cancel() is False


def test_write_incremental_appends_patches_and_counts(store, clock) -> None:
    coordinator = _coordinator(store, clock)
    _seed(coordinator, [make_publication("1"), make_publication("2")], provenance={"1": {"r1"}, "2": {"r1"}})

    updated = make_publication("2").with_enrichment(Enrichment(lay_summary="New summary.", topics=["Obesity"]))
    new = make_publication("3").with_enrichment(Enrichment(lay_summary="Fresh."))
    coordinator.write_incremental(
        [new],
        [updated],
        {"2": {"r2"}, "3": {"r1"}},
        cache_key="key",
        summary_model="stub:model",
    )

    doc = coordinator.read()
    by_pmid = doc.publications_by_pmid()
    assert [p.pmid for p in doc.publications] == ["1", "2", "3"]
    assert by_pmid["2"].enrichment.lay_summary == "New summary."
    assert by_pmid["2"].enrichment.topics == ["Obesity"]
    assert doc.provenance == {"1": {"r1"}, "2": {"r1", "r2"}, "3": {"r1"}}
    assert doc.stats.total_publications == 3
    assert doc.stats.total_with_summary == 2
    assert doc.stats.last_summary_model == "stub:model"
    assert store.calls_to("append") == 2


def test_write_incremental_degrades_to_full_write(store, clock) -> None:
    coordinator = _coordinator(store, clock)
    coordinator.write_incremental([make_publication("9")], [], {"9": {"r1"}}, cache_key="key")

    doc = coordinator.read()
    assert doc.cache_key == "key"
    assert [p.pmid for p in doc.publications] == ["9"]
    assert doc.provenance == {"9": {"r1"}}
    assert doc.stats.total_publications == 1


def test_full_write_leaves_lock_fields_alone(store, clock) -> None:
    coordinator = _coordinator(store, clock)
    token = coordinator.acquire_lock()
    _seed(coordinator, [make_publication("1")])
    doc = coordinator.read()
    assert doc.refresh_in_progress is True
    assert doc.refresh_started_at == token
