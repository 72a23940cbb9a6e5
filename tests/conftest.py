from __future__ import annotations

import copy
import re
import threading
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from document_store import DocumentExistsError, RevisionConflictError, StoreError
from llm_client import TextProvider
from models import Publication

_SEGMENT_RE = re.compile(r'^(\w+)(?:\[_key=="([^"]+)"\])?$')


class FakeDocumentStore:
    """In-memory stand-in for SanityDocumentStore that honours revisions."""

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._counter = 0

    def get(self, doc_id: str) -> dict[str, Any] | None:
        self.calls.append(("get", doc_id))
        doc = self.docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def conditional_set(self, doc_id: str, values: dict[str, Any], revision: str | None) -> str:
        self.calls.append(("conditional_set", doc_id))
        if revision is None:
            if doc_id in self.docs:
                raise DocumentExistsError(doc_id)
            self.docs[doc_id] = {"_id": doc_id, **{k: copy.deepcopy(v) for k, v in values.items() if v is not None}}
            return self._bump(doc_id)
        doc = self.docs.get(doc_id)
        if doc is None or doc.get("_rev") != revision:
            raise RevisionConflictError(doc_id)
        self._apply_set(doc, values)
        return self._bump(doc_id)

    def patch(self, doc_id: str, set_values: dict[str, Any], unset: list[str] | None = None) -> str:
        self.calls.append(("patch", doc_id))
        doc = self._require(doc_id)
        self._apply_set(doc, set_values)
        for path in unset or []:
            _set_path(doc, path, None)
        return self._bump(doc_id)

    def increment(self, doc_id: str, deltas: dict[str, int]) -> str:
        self.calls.append(("increment", doc_id))
        doc = self._require(doc_id)
        for path, delta in deltas.items():
            _set_path(doc, path, (_get_path(doc, path) or 0) + delta)
        return self._bump(doc_id)

    def append(self, doc_id: str, path: str, items: list[dict[str, Any]]) -> str:
        self.calls.append(("append", doc_id))
        doc = self._require(doc_id)
        current = _get_path(doc, path) or []
        _set_path(doc, path, [*current, *copy.deepcopy(items)])
        return self._bump(doc_id)

    def calls_to(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def _require(self, doc_id: str) -> dict[str, Any]:
        doc = self.docs.get(doc_id)
        if doc is None:
            raise StoreError(f"Document not found: {doc_id}")
        return doc

    def _apply_set(self, doc: dict[str, Any], values: dict[str, Any]) -> None:
        for path, value in values.items():
            _set_path(doc, path, copy.deepcopy(value))

    def _bump(self, doc_id: str) -> str:
        self._counter += 1
        revision = f"rev-{self._counter}"
        self.docs[doc_id]["_rev"] = revision
        return revision


def _resolve(doc: dict[str, Any], path: str, create: bool) -> tuple[Any, str] | None:
    segments = path.split(".")
    node: Any = doc
    for segment in segments[:-1]:
        node = _step(node, segment, create)
        if node is None:
            return None
    last = _SEGMENT_RE.match(segments[-1])
    assert last is not None, path
    if last.group(2) is not None:
        node = _step(node, f"{last.group(1)}[_key==\"{last.group(2)}\"]", create)
        return None if node is None else (node, "")
    return node, last.group(1)


def _step(node: Any, segment: str, create: bool) -> Any:
    match = _SEGMENT_RE.match(segment)
    assert match is not None, segment
    name, key = match.groups()
    child = node.get(name)
    if child is None and create:
        child = [] if key is not None else {}
        node[name] = child
    if key is None:
        return child
    for item in child or []:
        if isinstance(item, dict) and item.get("_key") == key:
            return item
    return None


def _get_path(doc: dict[str, Any], path: str) -> Any:
    resolved = _resolve(doc, path, create=False)
    if resolved is None:
        return None
    node, field = resolved
    return node.get(field) if field else node


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    resolved = _resolve(doc, path, create=True)
    if resolved is None:
        return
    node, field = resolved
    if value is None:
        node.pop(field, None)
    else:
        node[field] = value


class StubProvider(TextProvider):
    """Replays scripted responses; each item is a string or a ProviderError. The last one repeats."""

    name = "stub"
    default_model = "stub-model"

    def __init__(self, responses) -> None:
        super().__init__()
        self.responses = list(responses)
        self.calls: list[tuple[str, str | None]] = []
        self._lock = threading.Lock()

    def complete(self, prompt, system=None, *, max_tokens=400, temperature=0.3) -> str:
        with self._lock:
            self.calls.append((prompt, system))
            item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def clock() -> Clock:
    return Clock()


def make_publication(pmid: str, year: int = 2025, abstract: str | None = None, **kwargs: Any) -> Publication:
    return Publication(
        pmid=pmid,
        title=kwargs.pop("title", f"Publication {pmid}"),
        authors=kwargs.pop("authors", ["Smith J", "Doe A"]),
        journal=kwargs.pop("journal", "Kidney Int"),
        year=year,
        month=kwargs.pop("month", 6),
        month_name=kwargs.pop("month_name", "June"),
        published_at=kwargs.pop("published_at", f"{year}-06-01T00:00:00+00:00"),
        abstract=abstract if abstract is not None else f"Abstract for {pmid}. " + "x" * 120,
        url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
        **kwargs,
    )
