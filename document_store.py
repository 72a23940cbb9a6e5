"""Sanity HTTP API client exposing the document primitives the cache relies on."""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any
from urllib.parse import quote

import requests

DEFAULT_API_VERSION = "2023-05-03"
DEFAULT_DATASET = "production"
REQUEST_TIMEOUT_SECONDS = 30
MAX_RETRIES = 3

LOGGER = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """The document store rejected or failed a request."""


class RevisionConflictError(StoreError):
    """A revision-guarded write lost a race."""


class DocumentExistsError(RevisionConflictError):
    """Create-if-absent found the document already there."""


class SanityDocumentStore:
    """Read-by-id, conditional write, patch, increment and append over Sanity's data API."""

    def __init__(
        self,
        project_id: str,
        token: str,
        *,
        dataset: str = DEFAULT_DATASET,
        api_version: str = DEFAULT_API_VERSION,
        document_type: str = "pubmedCache",
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        if not project_id:
            raise RuntimeError("SANITY_PROJECT_ID environment variable is required")
        if not token:
            raise RuntimeError("SANITY_API_TOKEN environment variable is required")
        self.base_url = f"https://{project_id}.api.sanity.io/v{api_version.lstrip('v')}/data"
        self.dataset = dataset
        self.document_type = document_type
        self.timeout = timeout
        self.max_retries = max_retries
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_env(cls) -> SanityDocumentStore:
        return cls(
            project_id=os.getenv("SANITY_PROJECT_ID", ""),
            token=os.getenv("SANITY_API_TOKEN", ""),
            dataset=os.getenv("SANITY_DATASET", DEFAULT_DATASET),
            api_version=os.getenv("SANITY_API_VERSION", DEFAULT_API_VERSION),
        )

    def get(self, doc_id: str) -> dict[str, Any] | None:
        response = self._request_with_backoff(
            method="GET",
            url=f"{self.base_url}/doc/{self.dataset}/{quote(doc_id, safe='')}",
        )
        documents = response.json().get("documents") or []
        return documents[0] if documents else None

    def conditional_set(self, doc_id: str, values: dict[str, Any], revision: str | None) -> str:
        """Set fields only if the document is still at ``revision``.

        ``revision=None`` creates the document and fails if it already exists.
        Returns the new revision.
        """
        if revision is None:
            document = {"_id": doc_id, "_type": self.document_type}
            document.update({key: value for key, value in values.items() if value is not None})
            return self._mutate([{"create": document}], creating=True)

        set_values, unset = _split_nulls(values)
        patch: dict[str, Any] = {"id": doc_id, "ifRevisionID": revision}
        if set_values:
            patch["set"] = set_values
        if unset:
            patch["unset"] = unset
        return self._mutate([{"patch": patch}])

    def patch(self, doc_id: str, set_values: dict[str, Any], unset: list[str] | None = None) -> str:
        set_fields, null_fields = _split_nulls(set_values)
        patch: dict[str, Any] = {"id": doc_id}
        if set_fields:
            patch["set"] = set_fields
        if unset or null_fields:
            patch["unset"] = [*(unset or []), *null_fields]
        return self._mutate([{"patch": patch}])

    def increment(self, doc_id: str, deltas: dict[str, int]) -> str:
        return self._mutate([
            {"patch": {"id": doc_id, "setIfMissing": {path: 0 for path in deltas}}},
            {"patch": {"id": doc_id, "inc": dict(deltas)}},
        ])

    def append(self, doc_id: str, path: str, items: list[dict[str, Any]]) -> str:
        return self._mutate([
            {"patch": {"id": doc_id, "setIfMissing": {path: []}}},
            {"patch": {"id": doc_id, "insert": {"after": f"{path}[-1]", "items": items}}},
        ])

    def _mutate(self, mutations: list[dict[str, Any]], *, creating: bool = False) -> str:
        try:
            response = self._request_with_backoff(
                method="POST",
                url=f"{self.base_url}/mutate/{self.dataset}?returnIds=true&visibility=sync",
                json_payload={"mutations": mutations},
            )
        except _ConflictResponse as exc:
            if creating:
                raise DocumentExistsError(f"Document already exists: {exc}") from exc
            raise RevisionConflictError(f"Revision conflict: {exc}") from exc
        return str(response.json().get("transactionId") or "")

    def _request_with_backoff(
        self,
        *,
        method: str,
        url: str,
        json_payload: dict[str, Any] | None = None,
    ) -> requests.Response:
        """Send a Sanity request, backing off on 429 and 5xx responses."""
        delay_seconds = 1.0
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = requests.request(
                    method=method,
                    url=url,
                    headers=self._headers,
                    json=json_payload,
                    timeout=self.timeout,
                )
                if response.status_code == 409:
                    raise _ConflictResponse(_error_text(response))
                if (response.status_code == 429 or response.status_code >= 500) and attempt < self.max_retries:
                    LOGGER.warning(
                        "Sanity %s returned %s on attempt %s/%s",
                        method,
                        response.status_code,
                        attempt,
                        self.max_retries,
                    )
                    time.sleep(delay_seconds)
                    delay_seconds *= 2
                    continue
                response.raise_for_status()
                return response
            except requests.HTTPError as exc:
                # 4xx other than 429 will not improve on retry.
                last_error = exc
                break
            except requests.RequestException as exc:
                last_error = exc
                if attempt >= self.max_retries:
                    break
                time.sleep(delay_seconds)
                delay_seconds *= 2

        response_text = ""
        if isinstance(last_error, requests.HTTPError) and last_error.response is not None:
            response_text = _error_text(last_error.response)

        raise StoreError(f"Sanity API request failed after retries: {last_error} {response_text}".strip())


class _ConflictResponse(Exception):
    pass


def _error_text(response: requests.Response) -> str:
    try:
        return json.dumps(response.json())
    except ValueError:
        return response.text


def _split_nulls(values: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    set_values = {key: value for key, value in values.items() if value is not None}
    unset = [key for key, value in values.items() if value is None]
    return set_values, unset
