from unittest.mock import MagicMock, patch

import pytest
import requests

from document_store import DocumentExistsError, RevisionConflictError, SanityDocumentStore, StoreError


def _resp(status: int, payload=None) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status
    mock.json.return_value = payload if payload is not None else {}
    mock.text = str(payload)
    if status >= 400:
        mock.raise_for_status.side_effect = requests.HTTPError(f"{status} error", response=mock)
    else:
        mock.raise_for_status.return_value = None
    return mock


def _store() -> SanityDocumentStore:
    return SanityDocumentStore("proj", "token", dataset="production", api_version="2023-05-03")


def test_requires_credentials() -> None:
    with pytest.raises(RuntimeError, match="SANITY_API_TOKEN"):
        SanityDocumentStore("proj", "")


def test_get_returns_first_document_or_none() -> None:
    with patch("document_store.requests.request", return_value=_resp(200, {"documents": [{"_id": "pubmedCache"}]})) as mock_request:
        assert _store().get("pubmedCache") == {"_id": "pubmedCache"}
    assert mock_request.call_args.kwargs["url"] == "https://proj.api.sanity.io/v2023-05-03/data/doc/production/pubmedCache"
    assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Bearer token"

    with patch("document_store.requests.request", return_value=_resp(200, {"documents": []})):
        assert _store().get("pubmedCache") is None


def test_conditional_set_sends_if_revision_and_unsets_nulls() -> None:
    with patch("document_store.requests.request", return_value=_resp(200, {"transactionId": "rev-2"})) as mock_request:
        revision = _store().conditional_set(
            "pubmedCache",
            {"refreshInProgress": True, "refreshHeartbeatAt": None},
            "rev-1",
        )

    assert revision == "rev-2"
    mutation = mock_request.call_args.kwargs["json"]["mutations"][0]["patch"]
    assert mutation == {
        "id": "pubmedCache",
        "ifRevisionID": "rev-1",
        "set": {"refreshInProgress": True},
        "unset": ["refreshHeartbeatAt"],
    }


def test_conditional_set_without_revision_creates() -> None:
    with patch("document_store.requests.request", return_value=_resp(200, {"transactionId": "rev-1"})) as mock_request:
        _store().conditional_set("pubmedCache", {"cacheKey": "k"}, None)
    mutation = mock_request.call_args.kwargs["json"]["mutations"][0]
    assert mutation == {"create": {"_id": "pubmedCache", "_type": "pubmedCache", "cacheKey": "k"}}


def test_conflicts_map_to_typed_errors() -> None:
    with patch("document_store.requests.request", return_value=_resp(409, {"error": {"description": "revision mismatch"}})):
        with pytest.raises(RevisionConflictError) as excinfo:
            _store().conditional_set("pubmedCache", {"a": 1}, "rev-1")
    assert not isinstance(excinfo.value, DocumentExistsError)

    with patch("document_store.requests.request", return_value=_resp(409, {"error": {"description": "exists"}})):
        with pytest.raises(DocumentExistsError):
            _store().conditional_set("pubmedCache", {"a": 1}, None)


def test_append_and_increment_mutations() -> None:
    with patch("document_store.requests.request", return_value=_resp(200, {"transactionId": "t"})) as mock_request:
        store = _store()
        store.append("pubmedCache", "publications", [{"_key": "1"}])
        store.increment("pubmedCache", {"stats.totalPublications": 1})

    append_mutations = mock_request.call_args_list[0].kwargs["json"]["mutations"]
    assert append_mutations[1]["patch"]["insert"] == {"after": "publications[-1]", "items": [{"_key": "1"}]}
    inc_mutations = mock_request.call_args_list[1].kwargs["json"]["mutations"]
    assert inc_mutations[1]["patch"]["inc"] == {"stats.totalPublications": 1}


def test_retries_on_429_then_succeeds() -> None:
    responses = [_resp(429), _resp(200, {"documents": []})]
    with patch("document_store.requests.request", side_effect=responses) as mock_request, \
         patch("document_store.time.sleep") as mock_sleep:
        assert _store().get("pubmedCache") is None
    assert mock_request.call_count == 2
    mock_sleep.assert_called_once_with(1.0)


def test_client_errors_are_not_retried() -> None:
    with patch("document_store.requests.request", return_value=_resp(403, {"error": "forbidden"})) as mock_request, \
         patch("document_store.time.sleep"):
        with pytest.raises(StoreError, match="forbidden"):
            _store().get("pubmedCache")
    assert mock_request.call_count == 1


def test_transport_errors_exhaust_retries() -> None:
    with patch("document_store.requests.request", side_effect=requests.ConnectionError("down")) as mock_request, \
         patch("document_store.time.sleep"):
        with pytest.raises(StoreError):
            _store().get("pubmedCache")
    assert mock_request.call_count == 3
