"""PubMed (NCBI E-utilities) ingestion helpers."""

from __future__ import annotations

import html
import logging
import os
import re
import time
import xml.etree.ElementTree as ET
from typing import Any

import requests

from date_resolver import resolve_publication_date
from models import Publication

EUTILS_BASE_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
PUBMED_ARTICLE_URL = "https://pubmed.ncbi.nlm.nih.gov/{pmid}/"
REQUEST_TIMEOUT_SECONDS = 15
MAX_RETRIES = 2
BACKOFF_STEP_SECONDS = 0.5
# esummary/efetch handle up to ~200 ids per request reliably.
CHUNK_SIZE = 200

LOGGER = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_TAG_RE = re.compile(r"<[^>]+>")


def fetch_publications(
    query: str,
    max_results: int = 200,
    *,
    api_key: str | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
    retries: int = MAX_RETRIES,
    backoff_seconds: float = BACKOFF_STEP_SECONDS,
) -> list[Publication]:
    """Search PubMed and return normalized publications with abstracts.

    Metadata (esummary) and abstracts (efetch) are retrieved independently and
    merged by PMID. Either side may lose chunks to exhausted retries; what
    survives is still returned.
    """
    if api_key is None:
        api_key = os.getenv("PUBMED_API_KEY") or None
    http = _EutilsClient(api_key=api_key, timeout=timeout, retries=retries, backoff_seconds=backoff_seconds)

    pmids = search_pubmed(query, max_results, client=http)
    if not pmids:
        LOGGER.info("PubMed search returned no ids for query=%r", query)
        return []

    publications = fetch_summaries(pmids, client=http)
    abstracts = fetch_abstracts(pmids, client=http)

    merged = [
        pub.with_abstract(abstracts.get(pub.pmid, "")) if abstracts.get(pub.pmid) else pub
        for pub in publications
    ]
    LOGGER.info(
        "PubMed fetch: query=%r ids=%s summaries=%s with_abstract=%s",
        query,
        len(pmids),
        len(merged),
        sum(1 for pub in merged if pub.abstract),
    )
    return merged


def search_pubmed(query: str, max_results: int = 200, *, client: _EutilsClient | None = None) -> list[str]:
    """Return the PMIDs matching a PubMed query (newest first, as PubMed orders them)."""
    client = client or _EutilsClient()
    response = client.get(
        "esearch.fcgi",
        {"db": "pubmed", "term": query, "retmode": "json", "retmax": max_results},
    )
    if response is None:
        LOGGER.warning("PubMed search failed after retries for query=%r", query)
        return []

    try:
        body = response.json()
    except ValueError:
        LOGGER.warning("PubMed search returned non-JSON body for query=%r", query)
        return []
    id_list = (body.get("esearchresult") or {}).get("idlist") or []
    return [str(pmid) for pmid in id_list if str(pmid).strip()]


def fetch_summaries(pmids: list[str], *, client: _EutilsClient | None = None) -> list[Publication]:
    """Fetch esummary metadata in chunks; failed chunks are logged and dropped."""
    client = client or _EutilsClient()
    publications: list[Publication] = []

    for chunk in _chunks(pmids, CHUNK_SIZE):
        response = client.get(
            "esummary.fcgi",
            {"db": "pubmed", "id": ",".join(chunk), "retmode": "json"},
        )
        if response is None:
            LOGGER.warning("PubMed esummary chunk dropped after retries: first_pmid=%s size=%s", chunk[0], len(chunk))
            continue
        try:
            payload = response.json()
        except ValueError:
            LOGGER.warning("PubMed esummary chunk returned non-JSON body: first_pmid=%s", chunk[0])
            continue
        try:
            publications.extend(_parse_summary_payload(payload))
        except RuntimeError as exc:
            LOGGER.warning("PubMed esummary chunk dropped: first_pmid=%s: %s", chunk[0], exc)

    return publications


def fetch_abstracts(pmids: list[str], *, client: _EutilsClient | None = None) -> dict[str, str]:
    """Fetch abstracts via efetch XML in chunks, keyed by PMID."""
    client = client or _EutilsClient()
    abstracts: dict[str, str] = {}

    for chunk in _chunks(pmids, CHUNK_SIZE):
        response = client.get(
            "efetch.fcgi",
            {"db": "pubmed", "id": ",".join(chunk), "rettype": "abstract", "retmode": "xml"},
        )
        if response is None:
            LOGGER.warning("PubMed efetch chunk dropped after retries: first_pmid=%s size=%s", chunk[0], len(chunk))
            continue
        try:
            abstracts.update(_parse_abstracts_xml(response.text))
        except ET.ParseError as exc:
            LOGGER.warning("PubMed efetch chunk had unparseable XML: first_pmid=%s: %s", chunk[0], exc)

    return abstracts


def _parse_summary_payload(payload: Any) -> list[Publication]:
    """Parse an esummary JSON payload into Publication objects, in uid order."""
    if not isinstance(payload, dict):
        raise RuntimeError("Unexpected esummary payload shape: expected an object")

    result = payload.get("result") or {}
    uids = result.get("uids") or [key for key in result if key != "uids"]
    parsed: list[Publication] = []

    for uid in uids:
        item = result.get(str(uid))
        if not isinstance(item, dict) or not item.get("uid"):
            continue

        pmid = str(item["uid"])
        resolved = resolve_publication_date(
            _as_str(item.get("epubdate")),
            _as_str(item.get("pubdate")),
            _as_str(item.get("sortpubdate")),
            _history_date(item, "pubmed"),
        )
        authors = [
            _as_str(author.get("name"))
            for author in item.get("authors") or []
            if isinstance(author, dict) and _as_str(author.get("name"))
        ]

        parsed.append(
            Publication(
                pmid=pmid,
                title=_clean_text(item.get("title")) or "No title",
                authors=authors,
                journal=_as_str(item.get("source")) or "",
                year=resolved.year,
                month=resolved.month,
                month_name=resolved.month_name,
                published_at=resolved.iso_date,
                doi=_extract_doi(item),
                url=PUBMED_ARTICLE_URL.format(pmid=pmid),
                volume=_as_str(item.get("volume")) or "",
                issue=_as_str(item.get("issue")) or "",
                pages=_as_str(item.get("pages")) or "",
            )
        )

    return parsed


def _parse_abstracts_xml(xml_text: str) -> dict[str, str]:
    """Extract PMID -> abstract from an efetch PubmedArticleSet document."""
    abstracts: dict[str, str] = {}
    if not xml_text or not xml_text.strip():
        return abstracts

    root = ET.fromstring(xml_text)
    for article in root.iter("PubmedArticle"):
        pmid = article.findtext("./MedlineCitation/PMID")
        if not pmid:
            continue
        parts: list[str] = []
        for node in article.findall("./MedlineCitation/Article/Abstract/AbstractText"):
            text = _WHITESPACE_RE.sub(" ", "".join(node.itertext())).strip()
            if not text:
                continue
            parts.append(text)
        abstracts[pmid.strip()] = _WHITESPACE_RE.sub(" ", " ".join(parts)).strip()
    return abstracts


def _history_date(item: dict[str, Any], status: str) -> str | None:
    for entry in item.get("history") or []:
        if isinstance(entry, dict) and entry.get("pubstatus") == status:
            return _as_str(entry.get("date"))
    return None


def _extract_doi(item: dict[str, Any]) -> str | None:
    for article_id in item.get("articleids") or []:
        if isinstance(article_id, dict) and article_id.get("idtype") == "doi":
            value = _as_str(article_id.get("value"))
            if value:
                return value
    elocation = _as_str(item.get("elocationid"))
    if elocation and "doi:" in elocation.lower():
        return elocation.split(":", 1)[1].strip() or None
    return None


class _EutilsClient:
    """GET helper with timeout and linear-backoff retry for E-utilities calls."""

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        retries: int = MAX_RETRIES,
        backoff_seconds: float = BACKOFF_STEP_SECONDS,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.retries = retries
        self.backoff_seconds = backoff_seconds

    def get(self, endpoint: str, params: dict[str, Any]) -> requests.Response | None:
        """Return the response, or None once every attempt has failed."""
        if self.api_key:
            params = {**params, "api_key": self.api_key}
        url = f"{EUTILS_BASE_URL}/{endpoint}"

        for attempt in range(1, self.retries + 2):
            try:
                response = requests.get(url, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response
            except requests.RequestException as exc:
                LOGGER.warning(
                    "PubMed %s failed on attempt %s/%s: %s",
                    endpoint,
                    attempt,
                    self.retries + 1,
                    exc,
                )
                if attempt <= self.retries:
                    time.sleep(self.backoff_seconds * attempt)
        return None


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _clean_text(value: Any) -> str | None:
    text = _as_str(value)
    if not text:
        return None
    return _WHITESPACE_RE.sub(" ", _TAG_RE.sub("", html.unescape(text))).strip() or None


def _as_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None
