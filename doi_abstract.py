"""Backfill missing abstracts from a DOI landing page's meta tags."""

from __future__ import annotations

import html
import logging
import os
import re

import requests
from bs4 import BeautifulSoup

REQUEST_TIMEOUT_SECONDS = float(os.getenv("PUBMED_DOI_ABSTRACT_TIMEOUT_SECONDS", "8"))
MIN_ABSTRACT_LENGTH = 50
USER_AGENT = "ResearchPublicationsBot/1.0 (+mailto:admin@example.org)"

# Scholarly meta names first; generic social descriptions need to be longer to count.
META_GROUPS: list[tuple[tuple[str, ...], int]] = [
    (("citation_abstract", "dc.description", "dc.description.abstract", "dcterms.abstract"), 80),
    (("description", "og:description", "twitter:description"), 120),
]

_IGNORE_RE = re.compile(r"no abstract|abstract not available", re.IGNORECASE)
_DOI_PREFIX_RE = re.compile(r"^(https?://(dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")

LOGGER = logging.getLogger(__name__)


def normalize_doi(value: str | None) -> str | None:
    if not value:
        return None
    doi = _DOI_PREFIX_RE.sub("", value.strip())
    return doi or None


def fetch_abstract_from_doi(doi: str | None, *, timeout: float = REQUEST_TIMEOUT_SECONDS) -> str | None:
    """Resolve a DOI and pick the best abstract-like meta tag, or None."""
    normalized = normalize_doi(doi)
    if not normalized:
        return None

    try:
        response = requests.get(
            f"https://doi.org/{normalized}",
            headers={"Accept": "text/html,application/xhtml+xml", "User-Agent": USER_AGENT},
            timeout=timeout,
            allow_redirects=True,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        LOGGER.info("DOI landing page fetch failed for doi=%s: %s", normalized, exc)
        return None

    return pick_abstract_from_html(response.text)


def pick_abstract_from_html(page: str) -> str | None:
    soup = BeautifulSoup(page, "html.parser")
    by_name: dict[str, str] = {}
    for tag in soup.find_all("meta"):
        name = (tag.get("name") or tag.get("property") or "").strip().lower()
        cleaned = normalize_abstract(tag.get("content"))
        if not name or not cleaned:
            continue
        if len(cleaned) > len(by_name.get(name, "")):
            by_name[name] = cleaned

    if not by_name:
        return None

    for names, min_length in META_GROUPS:
        for name in names:
            value = by_name.get(name)
            if value and len(value) >= min_length:
                return value

    best = max(by_name.values(), key=len)
    return best if len(best) >= MIN_ABSTRACT_LENGTH else None


def normalize_abstract(text: str | None) -> str | None:
    if not text:
        return None
    value = _TAG_RE.sub(" ", html.unescape(text))
    value = _WHITESPACE_RE.sub(" ", value).strip()
    if len(value) < MIN_ABSTRACT_LENGTH or _IGNORE_RE.search(value):
        return None
    return value
