"""Normalize the partial, inconsistently formatted dates PubMed attaches to records.

A single article can carry an electronic-publication date ("2023 Jun 5"), a
print/issue date ("2023 Jul"), and a catalog sort date ("2023/06/05 00:00").
``resolve_publication_date`` collapses those into one canonical
``ResolvedDate`` used for ordering and display.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

MONTH_LOOKUP: dict[str, int] = {
    "jan": 1,
    "january": 1,
    "feb": 2,
    "february": 2,
    "mar": 3,
    "march": 3,
    "apr": 4,
    "april": 4,
    "may": 5,
    "jun": 6,
    "june": 6,
    "jul": 7,
    "july": 7,
    "aug": 8,
    "august": 8,
    "sep": 9,
    "sept": 9,
    "september": 9,
    "oct": 10,
    "october": 10,
    "nov": 11,
    "november": 11,
    "dec": 12,
    "december": 12,
}

MONTH_NAMES = [name for name in calendar.month_name]

# Publication dates more than this far ahead of "now" are treated as future-dated.
FUTURE_GRACE = timedelta(days=1)

_NUMERIC_DATE_RE = re.compile(r"^\s*(\d{4})[-/](\d{1,2})(?:[-/](\d{1,2}))?(?:[\sT].*)?$")
_YEAR_MONTH_RE = re.compile(
    r"^\s*(\d{4})\s+([A-Za-z]{3,9}|\d{1,2})\.?(?:\s*[-/]\s*[A-Za-z]{3,9}\.?)?(?:\s+(\d{1,2}))?\b"
)
_YEAR_ONLY_RE = re.compile(r"^\s*(\d{4})\b")
_BARE_YEAR_RE = re.compile(r"\b(1[89]\d{2}|2\d{3})\b")


@dataclass(frozen=True, slots=True)
class ParsedDate:
    """One parsed date candidate; ``month_known``/``day_known`` record precision."""

    value: datetime
    month_known: bool
    day_known: bool


@dataclass(frozen=True, slots=True)
class ResolvedDate:
    iso_date: str | None = None
    year: int | None = None
    month: int | None = None
    month_name: str | None = None


def parse_month(token: str | int | None) -> int | None:
    """Map a month token ("Jun", "june", "6", 6) to 1-12, else None."""
    if token is None:
        return None
    if isinstance(token, int):
        return token if 1 <= token <= 12 else None
    text = token.strip().lower().rstrip(".")
    if not text:
        return None
    if text.isdigit():
        number = int(text)
        return number if 1 <= number <= 12 else None
    return MONTH_LOOKUP.get(text)


def parse_date_candidate(text: str | None, *, latest: bool = False) -> ParsedDate | None:
    """Parse one raw date string.

    Tried in order: numeric ``Y-M-D``/``Y/M/D``, a 4-digit year followed by a
    month token (and optional day), then a bare leading year. A known month
    without a day resolves to the 1st, or to the month's last day when
    ``latest`` is set.
    """
    if not text or not isinstance(text, str):
        return None

    match = _NUMERIC_DATE_RE.match(text)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        day = int(match.group(3)) if match.group(3) else None
        if 1 <= month <= 12:
            return _build(year, month, day, latest=latest)

    match = _YEAR_MONTH_RE.match(text)
    if match:
        month = parse_month(match.group(2))
        if month is not None:
            day = int(match.group(3)) if match.group(3) else None
            return _build(int(match.group(1)), month, day, latest=latest)

    match = _YEAR_ONLY_RE.match(text)
    if match:
        return _build(int(match.group(1)), None, None, latest=latest)

    return None


def resolve_publication_date(
    epub_date: str | None,
    print_date: str | None,
    sort_date: str | None = None,
    fallback_text: str | None = None,
    *,
    now: datetime | None = None,
    latest: bool = False,
) -> ResolvedDate:
    """Pick the canonical date for a record.

    The electronic and print candidates are parsed independently and the most
    recent one not later than ``now + 1 day`` wins; if every candidate lies in
    the future the latest one is used anyway. Without either, the catalog sort
    date is used, then any bare 4-digit year found in the inputs.
    """
    now = now or datetime.now(UTC)
    candidates = [
        parsed
        for parsed in (
            parse_date_candidate(epub_date, latest=latest),
            parse_date_candidate(print_date, latest=latest),
        )
        if parsed is not None
    ]

    chosen: ParsedDate | None = None
    if candidates:
        horizon = now + FUTURE_GRACE
        eligible = [c for c in candidates if c.value <= horizon]
        pool = eligible or candidates
        chosen = max(pool, key=lambda c: c.value)
    else:
        chosen = parse_date_candidate(sort_date, latest=latest)

    if chosen is None:
        year = _find_bare_year(epub_date, print_date, sort_date, fallback_text)
        if year is None:
            return ResolvedDate()
        chosen = _build(year, None, None, latest=latest)
        if chosen is None:
            return ResolvedDate()

    month = chosen.value.month
    return ResolvedDate(
        iso_date=chosen.value.isoformat(),
        year=chosen.value.year,
        month=month,
        month_name=MONTH_NAMES[month],
    )


def _build(year: int, month: int | None, day: int | None, *, latest: bool) -> ParsedDate | None:
    if year < 1 or year > 9999:
        return None
    if month is None:
        return ParsedDate(datetime(year, 1, 1, tzinfo=UTC), month_known=False, day_known=False)

    last_day = calendar.monthrange(year, month)[1]
    day_known = day is not None and 1 <= day <= last_day
    if not day_known:
        day = last_day if latest else 1
    return ParsedDate(datetime(year, month, day, tzinfo=UTC), month_known=True, day_known=day_known)


def _find_bare_year(*texts: str | None) -> int | None:
    for text in texts:
        if not text or not isinstance(text, str):
            continue
        match = _BARE_YEAR_RE.search(text)
        if match:
            return int(match.group(1))
    return None
