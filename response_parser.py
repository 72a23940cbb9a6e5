"""Turn free-text provider output into validated enrichment fields."""

from __future__ import annotations

import json
import re
from typing import Any, Iterable

from taxonomy import VOCABULARIES

DEFAULT_MAX_SENTENCES = 3
STRICT_MIN_LENGTH = 20
MAX_NON_ASCII_CHARS = 8
MAX_NON_ASCII_RATIO = 0.02
MIN_LETTER_RATIO = 0.35

_DEFAULT = "default"
_IN_STRING = "in_string"
_ESCAPED = "escaped"

_FENCE_RE = re.compile(r"^\s*```")
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1")
_ITALIC_RE = re.compile(r"(?<![\w*])\*(?!\s)([^*]+?)(?<!\s)\*(?![\w*])|(?<![\w_])_(?!\s)([^_]+?)(?<!\s)_(?![\w_])")
_LABEL_PREFIX_RE = re.compile(r"^(?:lay\s+|plain[- ]language\s+)?summary\s*[:\-]\s*", re.IGNORECASE)
_LABEL_ONLY_RE = re.compile(r"^(?:lay\s+|plain[- ]language\s+)?summary\s*:?$", re.IGNORECASE)
_BULLET_RE = re.compile(r"^(?:[-•>]\s+)")
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

# Short label-like lines ending in ":" ("Key findings:") are headings, not prose.
HEADING_MAX_WORDS = 6


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` span outside quoted strings that decodes to an object.

    Providers often wrap the object in commentary or markdown fences. The scan
    is a three-state machine (default / in-string / escaped) so braces inside
    string values never affect the depth count. A span that fails to decode
    does not end the search; scanning resumes at the next ``{``.
    """
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        end = _balanced_span_end(text, start)
        if end is not None:
            try:
                value = json.loads(text[start : end + 1])
            except ValueError:
                value = None
            if isinstance(value, dict):
                return value
        start = text.find("{", start + 1)
    return None


def _balanced_span_end(text: str, start: int) -> int | None:
    state = _DEFAULT
    depth = 0
    for index in range(start, len(text)):
        char = text[index]
        if state == _ESCAPED:
            state = _IN_STRING
        elif state == _IN_STRING:
            if char == "\\":
                state = _ESCAPED
            elif char == '"':
                state = _DEFAULT
        elif char == '"':
            state = _IN_STRING
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def sanitize_summary(text: str | None, title: str | None = None, max_sentences: int = DEFAULT_MAX_SENTENCES) -> str:
    """Strip markdown, headings and title restatements, then cap the sentence count."""
    if not text:
        return ""

    title_key = _normalize_for_compare(title)
    kept: list[str] = []
    for raw_line in text.splitlines():
        if _FENCE_RE.match(raw_line):
            continue
        line = _strip_emphasis(raw_line).strip().strip("`").strip()
        line = _BULLET_RE.sub("", line)
        if not line or line.startswith("#") or _LABEL_ONLY_RE.match(line):
            continue
        if line.endswith(":") and len(line.split()) <= HEADING_MAX_WORDS:
            continue
        line = _LABEL_PREFIX_RE.sub("", line).strip()
        if not line:
            continue
        if title_key and _restates_title(line, title_key):
            continue
        kept.append(line)

    collapsed = _WHITESPACE_RE.sub(" ", " ".join(kept)).strip()
    return truncate_sentences(collapsed, max_sentences)


def truncate_sentences(text: str, max_sentences: int = DEFAULT_MAX_SENTENCES) -> str:
    if not text or max_sentences <= 0:
        return text
    sentences = _SENTENCE_BOUNDARY_RE.split(text)
    return " ".join(sentences[:max_sentences]).strip()


def check_summary_quality(summary: str | None, strict: bool = False) -> str | None:
    """Return a rejection reason, or None when the summary is acceptable."""
    if not summary or not summary.strip():
        return "empty summary"

    text = summary.strip()
    if not _is_balanced(text, "(", ")"):
        return "unbalanced parentheses"
    if not _is_balanced(text, "[", "]"):
        return "unbalanced brackets"

    if not strict:
        return None

    length = len(text)
    if length < STRICT_MIN_LENGTH:
        return f"summary shorter than {STRICT_MIN_LENGTH} characters"
    non_ascii = sum(1 for char in text if ord(char) > 127)
    if non_ascii > MAX_NON_ASCII_CHARS and non_ascii / length > MAX_NON_ASCII_RATIO:
        return f"too many non-ASCII characters ({non_ascii})"
    letters = sum(1 for char in text if char.isalpha())
    if letters / length < MIN_LETTER_RATIO:
        return "low letter density"
    return None


def canonicalize_tags(
    topics: Any = None,
    study_design: Any = None,
    methodological_focus: Any = None,
) -> dict[str, list[str]]:
    """Route every returned tag into the vocabulary that actually contains it.

    Matching is case- and whitespace-insensitive, output uses the canonical
    spelling, duplicates collapse, input order is kept, and tags found in no
    vocabulary are dropped.
    """
    routed: dict[str, list[str]] = {name: [] for name in VOCABULARIES}
    for tag in (*_as_tag_list(topics), *_as_tag_list(study_design), *_as_tag_list(methodological_focus)):
        match = _TAG_LOOKUP.get(_tag_key(tag))
        if match is None:
            continue
        vocabulary, canonical = match
        if canonical not in routed[vocabulary]:
            routed[vocabulary].append(canonical)
    return routed


def coerce_exclude(value: Any) -> bool:
    if value is True:
        return True
    return isinstance(value, str) and value.strip().lower() == "true"


def _tag_key(tag: str) -> str:
    return _WHITESPACE_RE.sub(" ", tag).strip().casefold()


_TAG_LOOKUP: dict[str, tuple[str, str]] = {
    _tag_key(tag): (vocabulary, tag)
    for vocabulary, tags in VOCABULARIES.items()
    for tag in tags
}


def _as_tag_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, Iterable):
        return [item for item in value if isinstance(item, str) and item.strip()]
    return []


def _strip_emphasis(line: str) -> str:
    line = _BOLD_RE.sub(r"\2", line)
    return _ITALIC_RE.sub(lambda m: m.group(1) or m.group(2) or "", line)


def _normalize_for_compare(text: str | None) -> str:
    if not text:
        return ""
    return _NON_ALNUM_RE.sub(" ", text.lower()).strip()


def _restates_title(line: str, title_key: str) -> bool:
    line_key = _normalize_for_compare(line)
    if line_key.startswith("title "):
        line_key = line_key[len("title ") :]
    return line_key == title_key


def _is_balanced(text: str, opener: str, closer: str) -> bool:
    depth = 0
    for char in text:
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth < 0:
                return False
    return depth == 0
