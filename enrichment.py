"""Lay-summary and taxonomy enrichment on top of a pluggable text provider."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, TypeVar

from llm_client import ErrorKind, ProviderError, TextProvider, build_provider, mentions_rate_limit
from models import Enrichment, Publication
from response_parser import (
    DEFAULT_MAX_SENTENCES,
    canonicalize_tags,
    check_summary_quality,
    coerce_exclude,
    extract_json_object,
    sanitize_summary,
)
from taxonomy import DEFAULT_CLASSIFICATION_PROMPT, DEFAULT_SYSTEM_PROMPT, ENRICHMENT_INSTRUCTIONS

MIN_ABSTRACT_LENGTH = 50
DEFAULT_RETRY_ATTEMPTS = 2
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_RATE_LIMIT_DELAY_SECONDS = 5.0
DEFAULT_BATCH_DELAY_SECONDS = 2.0
SUMMARY_MAX_TOKENS = 600
CLASSIFICATION_MAX_TOKENS = 300

# Failures that no amount of retrying fixes and that doom every later record too.
FATAL_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.CONFIG})

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class EnrichmentOptions:
    provider: TextProvider | None = None
    provider_name: str | None = None
    model: str | None = None
    api_key: str | None = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    classification_prompt: str = DEFAULT_CLASSIFICATION_PROMPT
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    rate_limit_delay_seconds: float = DEFAULT_RATE_LIMIT_DELAY_SECONDS
    max_sentences: int = DEFAULT_MAX_SENTENCES
    strict_quality: bool = False
    temperature: float = 0.3

    def resolve_provider(self) -> TextProvider:
        if self.provider is not None:
            return self.provider
        return build_provider(self.provider_name, self.model, self.api_key)

    @property
    def model_label(self) -> str | None:
        provider = self.provider
        if provider is not None:
            return f"{provider.name}:{provider.model}"
        if self.provider_name or self.model:
            return ":".join(part for part in (self.provider_name, self.model) if part)
        return None


@dataclass(frozen=True, slots=True)
class EnrichmentResult:
    summary: str
    topics: list[str] = field(default_factory=list)
    study_design: list[str] = field(default_factory=list)
    methodological_focus: list[str] = field(default_factory=list)
    exclude: bool = False

    def to_enrichment(self) -> Enrichment:
        return Enrichment(
            lay_summary=self.summary,
            topics=list(self.topics),
            study_design=list(self.study_design),
            methodological_focus=list(self.methodological_focus),
            exclude=self.exclude,
        )


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    topics: list[str] = field(default_factory=list)
    study_design: list[str] = field(default_factory=list)
    methodological_focus: list[str] = field(default_factory=list)
    exclude: bool = False

    def apply_to(self, enrichment: Enrichment) -> Enrichment:
        """Replace the tags and flag, keeping the existing lay summary."""
        return replace(
            enrichment,
            topics=list(self.topics),
            study_design=list(self.study_design),
            methodological_focus=list(self.methodological_focus),
            exclude=self.exclude,
        )


def enrich(
    title: str,
    abstract: str | None,
    options: EnrichmentOptions | None = None,
    *,
    pmid: str | None = None,
) -> EnrichmentResult | None:
    """Summarize and classify one record.

    Returns None without contacting the provider when the abstract is shorter
    than 50 characters, and None once retries are exhausted. Only
    non-retryable provider errors (auth, config, rejected request) raise.
    """
    options = options or EnrichmentOptions()
    label = pmid or (title or "")[:80]
    if not abstract or len(abstract) < MIN_ABSTRACT_LENGTH:
        LOGGER.debug("Skipping enrichment for %s: abstract has %s chars", label, len(abstract or ""))
        return None

    provider = options.resolve_provider()
    prompt = f"{ENRICHMENT_INSTRUCTIONS}\n\nTitle: {title}\n\nAbstract: {abstract}"

    def attempt() -> EnrichmentResult:
        text = provider.complete(
            prompt,
            options.system_prompt,
            max_tokens=SUMMARY_MAX_TOKENS,
            temperature=options.temperature,
        )
        return parse_enrichment_response(
            text,
            title,
            max_sentences=options.max_sentences,
            strict=options.strict_quality,
        )

    return _call_with_retries(attempt, options, label=label, task="enrichment")


def classify(
    title: str,
    abstract: str | None,
    options: EnrichmentOptions | None = None,
    *,
    lay_summary: str | None = None,
    pmid: str | None = None,
) -> ClassificationResult | None:
    """Classification-only pass; works from the title when there is no abstract."""
    options = options or EnrichmentOptions()
    label = pmid or (title or "")[:80]
    if not (title or abstract or lay_summary):
        return None

    provider = options.resolve_provider()
    parts = [f"Title: {title or 'Not available.'}", f"Abstract: {abstract or 'Not available.'}"]
    if lay_summary:
        parts.append(f"Lay summary: {lay_summary}")
    prompt = "\n\n".join(parts)

    def attempt() -> ClassificationResult:
        text = provider.complete(
            prompt,
            options.classification_prompt,
            max_tokens=CLASSIFICATION_MAX_TOKENS,
            temperature=options.temperature,
        )
        return parse_classification_response(text)

    return _call_with_retries(attempt, options, label=label, task="classification")


def parse_enrichment_response(
    text: str,
    title: str | None,
    *,
    max_sentences: int = DEFAULT_MAX_SENTENCES,
    strict: bool = False,
) -> EnrichmentResult:
    """Validate raw provider text; raises a retryable ProviderError on bad output."""
    payload = _require_json_object(text)

    raw_summary = _first_present(payload, "summary", "lay_summary", "laySummary")
    summary = sanitize_summary(raw_summary if isinstance(raw_summary, str) else "", title, max_sentences)
    reason = check_summary_quality(summary, strict=strict)
    if reason:
        raise ProviderError(ErrorKind.QUALITY, f"summary rejected: {reason}")

    tags = _canonical_tags(payload)
    return EnrichmentResult(
        summary=summary,
        topics=tags["topics"],
        study_design=tags["study_design"],
        methodological_focus=tags["methodological_focus"],
        exclude=coerce_exclude(payload.get("exclude")),
    )


def parse_classification_response(text: str) -> ClassificationResult:
    payload = _require_json_object(text)

    tags = _canonical_tags(payload)
    exclude = coerce_exclude(payload.get("exclude"))
    if not exclude and not any(tags.values()):
        raise ProviderError(ErrorKind.MALFORMED, "response contained no recognized tags")
    return ClassificationResult(
        topics=tags["topics"],
        study_design=tags["study_design"],
        methodological_focus=tags["methodological_focus"],
        exclude=exclude,
    )


def select_for_enrichment(
    publications: Iterable[Publication],
    *,
    order: str = "recent",
    max_items: int | None = None,
    skip_if_enriched: bool = True,
) -> list[Publication]:
    """Records eligible for enrichment, newest first when ``order == "recent"``."""
    candidates = [
        pub
        for pub in publications
        if len(pub.abstract or "") >= MIN_ABSTRACT_LENGTH
        and not (skip_if_enriched and pub.enrichment.lay_summary)
    ]
    if order == "recent":
        candidates.sort(key=_recency_key, reverse=True)
    if max_items is not None:
        candidates = candidates[: max(0, max_items)]
    return candidates


def enrich_batch(
    publications: Iterable[Publication],
    options: EnrichmentOptions | None = None,
    *,
    width: int = 1,
    delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
    max_items: int | None = None,
    order: str = "recent",
    skip_if_enriched: bool = True,
    should_stop: Callable[[], bool] | None = None,
) -> dict[str, EnrichmentResult]:
    """Enrich eligible records ``width`` at a time, pausing between batches.

    A record that fails is left out of the result; only auth/config errors
    abort the whole batch.
    """
    options = options or EnrichmentOptions()
    selected = select_for_enrichment(
        publications, order=order, max_items=max_items, skip_if_enriched=skip_if_enriched
    )
    if not selected:
        return {}

    options = replace(options, provider=options.resolve_provider())
    LOGGER.info(
        "Enriching %s publications (provider=%s, width=%s, order=%s)",
        len(selected),
        options.model_label,
        width,
        order,
    )

    def work(pub: Publication) -> EnrichmentResult | None:
        return enrich(pub.title, pub.abstract, options, pmid=pub.pmid)

    results = _run_batches(selected, work, width=width, delay_seconds=delay_seconds, should_stop=should_stop)
    LOGGER.info("Enrichment finished: %s/%s publications enriched", len(results), len(selected))
    return results


def classify_batch(
    publications: Iterable[Publication],
    options: EnrichmentOptions | None = None,
    *,
    width: int = 1,
    delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
    should_stop: Callable[[], bool] | None = None,
) -> dict[str, ClassificationResult]:
    options = options or EnrichmentOptions()
    items = list(publications)
    if not items:
        return {}

    options = replace(options, provider=options.resolve_provider())

    def work(pub: Publication) -> ClassificationResult | None:
        return classify(
            pub.title,
            pub.abstract,
            options,
            lay_summary=pub.enrichment.lay_summary,
            pmid=pub.pmid,
        )

    results = _run_batches(items, work, width=width, delay_seconds=delay_seconds, should_stop=should_stop)
    LOGGER.info("Classification finished: %s/%s publications classified", len(results), len(items))
    return results


def _run_batches(
    items: list[Publication],
    work: Callable[[Publication], T | None],
    *,
    width: int,
    delay_seconds: float,
    should_stop: Callable[[], bool] | None,
) -> dict[str, T]:
    width = max(1, width)
    results: dict[str, T] = {}

    def guarded(pub: Publication) -> tuple[str, T | None]:
        try:
            return pub.pmid, work(pub)
        except ProviderError as exc:
            if exc.kind in FATAL_KINDS:
                raise
            LOGGER.warning("Giving up on pmid=%s (%s): %s", pub.pmid, exc.kind.value, exc)
        except Exception:
            LOGGER.exception("Unexpected failure while processing pmid=%s", pub.pmid)
        return pub.pmid, None

    pool = ThreadPoolExecutor(max_workers=width) if width > 1 else None
    try:
        for start in range(0, len(items), width):
            if should_stop is not None and should_stop():
                LOGGER.info("Stop requested; %s of %s records left unprocessed", len(items) - start, len(items))
                break
            batch = items[start : start + width]
            outcomes = pool.map(guarded, batch) if pool else map(guarded, batch)
            for pmid, value in outcomes:
                if value is not None:
                    results[pmid] = value
            if start + width < len(items) and delay_seconds > 0:
                time.sleep(delay_seconds)
    finally:
        if pool is not None:
            pool.shutdown(wait=True)
    return results


def _call_with_retries(
    attempt_fn: Callable[[], T],
    options: EnrichmentOptions,
    *,
    label: str,
    task: str,
) -> T | None:
    max_attempts = max(0, options.retry_attempts) + 1
    for attempt in range(1, max_attempts + 1):
        try:
            return attempt_fn()
        except ProviderError as exc:
            if not exc.retryable:
                LOGGER.error("%s failed for %s with non-retryable %s error: %s", task, label, exc.kind.value, exc)
                raise
            LOGGER.warning(
                "%s failed for %s on attempt %s/%s (%s): %s",
                task,
                label,
                attempt,
                max_attempts,
                exc.kind.value,
                exc,
            )
            if attempt < max_attempts:
                time.sleep(backoff_seconds(exc.kind, attempt, options))

    LOGGER.warning("%s abandoned for %s after %s attempts", task, label, max_attempts)
    return None


def backoff_seconds(kind: ErrorKind, attempt: int, options: EnrichmentOptions) -> float:
    step = options.rate_limit_delay_seconds if kind is ErrorKind.RATE_LIMIT else options.retry_delay_seconds
    return step * attempt


def _require_json_object(text: str) -> dict[str, Any]:
    payload = extract_json_object(text)
    if payload is not None:
        return payload
    if mentions_rate_limit(text):
        raise ProviderError(ErrorKind.RATE_LIMIT, f"provider replied with a throttling notice: {text[:200]}")
    raise ProviderError(ErrorKind.MALFORMED, "response contained no JSON object")


def _canonical_tags(payload: dict[str, Any]) -> dict[str, list[str]]:
    return canonicalize_tags(
        payload.get("topics"),
        _first_present(payload, "study_design", "studyDesign"),
        _first_present(payload, "methodological_focus", "methodologicalFocus"),
    )


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _recency_key(pub: Publication) -> tuple[int, int, str]:
    pmid = int(pub.pmid) if pub.pmid.isdigit() else 0
    return (pub.year or 0, pmid, pub.title or "")
