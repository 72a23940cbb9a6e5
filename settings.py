"""Environment-driven configuration; every value has a default so the pipeline runs unconfigured."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta

from enrichment import EnrichmentOptions


@dataclass(frozen=True, slots=True)
class Settings:
    llm_provider: str = "openrouter"
    llm_model: str | None = None
    llm_retry_attempts: int = 2
    llm_retry_delay_seconds: float = 1.0
    llm_rate_limit_delay_seconds: float = 5.0
    llm_concurrency: int = 1
    llm_batch_delay_seconds: float = 2.0
    llm_summaries_per_refresh: int | None = None
    pubmed_api_key: str | None = None
    pubmed_timeout_seconds: float = 15.0
    pubmed_retries: int = 2
    pubmed_backoff_seconds: float = 0.5
    pubmed_max_per_researcher: int = 200
    since_years_back: int = 3
    cache_max_age: timedelta = timedelta(hours=24)
    cache_lock_ttl: timedelta = timedelta(minutes=2)
    researchers_file: str = "researchers.json"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            llm_provider=os.getenv("LLM_PROVIDER", "openrouter").strip().lower() or "openrouter",
            llm_model=os.getenv("LLM_MODEL") or None,
            llm_retry_attempts=_int_env("LLM_RETRY_ATTEMPTS", 2),
            llm_retry_delay_seconds=_float_env("LLM_RETRY_DELAY_SECONDS", 1.0),
            llm_rate_limit_delay_seconds=_float_env("LLM_RATE_LIMIT_DELAY_SECONDS", 5.0),
            llm_concurrency=max(1, _int_env("LLM_CONCURRENCY", 1)),
            llm_batch_delay_seconds=_float_env("LLM_BATCH_DELAY_SECONDS", 2.0),
            llm_summaries_per_refresh=_optional_int_env("LLM_SUMMARIES_PER_REFRESH"),
            pubmed_api_key=os.getenv("PUBMED_API_KEY") or None,
            pubmed_timeout_seconds=_float_env("PUBMED_TIMEOUT_SECONDS", 15.0),
            pubmed_retries=_int_env("PUBMED_RETRIES", 2),
            pubmed_backoff_seconds=_float_env("PUBMED_BACKOFF_SECONDS", 0.5),
            pubmed_max_per_researcher=_int_env("PUBMED_MAX_PER_RESEARCHER", 200),
            since_years_back=_int_env("PUBLICATIONS_SINCE_YEARS_BACK", 3),
            cache_max_age=timedelta(seconds=_float_env("PUBMED_CACHE_MAX_AGE_SECONDS", 86400)),
            cache_lock_ttl=timedelta(seconds=_float_env("PUBMED_CACHE_LOCK_TTL_SECONDS", 120)),
            researchers_file=os.getenv("RESEARCHERS_FILE", "researchers.json"),
        )

    def enrichment_options(self) -> EnrichmentOptions:
        return EnrichmentOptions(
            provider_name=self.llm_provider,
            model=self.llm_model,
            retry_attempts=self.llm_retry_attempts,
            retry_delay_seconds=self.llm_retry_delay_seconds,
            rate_limit_delay_seconds=self.llm_rate_limit_delay_seconds,
        )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


def _optional_int_env(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    return _int_env(name, 0) if raw else None
