"""Text-generation provider adapters behind one ``complete()`` interface.

Every adapter turns its SDK's or HTTP API's failures into a ``ProviderError``
tagged with an ``ErrorKind``; the enrichment retry policy switches on that tag
and never inspects message text.
"""

from __future__ import annotations

import logging
import os
import re
from enum import Enum
from typing import Any

import anthropic
import requests
from openai import (
    APIConnectionError,
    APIStatusError,
    AuthenticationError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
)

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 400
REQUEST_TIMEOUT_SECONDS = 60

LOGGER = logging.getLogger(__name__)

_RATE_LIMIT_MARKERS_RE = re.compile(r"\b(rate|queue|retry)", re.IGNORECASE)


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    TRANSPORT = "transport"
    EMPTY = "empty"
    MALFORMED = "malformed"
    QUALITY = "quality"
    REQUEST = "request"
    AUTH = "auth"
    CONFIG = "config"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMIT,
    ErrorKind.TRANSPORT,
    ErrorKind.EMPTY,
    ErrorKind.MALFORMED,
    ErrorKind.QUALITY,
})


class ProviderError(RuntimeError):
    """Failure from a text-generation provider, tagged with its failure class."""

    def __init__(self, kind: ErrorKind, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __str__(self) -> str:
        return f"[{self.kind.value}] {super().__str__()}"


def mentions_rate_limit(text: str | None) -> bool:
    """True when free text reads like a throttling notice."""
    return bool(text) and _RATE_LIMIT_MARKERS_RE.search(text) is not None


def classify_http_failure(status: int | None, body: str = "") -> ErrorKind:
    """Map an HTTP status and error body onto an ErrorKind."""
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in (401, 403):
        return ErrorKind.AUTH
    if mentions_rate_limit(body):
        return ErrorKind.RATE_LIMIT
    if status is None or status >= 500 or status == 408:
        return ErrorKind.TRANSPORT
    return ErrorKind.REQUEST


class TextProvider:
    """Submit a prompt plus system instructions, return raw text.

    Providers that reject a separate system role set ``supports_system_role``
    to False; the instructions are then folded into the user turn.
    """

    name = "base"
    supports_system_role = True
    default_model = ""
    api_key_env: str | None = None

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.model = model or self.default_model
        self.timeout = timeout
        self.api_key = api_key or (os.getenv(self.api_key_env) if self.api_key_env else None)
        if self.api_key_env and not self.api_key:
            raise ProviderError(
                ErrorKind.CONFIG,
                f"{self.api_key_env} environment variable is required for provider {self.name}",
            )

    def build_messages(self, prompt: str, system: str | None) -> list[dict[str, str]]:
        if not system:
            return [{"role": "user", "content": prompt}]
        if not self.supports_system_role:
            return [{"role": "user", "content": f"{system}\n\n{prompt}"}]
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]

    def complete(
        self,
        prompt: str,
        system: str | None = None,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> str:
        LOGGER.debug("Calling provider=%s model=%s max_tokens=%s", self.name, self.model, max_tokens)
        text = self._send(
            self.build_messages(prompt, system),
            system,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if not text or not text.strip():
            raise ProviderError(ErrorKind.EMPTY, f"{self.name} returned an empty response")
        return text.strip()

    def _send(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        *,
        max_tokens: int,
        temperature: float,
    ) -> str | None:
        raise NotImplementedError


class OpenAICompatibleProvider(TextProvider):
    """Chat-completions providers reachable through the OpenAI SDK."""

    base_url: str | None = None

    def __init__(self, model: str | None = None, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(model, api_key, **kwargs)
        self._client = OpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
            default_headers=self.request_headers() or None,
        )

    def request_headers(self) -> dict[str, str]:
        return {}

    def _send(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        *,
        max_tokens: int,
        temperature: float,
    ) -> str | None:
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except RateLimitError as exc:
            raise ProviderError(ErrorKind.RATE_LIMIT, str(exc), status=429) from exc
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise ProviderError(ErrorKind.AUTH, str(exc), status=exc.status_code) from exc
        except APIConnectionError as exc:
            raise ProviderError(ErrorKind.TRANSPORT, str(exc)) from exc
        except APIStatusError as exc:
            kind = classify_http_failure(exc.status_code, str(exc.message))
            raise ProviderError(kind, str(exc), status=exc.status_code) from exc

        # OpenRouter reports upstream failures as a 200 with an "error" object.
        error = getattr(response, "error", None)
        if error and isinstance(error, (dict, str)):
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            kind = classify_http_failure(code if isinstance(code, int) else None, message)
            raise ProviderError(kind, f"{self.name} error: {message}", status=code if isinstance(code, int) else None)

        if not response.choices:
            raise ProviderError(ErrorKind.EMPTY, f"{self.name} returned no choices")
        return response.choices[0].message.content


class OpenRouterProvider(OpenAICompatibleProvider):
    name = "openrouter"
    base_url = "https://openrouter.ai/api/v1"
    default_model = "meta-llama/llama-3.3-70b-instruct:free"
    api_key_env = "OPENROUTER_API_KEY"

    def request_headers(self) -> dict[str, str]:
        return {
            "HTTP-Referer": os.getenv("SITE_URL", "https://localhost:3000"),
            "X-Title": "Research Unit Publications",
        }


class OpenRouterGoogleProvider(OpenRouterProvider):
    """Google-hosted models on OpenRouter reject system/developer messages."""

    name = "openrouter-google"
    supports_system_role = False
    default_model = "google/gemma-3-27b-it:free"


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"
    default_model = "gpt-4o-mini"
    api_key_env = "OPENAI_API_KEY"


class TogetherProvider(OpenAICompatibleProvider):
    name = "together"
    base_url = "https://api.together.xyz/v1"
    default_model = "meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo"
    api_key_env = "TOGETHER_API_KEY"


class GroqProvider(OpenAICompatibleProvider):
    name = "groq"
    base_url = "https://api.groq.com/openai/v1"
    default_model = "llama-3.1-8b-instant"
    api_key_env = "GROQ_API_KEY"


class AnthropicProvider(TextProvider):
    """Anthropic Messages API; the system prompt goes in the dedicated ``system=`` field."""

    name = "anthropic"
    default_model = "claude-3-5-haiku-latest"
    api_key_env = "ANTHROPIC_API_KEY"

    def __init__(self, model: str | None = None, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(model, api_key, **kwargs)
        self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout, max_retries=0)

    def _send(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        *,
        max_tokens: int,
        temperature: float,
    ) -> str | None:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [m for m in messages if m["role"] != "system"],
        }
        if system:
            kwargs["system"] = system

        try:
            response = self._client.messages.create(**kwargs)
        except anthropic.RateLimitError as exc:
            raise ProviderError(ErrorKind.RATE_LIMIT, str(exc), status=429) from exc
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as exc:
            raise ProviderError(ErrorKind.AUTH, str(exc), status=exc.status_code) from exc
        except anthropic.APIConnectionError as exc:
            raise ProviderError(ErrorKind.TRANSPORT, str(exc)) from exc
        except anthropic.APIStatusError as exc:
            # 529 is Anthropic's "overloaded" signal; treat it like a rate limit.
            status = exc.status_code
            kind = ErrorKind.RATE_LIMIT if status == 529 else classify_http_failure(status, str(exc.message))
            raise ProviderError(kind, str(exc), status=status) from exc

        if not response.content:
            return None
        return getattr(response.content[0], "text", None)


class _HttpJsonProvider(TextProvider):
    """Providers called with plain ``requests`` and a JSON body."""

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = requests.post(url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError(ErrorKind.TRANSPORT, f"{self.name} request failed: {exc}") from exc

        if response.status_code >= 400:
            kind = classify_http_failure(response.status_code, response.text)
            raise ProviderError(
                kind,
                f"{self.name} request failed {response.status_code}: {response.text[:500]}",
                status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(ErrorKind.MALFORMED, f"{self.name} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise ProviderError(ErrorKind.MALFORMED, f"Unexpected {self.name} response shape: {body}")
        if body.get("error"):
            message = str(body["error"])
            raise ProviderError(classify_http_failure(None, message), f"{self.name} error: {message}")
        return body


class OllamaProvider(_HttpJsonProvider):
    """Local/self-hosted Ollama server; no API key."""

    name = "ollama"
    default_model = "llama3.1:8b"

    def __init__(self, model: str | None = None, api_key: str | None = None, **kwargs: Any) -> None:
        super().__init__(model, api_key, **kwargs)
        self.host = os.getenv("OLLAMA_HOST", "http://localhost:11434").rstrip("/")

    def _send(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        *,
        max_tokens: int,
        temperature: float,
    ) -> str | None:
        body = self._post(
            f"{self.host}/api/chat",
            {
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
            {"Content-Type": "application/json"},
        )
        message = body.get("message")
        return message.get("content") if isinstance(message, dict) else None


class PerplexityProvider(_HttpJsonProvider):
    name = "perplexity"
    default_model = "sonar"
    api_key_env = "PERPLEXITY_API_KEY"
    api_url = "https://api.perplexity.ai/chat/completions"

    def _send(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        *,
        max_tokens: int,
        temperature: float,
    ) -> str | None:
        body = self._post(
            self.api_url,
            {
                "model": self.model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "messages": messages,
            },
            {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            return body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(ErrorKind.MALFORMED, f"Unexpected Perplexity response shape: {body}") from exc


PROVIDERS: dict[str, type[TextProvider]] = {
    cls.name: cls
    for cls in (
        OpenRouterProvider,
        OpenRouterGoogleProvider,
        OpenAIProvider,
        TogetherProvider,
        GroqProvider,
        AnthropicProvider,
        OllamaProvider,
        PerplexityProvider,
    )
}


def build_provider(
    name: str | None = None,
    model: str | None = None,
    api_key: str | None = None,
    **kwargs: Any,
) -> TextProvider:
    """Instantiate the adapter registered under ``name`` (default ``LLM_PROVIDER``)."""
    provider_name = (name or os.getenv("LLM_PROVIDER") or "openrouter").strip().lower()
    provider_cls = PROVIDERS.get(provider_name)
    if provider_cls is None:
        raise ProviderError(
            ErrorKind.CONFIG,
            f"Unknown LLM provider: {provider_name} (expected one of {', '.join(sorted(PROVIDERS))})",
        )
    return provider_cls(model=model or os.getenv("LLM_MODEL") or None, api_key=api_key, **kwargs)
