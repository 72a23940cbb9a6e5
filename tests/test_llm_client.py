from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest
import requests

from llm_client import (
    AnthropicProvider,
    ErrorKind,
    OllamaProvider,
    OpenRouterGoogleProvider,
    OpenRouterProvider,
    PerplexityProvider,
    ProviderError,
    build_provider,
    classify_http_failure,
)


def _chat_response(content: str | None) -> MagicMock:
    choice = MagicMock()
    choice.message.content = content
    response = MagicMock()
    response.choices = [choice]
    response.error = None
    return response


def _openai_status_error(cls, status: int, message: str = "error"):
    request = httpx.Request("POST", "https://example.test/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return cls(message, response=response, body=None)


def test_build_provider_rejects_unknown_name() -> None:
    with pytest.raises(ProviderError) as excinfo:
        build_provider("nope")
    assert excinfo.value.kind is ErrorKind.CONFIG


def test_missing_api_key_is_a_config_error() -> None:
    with patch.dict("os.environ", {}, clear=True):
        with pytest.raises(ProviderError) as excinfo:
            build_provider("openrouter")
    assert excinfo.value.kind is ErrorKind.CONFIG
    assert "OPENROUTER_API_KEY" in str(excinfo.value)


def test_build_provider_reads_env_defaults() -> None:
    env = {"LLM_PROVIDER": "groq", "LLM_MODEL": "llama-test", "GROQ_API_KEY": "k"}
    with patch.dict("os.environ", env, clear=True), patch("llm_client.OpenAI"):
        provider = build_provider()
    assert provider.name == "groq"
    assert provider.model == "llama-test"


def test_openrouter_referer_read_when_provider_is_built() -> None:
    with patch.dict("os.environ", {"SITE_URL": "https://unit.example.org"}), \
         patch("llm_client.OpenAI") as mock_openai:
        OpenRouterProvider(api_key="k")
    headers = mock_openai.call_args.kwargs["default_headers"]
    assert headers["HTTP-Referer"] == "https://unit.example.org"


def test_system_prompt_sent_as_separate_role() -> None:
    client = MagicMock()
    client.chat.completions.create.return_value = _chat_response("  hello  ")
    with patch("llm_client.OpenAI", return_value=client):
        provider = OpenRouterProvider(api_key="k")
        text = provider.complete("user prompt", "be brief")

    assert text == "hello"
    messages = client.chat.completions.create.call_args.kwargs["messages"]
    assert messages == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "user prompt"},
    ]


def test_google_models_fold_system_into_user_turn() -> None:
    client = MagicMock()
    client.chat.completions.create.return_value = _chat_response("ok")
    with patch("llm_client.OpenAI", return_value=client):
        provider = OpenRouterGoogleProvider(api_key="k")
        provider.complete("user prompt", "be brief")

    assert provider.supports_system_role is False
    messages = client.chat.completions.create.call_args.kwargs["messages"]
    assert messages == [{"role": "user", "content": "be brief\n\nuser prompt"}]


def test_empty_completion_raises_empty() -> None:
    client = MagicMock()
    client.chat.completions.create.return_value = _chat_response("   ")
    with patch("llm_client.OpenAI", return_value=client):
        provider = OpenRouterProvider(api_key="k")
        with pytest.raises(ProviderError) as excinfo:
            provider.complete("p", "s")
    assert excinfo.value.kind is ErrorKind.EMPTY


@pytest.mark.parametrize(
    ("exc_cls", "status", "kind"),
    [
        (openai.RateLimitError, 429, ErrorKind.RATE_LIMIT),
        (openai.AuthenticationError, 401, ErrorKind.AUTH),
        (openai.InternalServerError, 502, ErrorKind.TRANSPORT),
        (openai.BadRequestError, 400, ErrorKind.REQUEST),
    ],
)
def test_openai_sdk_errors_are_tagged(exc_cls, status, kind) -> None:
    client = MagicMock()
    client.chat.completions.create.side_effect = _openai_status_error(exc_cls, status)
    with patch("llm_client.OpenAI", return_value=client):
        provider = OpenRouterProvider(api_key="k")
        with pytest.raises(ProviderError) as excinfo:
            provider.complete("p", "s")
    assert excinfo.value.kind is kind


def test_openrouter_error_body_with_queue_message_is_rate_limit() -> None:
    response = MagicMock()
    response.error = {"message": "Model is queued, please retry shortly", "code": 503}
    client = MagicMock()
    client.chat.completions.create.return_value = response
    with patch("llm_client.OpenAI", return_value=client):
        provider = OpenRouterProvider(api_key="k")
        with pytest.raises(ProviderError) as excinfo:
            provider.complete("p", "s")
    assert excinfo.value.kind is ErrorKind.RATE_LIMIT


@pytest.mark.parametrize(
    ("status", "body", "kind"),
    [
        (429, "", ErrorKind.RATE_LIMIT),
        (403, "", ErrorKind.AUTH),
        (400, "Request queue is full", ErrorKind.RATE_LIMIT),
        (503, "", ErrorKind.TRANSPORT),
        (404, "model not found", ErrorKind.REQUEST),
    ],
)
def test_classify_http_failure(status, body, kind) -> None:
    assert classify_http_failure(status, body) is kind


def test_anthropic_uses_system_field() -> None:
    block = MagicMock()
    block.text = "summary text"
    message = MagicMock()
    message.content = [block]
    client = MagicMock()
    client.messages.create.return_value = message

    with patch("llm_client.anthropic.Anthropic", return_value=client):
        provider = AnthropicProvider(api_key="k")
        assert provider.complete("user prompt", "be brief") == "summary text"

    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["system"] == "be brief"
    assert kwargs["messages"] == [{"role": "user", "content": "user prompt"}]


def test_ollama_posts_to_local_chat_endpoint() -> None:
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"message": {"content": "local answer"}}

    with patch.dict("os.environ", {"OLLAMA_HOST": "http://gpu-box:11434/"}), \
         patch("llm_client.requests.post", return_value=response) as mock_post:
        provider = OllamaProvider(model="llama3.1:8b")
        assert provider.complete("p", "s") == "local answer"

    assert mock_post.call_args.args[0] == "http://gpu-box:11434/api/chat"
    assert mock_post.call_args.kwargs["json"]["stream"] is False


def test_http_provider_maps_connection_errors_to_transport() -> None:
    with patch("llm_client.requests.post", side_effect=requests.ConnectionError("reset")):
        provider = PerplexityProvider(api_key="k")
        with pytest.raises(ProviderError) as excinfo:
            provider.complete("p", "s")
    assert excinfo.value.kind is ErrorKind.TRANSPORT
    assert excinfo.value.retryable is True


def test_http_provider_maps_429_to_rate_limit() -> None:
    response = MagicMock()
    response.status_code = 429
    response.text = "Too Many Requests"
    with patch("llm_client.requests.post", return_value=response):
        provider = PerplexityProvider(api_key="k")
        with pytest.raises(ProviderError) as excinfo:
            provider.complete("p", "s")
    assert excinfo.value.kind is ErrorKind.RATE_LIMIT
    assert excinfo.value.status == 429
