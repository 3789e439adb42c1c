"""Tests for text generation backends and variation selection."""

import json

import httpx
import pytest

from autopilot.providers import (
    AnthropicProvider,
    GeminiProvider,
    OpenAIProvider,
    ProviderError,
    choose_variation,
    get_provider,
    parse_variation_choice,
    register_provider,
)
from autopilot.retry import RetryPolicy
from tests.mocks import FakeTextProvider


NO_WAIT = RetryPolicy(max_retries=2, base_delay=0, max_delay=0, jitter_factor=0)


def _client(responses, seen):
    """MockTransport that replays (status, body) pairs and records requests."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status, body = queue.pop(0)
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# =============================================================================
# BACKENDS
# =============================================================================

@pytest.mark.asyncio
async def test_anthropic_request_and_response():
    seen = []
    body = {"content": [{"type": "text", "text": "Hello Dana"}],
            "usage": {"input_tokens": 12, "output_tokens": 3}}
    provider = AnthropicProvider(api_key="test-key", client=_client([(200, body)], seen),
                                 retry_policy=NO_WAIT)

    result = await provider.generate("Say hi", system_prompt="Be brief", max_tokens=50)

    assert result.text == "Hello Dana"
    assert result.token_usage == {"input_tokens": 12, "output_tokens": 3}
    assert result.provider == "anthropic"
    request = seen[0]
    assert request.url.path.endswith("/messages")
    assert request.headers["x-api-key"] == "test-key"
    assert request.headers["anthropic-version"] == "2023-06-01"
    payload = json.loads(request.content)
    assert payload["system"] == "Be brief"
    assert payload["max_tokens"] == 50


@pytest.mark.asyncio
async def test_openai_request_and_response():
    seen = []
    body = {"choices": [{"message": {"content": "Hi there"}}],
            "usage": {"prompt_tokens": 8, "completion_tokens": 2}}
    provider = OpenAIProvider(api_key="sk-test", client=_client([(200, body)], seen), retry_policy=NO_WAIT)

    result = await provider.generate("Say hi", system_prompt="Be brief")

    assert result.text == "Hi there"
    assert result.token_usage == {"input_tokens": 8, "output_tokens": 2}
    assert seen[0].headers["authorization"] == "Bearer sk-test"
    messages = json.loads(seen[0].content)["messages"]
    assert [m["role"] for m in messages] == ["system", "user"]


@pytest.mark.asyncio
async def test_gemini_request_and_response():
    seen = []
    body = {"candidates": [{"content": {"parts": [{"text": "Hi "}, {"text": "Dana"}]}}],
            "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 2}}
    provider = GeminiProvider(api_key="g-key", model="gemini-test",
                              client=_client([(200, body)], seen), retry_policy=NO_WAIT)

    result = await provider.generate("Say hi")

    assert result.text == "Hi Dana"
    assert seen[0].url.path.endswith("/models/gemini-test:generateContent")
    assert seen[0].headers["x-goog-api-key"] == "g-key"


@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    seen = []
    ok = {"content": [{"text": "done"}], "usage": {}}
    provider = AnthropicProvider(api_key="k", client=_client([(429, {}), (503, {}), (200, ok)], seen),
                                 retry_policy=NO_WAIT)

    result = await provider.generate("prompt")

    assert result.text == "done"
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_retries_exhausted_raise_retryable_error():
    seen = []
    provider = OpenAIProvider(api_key="k", client=_client([(500, {})] * 3, seen), retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("prompt")

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 500
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    seen = []
    provider = AnthropicProvider(api_key="k", client=_client([(400, {"error": "bad"})], seen),
                                 retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("prompt")

    assert exc_info.value.retryable is False
    assert exc_info.value.status_code == 400
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_transport_failure_is_retryable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAIProvider(api_key="k", client=client,
                              retry_policy=RetryPolicy(max_retries=0, base_delay=0))

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("prompt")

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    provider = AnthropicProvider(retry_policy=NO_WAIT)

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("prompt")

    assert exc_info.value.retryable is False


# =============================================================================
# FACTORY
# =============================================================================

def test_get_provider_by_tag():
    assert isinstance(get_provider("openai", api_key="k"), OpenAIProvider)
    assert isinstance(get_provider("GEMINI", api_key="k"), GeminiProvider)


def test_get_provider_uses_configured_default(monkeypatch):
    monkeypatch.setenv("AUTOPILOT_PROVIDER", "openai")
    assert isinstance(get_provider(api_key="k"), OpenAIProvider)


def test_unknown_provider_tag():
    with pytest.raises(ValueError):
        get_provider("carrier-pigeon")


def test_registered_provider_is_built():
    register_provider("fake", FakeTextProvider)
    assert isinstance(get_provider("fake"), FakeTextProvider)


# =============================================================================
# VARIATION SELECTION
# =============================================================================

@pytest.mark.parametrize("raw,index,confidence,structured", [
    ('{"choice": 2, "confidence": 0.8}', 1, 0.8, True),
    ('Sure! {"choice": 1} is best', 0, 1.0, True),
    ('{"choice": 2, "confidence": 3}', 1, 1.0, True),
    ("I would pick Variation 2 for its hook.", 1, 0.3, False),
    ("Variation 1 and Variation 2 are both fine.", None, 0.0, False),
    ('{"choice": 7, "confidence": 0.9}', None, 0.0, False),
    ("", None, 0.0, False),
])
def test_parse_variation_choice(raw, index, confidence, structured):
    choice = parse_variation_choice(raw, count=2)
    assert choice.index == index
    assert choice.confidence == pytest.approx(confidence)
    assert choice.structured is structured


@pytest.mark.asyncio
async def test_choose_variation_prompts_with_candidates():
    provider = FakeTextProvider(responses=['{"choice": 1, "confidence": 0.7}'])

    choice = await choose_variation(provider, "Original", ["First", "Second"])

    assert choice.index == 0
    prompt = provider.prompts[0]["prompt"]
    assert "Variation 1:\nFirst" in prompt
    assert "Variation 2:\nSecond" in prompt
    assert "JSON" in provider.prompts[0]["system_prompt"]
