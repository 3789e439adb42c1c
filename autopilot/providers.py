#!/usr/bin/env python3
"""
Text generation providers.

Business logic only ever sees TextGenerationProvider.generate(); the
backend is picked once by get_provider(tag) from a registry, so adding a
backend never touches the callers.

Backends:
- anthropic  (Messages API)
- openai     (Chat Completions API)
- gemini     (generateContent API)
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from autopilot.config import get_provider_settings
from autopilot.retry import RetryPolicy, retry_async


logger = logging.getLogger("providers")


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class GenerationResult:
    """Generated text plus the provider's token usage report."""
    text: str
    token_usage: Dict[str, int] = field(default_factory=dict)
    provider: str = ""
    model: str = ""


class ProviderError(Exception):
    """Raised by any backend. retryable=True for rate limits, timeouts and 5xx."""

    def __init__(self, message: str, retryable: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


@dataclass
class VariationChoice:
    index: Optional[int]
    confidence: float
    structured: bool
    raw: str = ""


# =============================================================================
# PROVIDER INTERFACE
# =============================================================================

class TextGenerationProvider(ABC):
    """Opaque text generation capability."""

    name = "base"

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> GenerationResult:
        ...

    async def close(self) -> None:
        return None


class _HttpProvider(TextGenerationProvider):
    """Shared HTTP plumbing: API key lookup, retries and error mapping."""

    api_key_env = ""
    default_model = ""
    default_base_url = ""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        settings = get_provider_settings()
        self.api_key = api_key or os.getenv(self.api_key_env, "")
        self.model = model or self.default_model
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings["timeout_seconds"]
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=settings["max_retries"], base_delay=1.0, max_delay=30.0
        )
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderError(f"{self.api_key_env} not configured", retryable=False)

        async def attempt() -> Dict[str, Any]:
            try:
                response = await self._get_client().post(url, json=payload, headers=headers)
            except httpx.TimeoutException as exc:
                raise ProviderError(f"{self.name} timeout: {exc}", retryable=True) from exc
            except httpx.HTTPError as exc:
                raise ProviderError(f"{self.name} transport error: {exc}", retryable=True) from exc
            if response.status_code == 429 or response.status_code >= 500:
                raise ProviderError(
                    f"{self.name} returned {response.status_code}",
                    retryable=True, status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise ProviderError(
                    f"{self.name} rejected request ({response.status_code}): {response.text[:200]}",
                    retryable=False, status_code=response.status_code,
                )
            return response.json()

        return await retry_async(
            attempt, self.retry_policy, (ProviderError,),
            should_retry=lambda exc: getattr(exc, "retryable", False),
            operation_name=f"{self.name}.generate",
        )


class AnthropicProvider(_HttpProvider):
    name = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"
    default_model = "claude-3-5-sonnet-latest"
    default_base_url = "https://api.anthropic.com/v1"

    async def generate(self, prompt, system_prompt=None, max_tokens=1000, temperature=0.7):
        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            payload["system"] = system_prompt

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        data = await self._post(f"{self.base_url}/messages", payload, headers)

        text = ""
        if data.get("content"):
            text = data["content"][0].get("text", "")
        usage = data.get("usage", {})
        return GenerationResult(
            text=text,
            token_usage={
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
            },
            provider=self.name,
            model=self.model,
        )


class OpenAIProvider(_HttpProvider):
    name = "openai"
    api_key_env = "OPENAI_API_KEY"
    default_model = "gpt-4o-mini"
    default_base_url = "https://api.openai.com/v1"

    async def generate(self, prompt, system_prompt=None, max_tokens=1000, temperature=0.7):
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        data = await self._post(f"{self.base_url}/chat/completions", payload, headers)

        text = ""
        if data.get("choices"):
            text = data["choices"][0].get("message", {}).get("content", "") or ""
        usage = data.get("usage", {})
        return GenerationResult(
            text=text,
            token_usage={
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
            },
            provider=self.name,
            model=self.model,
        )


class GeminiProvider(_HttpProvider):
    name = "gemini"
    api_key_env = "GEMINI_API_KEY"
    default_model = "gemini-1.5-flash"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    async def generate(self, prompt, system_prompt=None, max_tokens=1000, temperature=0.7):
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": max_tokens, "temperature": temperature},
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        data = await self._post(f"{self.base_url}/models/{self.model}:generateContent", payload, headers)

        text = ""
        candidates = data.get("candidates") or []
        if candidates:
            parts = candidates[0].get("content", {}).get("parts", [])
            text = "".join(part.get("text", "") for part in parts)
        usage = data.get("usageMetadata", {})
        return GenerationResult(
            text=text,
            token_usage={
                "input_tokens": usage.get("promptTokenCount", 0),
                "output_tokens": usage.get("candidatesTokenCount", 0),
            },
            provider=self.name,
            model=self.model,
        )


# =============================================================================
# FACTORY
# =============================================================================

_PROVIDER_REGISTRY: Dict[str, Callable[..., TextGenerationProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
}


def register_provider(tag: str, factory: Callable[..., TextGenerationProvider]) -> None:
    _PROVIDER_REGISTRY[tag.lower()] = factory


def get_provider(tag: Optional[str] = None, **kwargs) -> TextGenerationProvider:
    """Build the provider registered under tag (defaults to AUTOPILOT_PROVIDER)."""
    tag = (tag or get_provider_settings()["default"]).lower()
    factory = _PROVIDER_REGISTRY.get(tag)
    if factory is None:
        raise ValueError(f"Unknown provider tag: {tag} (known: {sorted(_PROVIDER_REGISTRY)})")
    return factory(**kwargs)


# =============================================================================
# VARIATION SELECTION
# =============================================================================

_JSON_OBJECT = re.compile(r"\{[^{}]*\}", re.DOTALL)
_VARIATION_MENTION = re.compile(r"variation\s*#?\s*(\d+)", re.IGNORECASE)

SELECTION_SYSTEM_PROMPT = (
    "You are a marketing analyst. Reply with JSON only: "
    '{"choice": <variation number>, "confidence": <0..1>}'
)


def build_selection_prompt(original: str, variations: List[str]) -> str:
    lines = [f"Original content:\n{original}\n", "Candidate variations:"]
    for i, text in enumerate(variations, start=1):
        lines.append(f"Variation {i}:\n{text}\n")
    lines.append("Which variation is most likely to improve engagement?")
    return "\n".join(lines)


def parse_variation_choice(raw: str, count: int) -> VariationChoice:
    """
    Parse the selector's answer.

    Structured JSON is preferred. Free-text mentions of "Variation N" are a
    fallback and carry low confidence. Anything else yields index=None.
    """
    for match in _JSON_OBJECT.finditer(raw or ""):
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError:
            continue
        choice = data.get("choice")
        if isinstance(choice, int) and 1 <= choice <= count:
            try:
                confidence = float(data.get("confidence", 1.0))
            except (TypeError, ValueError):
                confidence = 0.0
            return VariationChoice(choice - 1, max(0.0, min(1.0, confidence)), True, raw)

    mentions = {int(m) for m in _VARIATION_MENTION.findall(raw or "")}
    valid = [m for m in mentions if 1 <= m <= count]
    if len(valid) == 1:
        return VariationChoice(valid[0] - 1, 0.3, False, raw)

    return VariationChoice(None, 0.0, False, raw)


async def choose_variation(
    provider: TextGenerationProvider, original: str, variations: List[str]
) -> VariationChoice:
    result = await provider.generate(
        build_selection_prompt(original, variations),
        system_prompt=SELECTION_SYSTEM_PROMPT,
        max_tokens=100,
        temperature=0.0,
    )
    choice = parse_variation_choice(result.text, len(variations))
    logger.info("Variation selection: index=%s confidence=%.2f structured=%s",
                choice.index, choice.confidence, choice.structured)
    return choice
