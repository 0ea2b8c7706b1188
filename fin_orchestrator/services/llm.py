# =============================================================================
# LLM Provider Layer — used inside the reporter and researcher workers
# =============================================================================
#
# The orchestration core never calls an LLM itself. A worker that needs one
# asks provider_for_payload(): the job input may pin a provider with
#   "llm_provider": "<kind>/<model>[@<base_url>]"
# and otherwise the process-wide default from settings is used.
#
#   ProviderSpec              parsed provider id (kind, model, base_url)
#   AnthropicProvider         Claude through AsyncAnthropic
#   OpenAICompatibleProvider  OpenAI, DeepSeek, Qwen, ... through AsyncOpenAI
#   build_provider(spec)      SDK client + provider for a spec
#
# DESIGN DECISION: Configuration problems are permanent task failures.
# A malformed pin or a missing API key will fail identically on every
# retry, so they raise PermanentTaskError up front. SDK call errors are
# left to propagate; the executor's failure classifier maps their status
# codes (429/5xx transient, other 4xx permanent).
#
# DESIGN DECISION: Providers take an already-built SDK client, so tests
# drive them with a mocked client and no network.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

from fin_orchestrator.config import settings
from fin_orchestrator.errors import PermanentTaskError

logger = logging.getLogger(__name__)

PROVIDER_KINDS = ("anthropic", "openai_compatible")


@dataclass
class LLMResponse:
    """Normalised completion from any provider."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int

    def usage(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


class LLMProvider(Protocol):
    """Anything with an async `complete()` can back a worker."""

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        ...


@dataclass(frozen=True)
class ProviderSpec:
    kind: str
    model: str
    base_url: str | None = None

    @classmethod
    def parse(cls, provider_id: str) -> ProviderSpec:
        """
        "anthropic/claude-sonnet-4-6"
            → ProviderSpec("anthropic", "claude-sonnet-4-6")
        "openai_compatible/deepseek-chat@https://api.deepseek.com/v1"
            → ProviderSpec("openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1")

        Raises:
            PermanentTaskError: malformed id or unknown provider kind.
        """
        kind, sep, rest = provider_id.partition("/")
        model, _, base_url = rest.partition("@")
        if not sep or not model:
            raise PermanentTaskError(
                f"Invalid llm_provider {provider_id!r}; expected 'kind/model[@base_url]'"
            )
        if kind not in PROVIDER_KINDS:
            raise PermanentTaskError(
                f"Unknown LLM provider kind {kind!r}; supported: {list(PROVIDER_KINDS)}"
            )
        return cls(kind=kind, model=model, base_url=base_url or None)

    @classmethod
    def from_settings(cls) -> ProviderSpec:
        return cls(kind=settings.llm_provider, model=settings.llm_model, base_url=settings.llm_base_url)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """System prompt is a top-level kwarg; text blocks are concatenated."""

    def __init__(self, client: Any, model: str) -> None:
        self._client = client
        self._model = model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or settings.llm_max_tokens,
            "temperature": settings.llm_temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)
        return LLMResponse(
            content="".join(block.text for block in response.content if block.type == "text"),
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


class OpenAICompatibleProvider:
    """System prompt travels as the first chat message."""

    def __init__(self, client: Any, model: str) -> None:
        self._client = client
        self._model = model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        chat = [{"role": "system", "content": system}] if system else []
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=chat + list(messages),
            max_tokens=max_tokens or settings.llm_max_tokens,
            temperature=settings.llm_temperature if temperature is None else temperature,
        )
        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def build_provider(
    spec: ProviderSpec,
    api_key: str | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Create the SDK client and provider for `spec`.

    Raises:
        PermanentTaskError: no API key is configured for the provider kind.
    """
    if spec.kind == "anthropic":
        key = api_key or settings.llm_api_key or settings.anthropic_api_key
    else:
        key = api_key or settings.llm_api_key or settings.openai_api_key
    if not key:
        raise PermanentTaskError(f"No API key configured for LLM provider {spec.kind!r}")

    if spec.kind == "anthropic":
        from anthropic import AsyncAnthropic

        provider = AnthropicProvider(AsyncAnthropic(api_key=key), spec.model)
    else:
        from openai import AsyncOpenAI

        base_url = spec.base_url or settings.llm_base_url
        client = AsyncOpenAI(api_key=key, base_url=base_url) if base_url else AsyncOpenAI(api_key=key)
        provider = OpenAICompatibleProvider(client, spec.model)

    logger.info("LLM provider ready: %s/%s", spec.kind, spec.model)
    return provider


_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """Lazy singleton for the configured default (one per executor process)."""
    global _provider
    if _provider is None:
        _provider = build_provider(ProviderSpec.from_settings())
    return _provider


@lru_cache(maxsize=16)
def _pinned_provider(provider_id: str) -> AnthropicProvider | OpenAICompatibleProvider:
    # Cached so retries and sibling tasks reuse one SDK client per pin
    return build_provider(ProviderSpec.parse(provider_id))


def provider_for_payload(payload: dict[str, Any]) -> LLMProvider:
    """Provider pinned by the job input ("llm_provider"), else the default."""
    provider_id = payload.get("llm_provider")
    if provider_id is None:
        return get_llm_provider()
    if not isinstance(provider_id, str):
        raise PermanentTaskError("Payload field 'llm_provider' must be a string")
    return _pinned_provider(provider_id.strip())
