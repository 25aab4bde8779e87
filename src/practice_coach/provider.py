from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Protocol, runtime_checkable

from practice_coach.models import TokenUsage

DEFAULT_PROVIDER = "anthropic"

SUPPORTED_PROVIDERS = ("anthropic", "openai", "google")

# Providers whose adapters can ground a response with live web search.
WEB_SEARCH_PROVIDERS = frozenset({"google"})


@dataclass(frozen=True)
class DeltaEvent:
    content: str


@dataclass(frozen=True)
class DoneEvent:
    usage: TokenUsage


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    message: str
    retryable: bool


StreamEvent = DeltaEvent | DoneEvent | ErrorEvent


@dataclass
class StreamRequest:
    model: str
    system_prompt: str
    messages: list[dict]
    max_tokens: int = 1024
    use_web_search: bool = False
    cancel_event: asyncio.Event | None = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@runtime_checkable
class LLMProvider(Protocol):
    def stream_completion(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """Stream a completion as delta/done/error events.

        The iterator is single-use. Adapters translate SDK failures into an
        ErrorEvent instead of raising, and stop early (without a DoneEvent)
        once ``request.cancel_event`` is set.
        """
        ...


def parse_model(model_string: str) -> tuple[str, str]:
    """Split ``provider:model``; a bare model name belongs to anthropic."""
    provider, sep, model = model_string.partition(":")
    if not sep:
        return DEFAULT_PROVIDER, model_string
    return provider.strip().lower(), model


def supports_web_search(model_string: str) -> bool:
    provider, _ = parse_model(model_string)
    return provider in WEB_SEARCH_PROVIDERS


def is_quota_error(code: str, message: str) -> bool:
    """True for quota / rate-limit class failures."""
    if code in ("HTTP_429", "RESOURCE_EXHAUSTED"):
        return True
    lowered = message.lower()
    return "quota" in lowered or "resource_exhausted" in lowered or "rate limit" in lowered


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from practice_coach.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from practice_coach.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    if name == "google":
        from practice_coach.providers.google_provider import GoogleProvider
        return GoogleProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai', 'google'")


class ProviderRegistry:
    """Resolves ``provider:model`` strings to adapters, creating them on first use."""

    def __init__(
        self,
        api_keys: dict[str, str] | None = None,
        *,
        providers: dict[str, LLMProvider] | None = None,
    ):
        self._api_keys = {k.lower(): v for k, v in (api_keys or {}).items() if v}
        self._providers: dict[str, LLMProvider] = dict(providers or {})

    def get(self, provider_name: str) -> LLMProvider | None:
        provider = self._providers.get(provider_name)
        if provider is not None:
            return provider
        if provider_name not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unknown provider: {provider_name!r}. Supported: {', '.join(SUPPORTED_PROVIDERS)}")
        api_key = self._api_keys.get(provider_name)
        if not api_key:
            return None
        provider = create_provider(provider_name, api_key)
        self._providers[provider_name] = provider
        return provider

    async def stream_completion(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """Route ``request`` by its ``provider:model`` identifier."""
        provider_name, model = parse_model(request.model)
        try:
            provider = self.get(provider_name)
        except ValueError as ex:
            yield ErrorEvent(code="UNKNOWN_PROVIDER", message=str(ex), retryable=False)
            return
        if provider is None:
            yield ErrorEvent(
                code="MISSING_API_KEY",
                message=f"No API key configured for provider {provider_name!r}",
                retryable=False,
            )
            return

        async for event in provider.stream_completion(replace(request, model=model)):
            yield event
