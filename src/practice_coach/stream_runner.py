from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_incrementing

from practice_coach.models import TokenUsage
from practice_coach.provider import (
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    ProviderRegistry,
    StreamRequest,
    is_quota_error,
    supports_web_search,
)


class ProviderStreamError(Exception):
    def __init__(self, code: str, message: str, *, retryable: bool):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.retryable = retryable

    @property
    def is_quota(self) -> bool:
        return is_quota_error(self.code, self.message)


class StreamFailedError(Exception):
    """Every attempt failed; carries whatever the last attempt produced."""

    def __init__(self, code: str, message: str, *, partial_content: str, model: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.partial_content = partial_content
        self.model = model


class StreamCancelledError(Exception):
    def __init__(self, *, partial_content: str, model: str):
        super().__init__("stream cancelled")
        self.partial_content = partial_content
        self.model = model


@dataclass
class StreamAccumulator:
    """Text of the current attempt of one stream, appended delta by delta.

    A retry starts a fresh attempt and resets the text, but deltas from the
    failed attempt have already gone out through ``on_delta``. Clients must
    therefore treat the ``content`` of the final done frame as authoritative
    rather than the concatenation of the deltas they saw.
    """

    parts: list[str] = field(default_factory=list)
    model: str = ""

    @property
    def text(self) -> str:
        return "".join(self.parts)

    def append(self, delta: str) -> None:
        self.parts.append(delta)

    def reset(self, model: str) -> None:
        self.parts = []
        self.model = model


@dataclass(frozen=True)
class StreamOutcome:
    content: str
    usage: TokenUsage
    model: str
    fell_back: bool = False


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = getattr(exc, "code", None) or (type(exc).__name__ if exc else "Unknown")
    logger.warning(f"{reason}. Retrying stream in {wait:.1f}s (attempt {attempt} failed)...")


class StreamRunner:
    """Runs one provider call with bounded retries and a single fallback.

    Retryable errors are retried with linear backoff (attempt x delay). A
    quota-class failure on a web-search model switches once to the fallback
    model, with web search off, and restarts the attempt loop.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        fallback_model: str,
        max_tokens: int = 1024,
        max_retries: int = 2,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._fallback_model = fallback_model
        self._max_tokens = max_tokens
        self._max_retries = max_retries
        self._retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    async def run(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: list[dict],
        on_delta: Callable[[str], Awaitable[None]],
        use_web_search: bool = False,
        cancel_event: asyncio.Event | None = None,
        accumulator: StreamAccumulator | None = None,
    ) -> StreamOutcome:
        acc = accumulator if accumulator is not None else StreamAccumulator()
        active_model = model
        web_search = use_web_search
        fell_back = False

        while True:
            can_fall_back = not fell_back and supports_web_search(active_model)
            try:
                usage = await self._run_attempts(
                    StreamRequest(
                        model=active_model,
                        system_prompt=system_prompt,
                        messages=messages,
                        max_tokens=self._max_tokens,
                        use_web_search=web_search,
                        cancel_event=cancel_event,
                    ),
                    acc,
                    on_delta,
                    can_fall_back=can_fall_back,
                )
            except ProviderStreamError as ex:
                if can_fall_back and ex.is_quota:
                    logger.warning(
                        f"Quota error on {active_model} ({ex.code}); falling back to {self._fallback_model}"
                    )
                    active_model = self._fallback_model
                    web_search = False
                    fell_back = True
                    continue
                logger.error(f"Stream failed on {active_model}: {ex.code} {ex.message}")
                raise StreamFailedError(
                    ex.code,
                    ex.message,
                    partial_content=acc.text,
                    model=active_model,
                ) from ex
            return StreamOutcome(content=acc.text, usage=usage, model=active_model, fell_back=fell_back)

    async def _run_attempts(
        self,
        request: StreamRequest,
        acc: StreamAccumulator,
        on_delta: Callable[[str], Awaitable[None]],
        *,
        can_fall_back: bool,
    ) -> TokenUsage:
        def should_retry(exc: BaseException) -> bool:
            if not isinstance(exc, ProviderStreamError) or not exc.retryable:
                return False
            # Quota errors on a web-search model go straight to the fallback
            return not (can_fall_back and exc.is_quota)

        usage = TokenUsage()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(should_retry),
            wait=wait_incrementing(start=self._retry_delay_seconds, increment=self._retry_delay_seconds),
            stop=stop_after_attempt(self._max_retries + 1),
            before_sleep=_on_retry,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                acc.reset(request.model)
                usage = await self._attempt(request, acc, on_delta)
        return usage

    async def _attempt(
        self,
        request: StreamRequest,
        acc: StreamAccumulator,
        on_delta: Callable[[str], Awaitable[None]],
    ) -> TokenUsage:
        usage: TokenUsage | None = None
        try:
            async for event in self._registry.stream_completion(request):
                if request.cancelled:
                    break
                if isinstance(event, DeltaEvent):
                    if event.content:
                        acc.append(event.content)
                        await on_delta(event.content)
                elif isinstance(event, DoneEvent):
                    usage = event.usage
                elif isinstance(event, ErrorEvent):
                    raise ProviderStreamError(event.code, event.message, retryable=event.retryable)
        except ProviderStreamError:
            raise
        except Exception as ex:
            logger.exception(f"Provider stream for {request.model} raised")
            raise ProviderStreamError("UNKNOWN", str(ex) or type(ex).__name__, retryable=True) from ex

        if request.cancelled:
            raise StreamCancelledError(partial_content=acc.text, model=request.model)
        if usage is None:
            raise ProviderStreamError(
                "STREAM_INTERRUPTED",
                "Provider stream ended without a completion event",
                retryable=True,
            )
        return usage
