import asyncio
import unittest
from types import SimpleNamespace

import anthropic
import httpx

from practice_coach.provider import DeltaEvent, DoneEvent, ErrorEvent, StreamRequest
from practice_coach.providers.anthropic_provider import AnthropicProvider

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class _FakeStreamContext:
    def __init__(self, events: list[object], final_message: object = None, error: Exception | None = None):
        self._events = events
        self._final_message = final_message
        self._error = error

    async def __aenter__(self):
        if self._error is not None:
            raise self._error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration

    async def get_final_message(self):
        return self._final_message


class _FakeMessages:
    def __init__(self, stream_ctx):
        self._stream_ctx = stream_ctx
        self.calls: list[dict] = []

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return self._stream_ctx


class _FakeClient:
    def __init__(self, stream_ctx):
        self.messages = _FakeMessages(stream_ctx)


def _text_delta(text: str) -> SimpleNamespace:
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=text))


def _final(input_tokens: int, output_tokens: int) -> SimpleNamespace:
    return SimpleNamespace(
        stop_reason="end_turn",
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


class AnthropicProviderTests(unittest.TestCase):
    def _make_provider(self, stream_ctx) -> AnthropicProvider:
        provider = AnthropicProvider.__new__(AnthropicProvider)
        provider._client = _FakeClient(stream_ctx)
        return provider

    def _collect(self, provider: AnthropicProvider, request: StreamRequest) -> list:
        async def run():
            return [event async for event in provider.stream_completion(request)]

        return asyncio.run(run())

    def _request(self, **kwargs) -> StreamRequest:
        return StreamRequest(
            model="claude-sonnet-4-20250514",
            system_prompt="You are the manager.",
            messages=[{"role": "user", "content": "Hi"}],
            max_tokens=512,
            **kwargs,
        )

    def test_streams_text_then_usage(self) -> None:
        events = [
            SimpleNamespace(type="message_start"),
            _text_delta("Hel"),
            SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="input_json_delta")),
            _text_delta("lo"),
        ]
        provider = self._make_provider(_FakeStreamContext(events, _final(12, 3)))

        result = self._collect(provider, self._request())

        self.assertEqual([DeltaEvent("Hel"), DeltaEvent("lo")], result[:2])
        self.assertIsInstance(result[-1], DoneEvent)
        self.assertEqual((12, 3), (result[-1].usage.input_tokens, result[-1].usage.output_tokens))
        [call] = provider._client.messages.calls
        self.assertEqual("You are the manager.", call["system"])
        self.assertEqual(512, call["max_tokens"])

    def test_cancel_stops_without_done_event(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        provider = self._make_provider(_FakeStreamContext([_text_delta("Hel")], _final(1, 1)))

        self.assertEqual([], self._collect(provider, self._request(cancel_event=cancel)))

    def test_overloaded_status_is_retryable(self) -> None:
        error = anthropic.APIStatusError(
            "Overloaded",
            response=httpx.Response(529, request=_REQUEST),
            body=None,
        )
        provider = self._make_provider(_FakeStreamContext([], error=error))

        [event] = self._collect(provider, self._request())

        self.assertEqual(ErrorEvent("HTTP_529", "Overloaded", True), event)

    def test_bad_request_is_not_retryable(self) -> None:
        error = anthropic.APIStatusError(
            "prompt is too long",
            response=httpx.Response(400, request=_REQUEST),
            body=None,
        )
        provider = self._make_provider(_FakeStreamContext([], error=error))

        [event] = self._collect(provider, self._request())

        self.assertEqual("HTTP_400", event.code)
        self.assertFalse(event.retryable)

    def test_connection_error_is_retryable(self) -> None:
        provider = self._make_provider(_FakeStreamContext([], error=anthropic.APIConnectionError(request=_REQUEST)))

        [event] = self._collect(provider, self._request())

        self.assertEqual("CONNECTION_ERROR", event.code)
        self.assertTrue(event.retryable)
