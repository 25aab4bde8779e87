from collections.abc import AsyncIterator

import httpx
from google import genai
from google.genai import errors, types
from loguru import logger

from practice_coach.models import TokenUsage
from practice_coach.provider import DeltaEvent, DoneEvent, StreamEvent, StreamRequest
from practice_coach.providers.common import connection_error_event, status_error_event

_RETRYABLE_STATUSES = frozenset({429, 500, 503})


def _to_gemini_contents(messages: list[dict]) -> list[types.Content]:
    """Gemini names the assistant role ``model``."""
    return [
        types.Content(
            role="user" if m["role"] == "user" else "model",
            parts=[types.Part(text=m["content"])],
        )
        for m in messages
    ]


def _build_config(request: StreamRequest) -> types.GenerateContentConfig:
    tools = [types.Tool(google_search=types.GoogleSearch())] if request.use_web_search else None
    return types.GenerateContentConfig(
        system_instruction=request.system_prompt or None,
        max_output_tokens=request.max_tokens,
        tools=tools,
    )


class GoogleProvider:
    def __init__(self, api_key: str):
        self._client = genai.Client(api_key=api_key)

    async def stream_completion(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        logger.debug(
            f"API request: provider=google, model={request.model}, "
            f"max_tokens={request.max_tokens}, messages={len(request.messages)}, "
            f"web_search={request.use_web_search}"
        )

        input_tokens = 0
        output_tokens = 0
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=request.model,
                contents=_to_gemini_contents(request.messages),
                config=_build_config(request),
            )
            async for chunk in stream:
                if request.cancelled:
                    logger.debug("Gemini stream cancelled by caller")
                    return
                if chunk.text:
                    yield DeltaEvent(chunk.text)
                if chunk.usage_metadata is not None:
                    input_tokens = chunk.usage_metadata.prompt_token_count or 0
                    output_tokens = chunk.usage_metadata.candidates_token_count or 0
        except errors.APIError as ex:
            yield status_error_event(ex.code, ex.message or ex.status or "", _RETRYABLE_STATUSES)
            return
        except httpx.TransportError as ex:
            yield connection_error_event(ex)
            return

        logger.debug(f"API response: input_tokens={input_tokens}, output_tokens={output_tokens}")
        yield DoneEvent(TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens))
