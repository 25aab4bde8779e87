from collections.abc import AsyncIterator

import anthropic
from loguru import logger

from practice_coach.models import TokenUsage
from practice_coach.provider import DeltaEvent, DoneEvent, StreamEvent, StreamRequest
from practice_coach.providers.common import connection_error_event, status_error_event

_RETRYABLE_STATUSES = frozenset({429, 500, 529})


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    async def stream_completion(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        logger.debug(
            f"API request: provider=anthropic, model={request.model}, "
            f"max_tokens={request.max_tokens}, messages={len(request.messages)}"
        )
        try:
            async with self._client.messages.stream(
                model=request.model,
                max_tokens=request.max_tokens,
                system=request.system_prompt,
                messages=[{"role": m["role"], "content": m["content"]} for m in request.messages],
            ) as stream:
                async for event in stream:
                    if request.cancelled:
                        logger.debug("Anthropic stream cancelled by caller")
                        return
                    if event.type == "content_block_delta" and event.delta.type == "text_delta":
                        yield DeltaEvent(event.delta.text)

                response = await stream.get_final_message()
        except anthropic.APIConnectionError as ex:
            yield connection_error_event(ex)
            return
        except anthropic.APIStatusError as ex:
            yield status_error_event(ex.status_code, ex.message, _RETRYABLE_STATUSES)
            return

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        yield DoneEvent(TokenUsage(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens))
