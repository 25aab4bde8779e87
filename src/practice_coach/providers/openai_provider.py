from collections.abc import AsyncIterator

import openai
from loguru import logger

from practice_coach.models import TokenUsage
from practice_coach.provider import DeltaEvent, DoneEvent, StreamEvent, StreamRequest
from practice_coach.providers.common import connection_error_event, status_error_event

_RETRYABLE_STATUSES = frozenset({429, 500, 503})


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    """Prepend the system prompt as a system message."""
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for msg in messages:
        out.append({"role": msg["role"], "content": msg["content"]})
    return out


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    async def stream_completion(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        oai_messages = _to_openai_messages(request.system_prompt, request.messages)
        logger.debug(
            f"API request: provider=openai, model={request.model}, "
            f"max_tokens={request.max_tokens}, messages={len(oai_messages)}"
        )

        input_tokens = 0
        output_tokens = 0
        try:
            stream = await self._client.chat.completions.create(
                model=request.model,
                max_tokens=request.max_tokens,
                messages=oai_messages,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if request.cancelled:
                    logger.debug("OpenAI stream cancelled by caller")
                    await stream.close()
                    return

                choice = chunk.choices[0] if chunk.choices else None
                if choice is not None and choice.delta is not None and choice.delta.content:
                    yield DeltaEvent(choice.delta.content)

                # Usage arrives on the final chunk, which has no choices
                if chunk.usage is not None:
                    input_tokens = chunk.usage.prompt_tokens
                    output_tokens = chunk.usage.completion_tokens
        except openai.APIConnectionError as ex:
            yield connection_error_event(ex)
            return
        except openai.APIStatusError as ex:
            yield status_error_event(ex.status_code, ex.message, _RETRYABLE_STATUSES)
            return

        logger.debug(f"API response: input_tokens={input_tokens}, output_tokens={output_tokens}")
        yield DoneEvent(TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens))
