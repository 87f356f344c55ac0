import openai
from loguru import logger
from tenacity import retry

from chat_assembler.events import StreamSink
from chat_assembler.models import ChatRequest, Completion, ToolCall, Usage
from chat_assembler.providers.common import default_retry_kwargs, openai_style_kwargs, usage_from_counts

_RETRYABLE = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)


def _usage(usage) -> Usage | None:
    if usage is None:
        return None
    return usage_from_counts(
        getattr(usage, "prompt_tokens", None),
        getattr(usage, "completion_tokens", None),
        getattr(usage, "total_tokens", None),
    )


class OpenAIBackend:
    name = "OpenAI"

    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    async def stream(self, request: ChatRequest, sink: StreamSink) -> None:
        """Stream a chat completion, forwarding text, tool-call fragments and usage to ``sink``."""
        kwargs = openai_style_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        logger.debug(f"API request: model={request.model}, messages={len(request.messages)}, stream=True")
        stream = await self._client.chat.completions.create(**kwargs)

        # Tool-call indices seen but not yet marked completed.
        pending: set[int] = set()
        finish_reason: str | None = None

        async for chunk in stream:
            usage = _usage(getattr(chunk, "usage", None))
            if usage is not None:
                sink.on_usage_delta(usage)

            choice = chunk.choices[0] if chunk.choices else None
            if choice is None:
                continue

            delta = choice.delta
            if delta is not None:
                if delta.content:
                    sink.on_text_delta(delta.content)
                for tc_delta in delta.tool_calls or []:
                    function = tc_delta.function
                    sink.on_tool_call_delta(
                        tc_delta.index,
                        tc_delta.id,
                        function.name if function else None,
                        (function.arguments if function else None) or "",
                    )
                    pending.add(tc_delta.index)

            if choice.finish_reason:
                finish_reason = choice.finish_reason
                for idx in sorted(pending):
                    sink.on_tool_call_delta(idx, None, None, "", True)
                pending.clear()

        logger.debug(f"API response: finish_reason={finish_reason}")
        sink.on_complete()

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def complete(self, request: ChatRequest) -> Completion:
        logger.debug(f"API request: model={request.model}, messages={len(request.messages)}, stream=False")
        response = await self._client.chat.completions.create(**openai_style_kwargs(request))
        choice = response.choices[0]
        message = choice.message

        tool_calls = tuple(
            ToolCall(
                index=i,
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "",
                is_completed=True,
            )
            for i, tc in enumerate(message.tool_calls or [])
        )
        text = message.content or ""
        logger.debug(
            f"API response: finish_reason={choice.finish_reason}, "
            f"text_len={len(text)}, tool_calls={len(tool_calls)}"
        )
        return Completion(
            text=text,
            tool_calls=tool_calls,
            usage=_usage(response.usage),
            finish_reason=choice.finish_reason,
            provider=self.name,
        )
