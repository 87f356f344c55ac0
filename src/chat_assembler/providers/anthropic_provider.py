import json

import anthropic
from loguru import logger
from tenacity import retry

from chat_assembler.events import StreamSink
from chat_assembler.models import ChatRequest, Completion, ToolCall
from chat_assembler.providers.common import default_retry_kwargs, usage_from_counts

_DEFAULT_MAX_TOKENS = 4096

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


def split_system_prompt(messages: list[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Anthropic takes the system prompt as a parameter, not as a message."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    rest = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
    return "\n\n".join(system_parts), rest


class AnthropicBackend:
    name = "Anthropic"

    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    def _request_kwargs(self, request: ChatRequest) -> dict:
        system_prompt, messages = split_system_prompt(request.messages)
        kwargs: dict = {
            "model": request.model,
            "max_tokens": request.max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if request.temperature:
            kwargs["temperature"] = request.temperature
        return kwargs

    async def stream(self, request: ChatRequest, sink: StreamSink) -> None:
        """Stream a message, forwarding text, tool_use blocks and usage to ``sink``.

        Content-block indices are remapped so tool calls are numbered 0, 1, ...
        in the order their blocks start.
        """
        tool_slots: dict[int, int] = {}
        input_tokens: int | None = None

        logger.debug(f"API request: model={request.model}, messages={len(request.messages)}, stream=True")
        async with self._client.messages.stream(**self._request_kwargs(request)) as stream:
            async for event in stream:
                if event.type == "message_start":
                    usage = event.message.usage
                    input_tokens = usage.input_tokens
                    snapshot = usage_from_counts(usage.input_tokens, usage.output_tokens)
                    if snapshot is not None:
                        sink.on_usage_delta(snapshot)
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        slot = len(tool_slots)
                        tool_slots[event.index] = slot
                        sink.on_tool_call_delta(slot, block.id, block.name, "")
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta":
                        sink.on_text_delta(event.delta.text)
                    elif event.delta.type == "input_json_delta" and event.index in tool_slots:
                        sink.on_tool_call_delta(tool_slots[event.index], None, None, event.delta.partial_json)
                elif event.type == "content_block_stop":
                    if event.index in tool_slots:
                        sink.on_tool_call_delta(tool_slots[event.index], None, None, "", True)
                elif event.type == "message_delta":
                    output_tokens = event.usage.output_tokens
                    total = input_tokens + output_tokens if input_tokens is not None else None
                    snapshot = usage_from_counts(input_tokens, output_tokens, total)
                    if snapshot is not None:
                        sink.on_usage_delta(snapshot)

        logger.debug(f"API response: tool_calls={len(tool_slots)}")
        sink.on_complete()

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def complete(self, request: ChatRequest) -> Completion:
        logger.debug(f"API request: model={request.model}, messages={len(request.messages)}, stream=False")
        response = await self._client.messages.create(**self._request_kwargs(request))

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        index=len(tool_calls),
                        id=block.id,
                        name=block.name,
                        arguments=json.dumps(block.input),
                        is_completed=True,
                    )
                )

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        return Completion(
            text="".join(text_parts),
            tool_calls=tuple(tool_calls),
            usage=usage_from_counts(
                usage.input_tokens,
                usage.output_tokens,
                usage.input_tokens + usage.output_tokens,
            ),
            finish_reason=response.stop_reason,
            provider=self.name,
        )
