"""Delta merging for the in-flight assistant message.

The functions here are pure: each takes the current :class:`Message` and one
delta and returns the next message value. :class:`ToolCallBuilderTable` holds
the per-turn partial tool-call state, keyed by message id and then by the
tool call's stream index.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from loguru import logger

from chat_assembler.models import Message, MessageMetadata, ToolCall, Usage


@dataclass
class _ToolCallBuilder:
    id: str | None = None
    name: str | None = None
    arguments: str = ""
    is_completed: bool = False

    def feed(self, call_id: str | None, name: str | None, arguments_delta: str, completed: bool) -> None:
        # Known id/name is never overwritten by an empty value.
        if call_id:
            self.id = call_id
        if name:
            self.name = name
        if arguments_delta:
            self.arguments += arguments_delta
        if completed:
            self.is_completed = True

    def build(self, index: int) -> ToolCall:
        return ToolCall(
            index=index,
            id=self.id,
            name=self.name,
            arguments=self.arguments,
            is_completed=self.is_completed,
        )


class ToolCallBuilderTable:
    """Arena of partial tool calls: message id -> stream index -> builder."""

    def __init__(self) -> None:
        self._builders: dict[str, dict[int, _ToolCallBuilder]] = {}

    def open(self, message_id: str) -> None:
        if message_id in self._builders:
            raise ValueError(f"Tool-call builders already open for message {message_id}")
        self._builders[message_id] = {}

    def is_open(self, message_id: str) -> bool:
        return message_id in self._builders

    def discard(self, message_id: str) -> None:
        self._builders.pop(message_id, None)

    def __len__(self) -> int:
        return len(self._builders)

    def feed(
        self,
        message_id: str,
        index: int,
        call_id: str | None,
        name: str | None,
        arguments_delta: str,
        completed: bool,
    ) -> tuple[ToolCall, ...]:
        builders = self._builders[message_id]
        builder = builders.setdefault(index, _ToolCallBuilder())
        builder.feed(call_id, name, arguments_delta, completed)
        return tuple(builders[i].build(i) for i in sorted(builders))


def apply_text_delta(message: Message, fragment: str) -> Message:
    if not fragment:
        return message
    return replace(message, content=message.content + fragment)


def apply_tool_call_delta(
    message: Message,
    table: ToolCallBuilderTable,
    index: int,
    call_id: str | None,
    name: str | None,
    arguments_delta: str,
    completed: bool = False,
) -> Message:
    tool_calls = table.feed(message.id, index, call_id, name, arguments_delta, completed)
    return message.with_metadata(tool_calls=tool_calls)


def merged_total(usage: Usage, existing_total: int | None) -> int | None:
    for candidate in (usage.total_tokens, existing_total, usage.completion_tokens, usage.prompt_tokens):
        if candidate is not None:
            return candidate
    return None


def apply_usage_delta(message: Message, usage: Usage) -> Message:
    if usage.is_empty:
        return message
    metadata = message.metadata or MessageMetadata()
    existing = metadata.usage or Usage()
    merged = existing.merge(usage)
    merged = replace(merged, total_tokens=merged_total(usage, existing.total_tokens))
    logger.trace(f"Usage merged for {message.id}: {merged}")
    return replace(message, metadata=replace(metadata, usage=merged))
