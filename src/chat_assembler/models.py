from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

DEFAULT_SESSION_TITLE = "New Conversation"


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid4().hex


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.prompt_tokens is None and self.completion_tokens is None and self.total_tokens is None

    def merge(self, delta: Usage) -> Usage:
        """Overlay the fields carried by ``delta``; omitted fields keep their recorded value."""
        return Usage(
            prompt_tokens=delta.prompt_tokens if delta.prompt_tokens is not None else self.prompt_tokens,
            completion_tokens=(
                delta.completion_tokens if delta.completion_tokens is not None else self.completion_tokens
            ),
            total_tokens=delta.total_tokens if delta.total_tokens is not None else self.total_tokens,
        )


@dataclass(frozen=True)
class ToolCall:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""
    is_completed: bool = False

    def parsed_arguments(self) -> dict | list | None:
        if not self.arguments:
            return None
        try:
            return json.loads(self.arguments)
        except json.JSONDecodeError:
            return None


@dataclass(frozen=True)
class MessageMetadata:
    model: str | None = None
    provider: str | None = None
    processing_time: float | None = None
    usage: Usage | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    context: str | None = None
    error: str | None = None

    @property
    def tokens(self) -> int | None:
        return self.usage.total_tokens if self.usage is not None else None


@dataclass(frozen=True)
class Message:
    role: MessageRole
    content: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    metadata: MessageMetadata | None = None
    is_final: bool = True

    @classmethod
    def user(cls, text: str, *, context: str | None = None) -> Message:
        return cls(role=MessageRole.USER, content=text, metadata=MessageMetadata(context=context))

    @classmethod
    def assistant_placeholder(cls, *, model: str, provider: str, context: str | None = None) -> Message:
        return cls(
            role=MessageRole.ASSISTANT,
            content="",
            metadata=MessageMetadata(model=model, provider=provider, context=context),
            is_final=False,
        )

    @property
    def is_open_placeholder(self) -> bool:
        return self.role is MessageRole.ASSISTANT and not self.is_final

    def with_metadata(self, **changes) -> Message:
        metadata = self.metadata or MessageMetadata()
        return replace(self, metadata=replace(metadata, **changes))

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class Session:
    id: str = field(default_factory=new_id)
    title: str = DEFAULT_SESSION_TITLE
    messages: tuple[Message, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    session_type: str = "chat"

    def index_of(self, message_id: str) -> int | None:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return None

    def find(self, message_id: str) -> Message | None:
        i = self.index_of(message_id)
        return None if i is None else self.messages[i]


@dataclass(frozen=True)
class ChatRequest:
    messages: list[dict[str, str]]
    model: str
    max_tokens: int | None = None
    temperature: float | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Completion:
    """Result of a single-shot (non-streaming) backend call."""

    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Usage | None = None
    finish_reason: str | None = None
    provider: str | None = None


@dataclass(frozen=True)
class ConversationStats:
    total_messages: int
    user_messages: int
    assistant_messages: int
    total_tokens: int
    average_processing_time: float
