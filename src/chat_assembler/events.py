"""Streaming events and the channel that serializes them onto the owning loop."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger

from chat_assembler.models import Usage


@dataclass(frozen=True)
class StreamEvent:
    message_id: str

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class TextDelta(StreamEvent):
    fragment: str


@dataclass(frozen=True)
class ToolCallDelta(StreamEvent):
    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str = ""
    completed: bool = False


@dataclass(frozen=True)
class UsageDelta(StreamEvent):
    usage: Usage


@dataclass(frozen=True)
class StreamCompleted(StreamEvent):
    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class StreamFailed(StreamEvent):
    error: BaseException

    @property
    def is_terminal(self) -> bool:
        return True


@runtime_checkable
class StreamSink(Protocol):
    """Callback shape every streaming backend reports through."""

    def on_text_delta(self, fragment: str) -> None: ...

    def on_tool_call_delta(
        self,
        index: int,
        call_id: str | None,
        name: str | None,
        arguments_delta: str,
        completed: bool = False,
    ) -> None: ...

    def on_usage_delta(self, usage: Usage) -> None: ...

    def on_complete(self) -> None: ...

    def on_error(self, error: BaseException) -> None: ...


class EventChannel:
    """StreamSink that hands every callback to the owning event loop.

    Callbacks may fire from any thread or task. Each one is queued with
    ``call_soon_threadsafe`` in call order; the owner drains the channel with
    ``async for``. The first terminal callback closes the channel and anything
    arriving afterwards is dropped.
    """

    def __init__(self, message_id: str, loop: asyncio.AbstractEventLoop | None = None):
        self.message_id = message_id
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop accepting callbacks; later ones are dropped like post-terminal events."""
        with self._lock:
            self._closed = True

    def on_text_delta(self, fragment: str) -> None:
        self._put(TextDelta(self.message_id, fragment))

    def on_tool_call_delta(
        self,
        index: int,
        call_id: str | None,
        name: str | None,
        arguments_delta: str,
        completed: bool = False,
    ) -> None:
        self._put(ToolCallDelta(self.message_id, index, call_id, name, arguments_delta or "", completed))

    def on_usage_delta(self, usage: Usage) -> None:
        self._put(UsageDelta(self.message_id, usage))

    def on_complete(self) -> None:
        self._put(StreamCompleted(self.message_id))

    def on_error(self, error: BaseException) -> None:
        self._put(StreamFailed(self.message_id, error))

    def _put(self, event: StreamEvent) -> None:
        with self._lock:
            if self._closed:
                logger.trace(f"Dropping {type(event).__name__} for closed stream {self.message_id}")
                return
            if event.is_terminal:
                self._closed = True
            try:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
            except RuntimeError:
                # Owning loop already shut down.
                logger.trace(f"Dropping {type(event).__name__} for {self.message_id}: loop closed")

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._drain()

    async def _drain(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return
