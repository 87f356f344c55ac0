from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from dataclasses import replace

from loguru import logger

from chat_assembler.accumulator import (
    ToolCallBuilderTable,
    apply_text_delta,
    apply_tool_call_delta,
    apply_usage_delta,
)
from chat_assembler.chat_config import ChatConfig
from chat_assembler.context_provider import ContextProvider, StaticContextProvider
from chat_assembler.errors import ChatError, ConfigurationError, ErrorKind, StreamError, TurnInProgressError
from chat_assembler.events import (
    EventChannel,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
    TextDelta,
    ToolCallDelta,
    UsageDelta,
)
from chat_assembler.history import build_conversation_history
from chat_assembler.memory import NullPersistenceSink, PersistenceSink
from chat_assembler.models import (
    DEFAULT_SESSION_TITLE,
    ChatRequest,
    Completion,
    ConversationStats,
    Message,
    MessageRole,
    Session,
)
from chat_assembler.provider import Backend, StreamingBackend, SynchronousBackend
from chat_assembler.session_store import SessionStore, TurnState
from chat_assembler.strategy import BackendStrategy, select_strategy


class ChatOrchestrator:
    """Drives one conversational turn at a time against the active session.

    ``send`` returns as soon as the user message and the assistant placeholder
    are in the store; progress, the final message and any error are observed
    through :class:`SessionStore` snapshots.
    """

    def __init__(
        self,
        config: ChatConfig,
        *,
        backends: dict[BackendStrategy, Backend],
        store: SessionStore | None = None,
        context_provider: ContextProvider | None = None,
        persistence: PersistenceSink | None = None,
    ):
        self._config = config
        self._backends = backends
        self._store = store or SessionStore()
        self._context_provider = context_provider or StaticContextProvider()
        self._persistence = persistence or NullPersistenceSink()
        self._tool_calls = ToolCallBuilderTable()
        self._open_message_id: str | None = None
        self._turn: asyncio.Task | None = None
        self._turn_started = 0.0
        self._pending_writes: set[asyncio.Task] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def is_processing(self) -> bool:
        return self._store.snapshot().is_processing

    @property
    def strategy(self) -> BackendStrategy:
        return select_strategy(
            force_proxy=self._config.force_proxy,
            has_credential=self._config.has_credential,
            prefer_streaming=self._config.prefer_streaming,
        )

    # -- Turn lifecycle -----------------------------------------------------

    def send(self, text: str) -> asyncio.Task | None:
        """Start a turn for ``text`` on the running loop and return its task."""
        text = text.strip()
        if not text:
            return None
        if self.is_processing:
            raise TurnInProgressError("A message is already being processed")

        self._store.set_error(None)
        strategy = self.strategy
        backend = self._resolve_backend(strategy)
        if backend is None:
            ex = ConfigurationError(f"No backend configured for strategy '{strategy.value}'")
            logger.error(str(ex))
            self._store.set_error(ChatError.from_exception(ErrorKind.CONFIGURATION, ex))
            return None

        logger.info(f"Sending via {strategy.value} ({backend.name}), model={self._config.model}")
        started = time.monotonic()
        context = self._context_provider.get_user_context()

        prior = self._store.session.messages
        self._store.set_turn_state(TurnState.SENDING)
        user_message = Message.user(text, context=context or None)
        self._store.append_message(user_message)
        self._persist_in_background(self._persistence.persist_message(user_message, self._store.session))

        request = ChatRequest(
            messages=build_conversation_history(prior, text, context, window=self._config.history_window),
            model=self._config.model,
            max_tokens=self._config.max_tokens or None,
            temperature=self._config.temperature or None,
            metadata={"session_id": self._store.session.id},
        )

        placeholder = Message.assistant_placeholder(
            model=self._config.model,
            provider=backend.name,
            context=context or None,
        )
        self._store.append_message(placeholder)
        self._tool_calls.open(placeholder.id)
        self._open_message_id = placeholder.id
        self._turn_started = started
        self._store.set_turn_state(TurnState.STREAMING)

        self._turn = asyncio.get_running_loop().create_task(
            self._run_turn(strategy, backend, request, placeholder.id, started)
        )
        return self._turn

    def cancel(self) -> bool:
        """Abandon the in-flight turn. Partial content is kept and the turn fails.

        The failure is recorded before the task is cancelled, since a task that
        has not started yet never reaches its own cancellation handler.
        """
        if self._turn is None or self._turn.done():
            return False
        logger.info("Cancelling in-flight turn")
        if self._open_message_id is not None:
            self._fail(self._open_message_id, StreamError("Turn cancelled"), self._turn_started)
        self._turn.cancel()
        return True

    async def flush(self) -> None:
        """Wait for outstanding background persistence writes."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    def _resolve_backend(self, strategy: BackendStrategy) -> Backend | None:
        backend = self._backends.get(strategy)
        if backend is None:
            return None
        if strategy.is_streaming and not isinstance(backend, StreamingBackend):
            return None
        if not strategy.is_streaming and not isinstance(backend, SynchronousBackend):
            return None
        return backend

    async def _run_turn(
        self,
        strategy: BackendStrategy,
        backend: Backend,
        request: ChatRequest,
        message_id: str,
        started: float,
    ) -> None:
        try:
            if strategy.is_streaming:
                await self._stream_turn(backend, request, message_id, started)
            else:
                completion = await backend.complete(request)
                self._apply_completion(message_id, completion)
                self._finalize(message_id, started)
        except asyncio.CancelledError:
            self._fail(message_id, StreamError("Turn cancelled"), started)
            raise
        except Exception as ex:
            self._fail(message_id, ex, started)

    async def _stream_turn(
        self,
        backend: StreamingBackend,
        request: ChatRequest,
        message_id: str,
        started: float,
    ) -> None:
        channel = EventChannel(message_id)
        producer = asyncio.get_running_loop().create_task(self._produce(backend, request, channel))
        try:
            async for event in channel:
                if isinstance(event, StreamCompleted):
                    self._finalize(event.message_id, started)
                elif isinstance(event, StreamFailed):
                    self._fail(event.message_id, event.error, started)
                else:
                    self._apply_event(event)
        finally:
            channel.close()
            if not producer.done():
                producer.cancel()

    @staticmethod
    async def _produce(backend: StreamingBackend, request: ChatRequest, channel: EventChannel) -> None:
        try:
            await backend.stream(request, channel)
        except asyncio.CancelledError:
            raise
        except Exception as ex:
            channel.on_error(ex)
        else:
            # No-op when the backend already signalled the end of the stream.
            channel.on_complete()

    # -- Delta application --------------------------------------------------

    def _open_message(self, message_id: str) -> Message | None:
        if message_id != self._open_message_id or not self._tool_calls.is_open(message_id):
            return None
        return self._store.session.find(message_id)

    def _apply_event(self, event: StreamEvent) -> None:
        message = self._open_message(event.message_id)
        if message is None:
            logger.trace(f"Ignoring {type(event).__name__} for message {event.message_id} that is not open")
            return

        if isinstance(event, TextDelta):
            message = apply_text_delta(message, event.fragment)
        elif isinstance(event, ToolCallDelta):
            message = apply_tool_call_delta(
                message,
                self._tool_calls,
                event.index,
                event.call_id,
                event.name,
                event.arguments_delta,
                event.completed,
            )
        elif isinstance(event, UsageDelta):
            message = apply_usage_delta(message, event.usage)
        self._store.replace_message(message)

    def _apply_completion(self, message_id: str, completion: Completion) -> None:
        message = self._open_message(message_id)
        if message is None:
            return
        message = apply_text_delta(message, completion.text)
        for call in completion.tool_calls:
            message = apply_tool_call_delta(
                message,
                self._tool_calls,
                call.index,
                call.id,
                call.name,
                call.arguments,
                call.is_completed,
            )
        if completion.usage is not None:
            message = apply_usage_delta(message, completion.usage)
        self._store.replace_message(message)

    # -- Terminal transitions -----------------------------------------------

    def _close(self, message_id: str) -> None:
        self._tool_calls.discard(message_id)
        if self._open_message_id == message_id:
            self._open_message_id = None

    def _finalize(self, message_id: str, started: float) -> None:
        message = self._open_message(message_id)
        if message is None:
            return
        self._store.set_turn_state(TurnState.FINALIZING)
        elapsed = time.monotonic() - started
        message = replace(message, is_final=True).with_metadata(processing_time=elapsed)
        self._store.replace_message(message)
        self._close(message_id)

        self._derive_title()
        session = self._store.touch()
        self._persist_in_background(self._persistence.persist_message(message, session))
        self._store.set_turn_state(TurnState.COMPLETED)

        tool_calls = message.metadata.tool_calls if message.metadata else ()
        logger.info(
            f"Turn completed: chars={len(message.content)}, tool_calls={len(tool_calls)}, "
            f"tokens={message.metadata.tokens if message.metadata else None}, elapsed={elapsed:.2f}s"
        )

    def _fail(self, message_id: str, ex: BaseException, started: float) -> None:
        message = self._open_message(message_id)
        if message is None:
            return
        error_text = str(ex) or type(ex).__name__
        message = replace(message, is_final=True).with_metadata(
            processing_time=time.monotonic() - started,
            error=error_text,
        )
        self._store.replace_message(message)
        self._close(message_id)

        logger.error(f"Turn failed after {len(message.content)} chars: {error_text}")
        self._store.set_error(ChatError.from_exception(ErrorKind.STREAM, ex))
        session = self._store.touch()
        self._persist_in_background(self._persistence.persist_message(message, session))
        self._store.set_turn_state(TurnState.FAILED)

    def _derive_title(self) -> None:
        messages = self._store.session.messages
        if len(messages) != self._config.title_message_count:
            return
        first = messages[0]
        if first.role is not MessageRole.USER:
            return
        title = first.content[: self._config.title_max_chars].strip() or DEFAULT_SESSION_TITLE
        logger.debug(f"Session title set to {title!r}")
        self._store.update_session(title=title)

    # -- Persistence ----------------------------------------------------------

    def _persist_in_background(self, write: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(self._guarded_write(write))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _guarded_write(self, write: Awaitable[None]) -> None:
        try:
            await write
        except Exception as ex:
            logger.warning(f"Persistence failed: {ex}")
            self._store.set_error(ChatError.from_exception(ErrorKind.PERSISTENCE, ex))

    # -- Session management -------------------------------------------------

    async def new_session(self, title: str | None = None) -> Session:
        if self.is_processing:
            raise TurnInProgressError("Cannot start a new session while a message is being processed")
        session = Session(title=(title or "").strip() or DEFAULT_SESSION_TITLE)
        self._store.replace_session(session)
        logger.info(f"New session {session.id}")
        await self._guarded_write(self._persistence.persist_session(session))
        return session

    def load_session(self, session: Session) -> None:
        if self.is_processing:
            raise TurnInProgressError("Cannot switch sessions while a message is being processed")
        self._store.replace_session(session)
        logger.info(f"Loaded session {session.id} ({len(session.messages)} messages)")

    async def clear_messages(self) -> None:
        if self.is_processing:
            raise TurnInProgressError("Cannot clear messages while a message is being processed")
        self._store.update_session(messages=())
        session = self._store.touch()
        await self._guarded_write(self._persistence.persist_session(session))

    def export_conversation(self) -> str:
        return "\n\n".join(
            f"{message.role.display_name}: {message.content}" for message in self._store.session.messages
        )

    def conversation_stats(self) -> ConversationStats:
        messages = self._store.session.messages
        total_tokens = 0
        times: list[float] = []
        for message in messages:
            if message.metadata is None:
                continue
            total_tokens += message.metadata.tokens or 0
            if message.role is MessageRole.ASSISTANT and message.metadata.processing_time is not None:
                times.append(message.metadata.processing_time)
        return ConversationStats(
            total_messages=len(messages),
            user_messages=sum(1 for m in messages if m.role is MessageRole.USER),
            assistant_messages=sum(1 for m in messages if m.role is MessageRole.ASSISTANT),
            total_tokens=total_tokens,
            average_processing_time=sum(times) / len(times) if times else 0.0,
        )
