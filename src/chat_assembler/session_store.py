"""Single-writer store for the active conversation.

Every mutation builds a new immutable :class:`ChatSnapshot` and swaps it in,
so readers on any thread always see a complete state. Only the orchestrator
(running on one event loop) writes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from loguru import logger

from chat_assembler.errors import ChatError
from chat_assembler.models import Message, Session, utc_now


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (TurnState.SENDING, TurnState.STREAMING, TurnState.FINALIZING)


@dataclass(frozen=True)
class ChatSnapshot:
    session: Session
    turn_state: TurnState = TurnState.IDLE
    error: ChatError | None = None

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.session.messages

    @property
    def is_processing(self) -> bool:
        return self.turn_state.is_active


Observer = Callable[[ChatSnapshot], None]


class SessionStore:
    def __init__(self, session: Session | None = None):
        self._snapshot = ChatSnapshot(session=session or Session())
        self._observers: list[Observer] = []

    def snapshot(self) -> ChatSnapshot:
        return self._snapshot

    @property
    def session(self) -> Session:
        return self._snapshot.session

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def append_message(self, message: Message) -> None:
        session = self.session
        self._publish(replace(self._snapshot, session=replace(session, messages=session.messages + (message,))))

    def replace_message(self, message: Message) -> bool:
        """Swap the message with the same id in place. Returns False if it is not in the session."""
        session = self.session
        i = session.index_of(message.id)
        if i is None:
            return False
        messages = session.messages[:i] + (message,) + session.messages[i + 1:]
        self._publish(replace(self._snapshot, session=replace(session, messages=messages)))
        return True

    def update_session(self, **changes) -> Session:
        session = replace(self.session, **changes)
        self._publish(replace(self._snapshot, session=session))
        return session

    def touch(self) -> Session:
        return self.update_session(updated_at=utc_now())

    def replace_session(self, session: Session) -> None:
        self._publish(ChatSnapshot(session=session))

    def set_turn_state(self, state: TurnState) -> None:
        if state is self._snapshot.turn_state:
            return
        logger.debug(f"Turn state {self._snapshot.turn_state.value} -> {state.value}")
        self._publish(replace(self._snapshot, turn_state=state))

    def set_error(self, error: ChatError | None) -> None:
        current = self._snapshot.error
        if error is not None and not error.fatal and current is not None and current.fatal:
            logger.debug(f"Keeping fatal error {current.message!r} over warning {error.message!r}")
            return
        self._publish(replace(self._snapshot, error=error))

    def _publish(self, snapshot: ChatSnapshot) -> None:
        self._snapshot = snapshot
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Session observer raised")
