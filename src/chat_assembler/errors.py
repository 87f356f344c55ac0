from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ChatAssemblerError(Exception):
    pass


class ConfigurationError(ChatAssemblerError):
    pass


class TurnInProgressError(ChatAssemblerError):
    pass


class PersistenceError(ChatAssemblerError):
    pass


class StreamError(ChatAssemblerError):
    pass


class GatewayError(StreamError):
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Gateway HTTP {status}: {body}" if body else f"Gateway HTTP {status}")


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    PERSISTENCE = "persistence"
    STREAM = "stream"


@dataclass(frozen=True)
class ChatError:
    """Session-scoped error value observed next to the message list."""

    kind: ErrorKind
    message: str
    fatal: bool = True

    @classmethod
    def from_exception(cls, kind: ErrorKind, ex: BaseException) -> ChatError:
        text = str(ex) or type(ex).__name__
        return cls(kind=kind, message=text, fatal=kind is not ErrorKind.PERSISTENCE)
