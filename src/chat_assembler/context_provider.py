from __future__ import annotations

from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger


@runtime_checkable
class ContextProvider(Protocol):
    def get_user_context(self) -> str: ...


class StaticContextProvider:
    def __init__(self, text: str = ""):
        self._text = text

    def get_user_context(self) -> str:
        return self._text


class FileContextProvider:
    """Reads the user's profile text from disk on every call."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    def get_user_context(self) -> str:
        try:
            return self._path.read_text(encoding="utf-8").strip()
        except OSError as ex:
            logger.warning(f"User context unavailable ({self._path}): {ex}")
            return ""
