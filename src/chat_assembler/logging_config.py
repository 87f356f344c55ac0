import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {thread.name} | {name}:{function}:{line} - {message}"

DEFAULT_LOG_CONSUMERS: tuple[dict[str, Any], ...] = (
    {"type": "console"},
    {"type": "file", "path": "chat_assembler.log"},
)


def normalize_level(level: str | None, default: str = "INFO") -> str:
    candidate = (level or "").strip().upper()
    return candidate if candidate in _LEVELS else default


@dataclass(frozen=True)
class LogSink:
    """One configured loguru sink, parsed from a ``LogConsumers`` entry."""

    kind: str
    level: str
    path: str = "chat_assembler.log"
    rotation: str = "10 MB"
    retention: int = 3
    colorize: bool = True

    @classmethod
    def from_entry(cls, entry: dict[str, Any], default_level: str) -> "LogSink":
        options = {k: entry[k] for k in ("path", "rotation", "retention", "colorize") if k in entry}
        return cls(
            kind=str(entry.get("type", "")).strip().lower(),
            level=normalize_level(entry.get("level"), default=default_level),
            **options,
        )

    def install(self) -> int:
        if self.kind == "console":
            return logger.add(sys.stderr, level=self.level, colorize=self.colorize, format=_CONSOLE_FORMAT)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # enqueue: stream callbacks may log from worker threads.
        return logger.add(
            self.path,
            level=self.level,
            format=_FILE_FORMAT,
            rotation=self.rotation,
            retention=self.retention,
            enqueue=True,
        )

    def describe(self) -> str:
        if self.kind == "console":
            return f"console (stderr, {self.level})"
        return f"file ({self.path}, {self.level})"


def setup_logging(level: str = "INFO", consumers: list[dict[str, Any]] | None = None) -> list[str]:
    """Replace loguru's default handler with the configured sinks.

    Unknown sink types are reported and skipped. Returns one description per
    installed sink, for the startup banner.
    """
    logger.remove()
    default_level = normalize_level(level)
    entries = consumers if consumers is not None else DEFAULT_LOG_CONSUMERS

    installed: list[str] = []
    for entry in entries:
        sink = LogSink.from_entry(entry, default_level)
        if sink.kind not in ("console", "file"):
            logger.warning(f"Unknown log consumer type: {entry.get('type')!r}")
            continue
        sink.install()
        installed.append(sink.describe())
    return installed
