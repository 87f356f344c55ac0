from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from datetime import datetime
from typing import Protocol, runtime_checkable

from loguru import logger

from chat_assembler.errors import PersistenceError
from chat_assembler.memory.store import MemoryStore
from chat_assembler.models import Message, MessageMetadata, MessageRole, Session, ToolCall, Usage


@runtime_checkable
class PersistenceSink(Protocol):
    async def persist_message(self, message: Message, session: Session) -> None: ...

    async def persist_session(self, session: Session) -> None: ...


class NullPersistenceSink:
    async def persist_message(self, message: Message, session: Session) -> None:
        return

    async def persist_session(self, session: Session) -> None:
        return


def _metadata_to_json(metadata: MessageMetadata | None) -> str:
    if metadata is None:
        return "{}"
    return json.dumps(asdict(metadata), ensure_ascii=True)


def _metadata_from_json(metadata_json: str) -> MessageMetadata | None:
    try:
        data = json.loads(metadata_json)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not data:
        return None
    usage = data.get("usage")
    return MessageMetadata(
        model=data.get("model"),
        provider=data.get("provider"),
        processing_time=data.get("processing_time"),
        usage=Usage(**usage) if isinstance(usage, dict) else None,
        tool_calls=tuple(ToolCall(**tc) for tc in data.get("tool_calls") or ()),
        context=data.get("context"),
        error=data.get("error"),
    )


class SqlitePersistenceSink:
    """Persists sessions and messages to sqlite off the event loop.

    Writes are serialized in call order, so a message persisted before a
    session sync is always visible to that sync.
    """

    def __init__(self, store: MemoryStore):
        self._store = store
        self._write_lock: asyncio.Lock | None = None

    async def persist_message(self, message: Message, session: Session) -> None:
        seq = session.index_of(message.id)
        if seq is None:
            seq = len(session.messages)
        await self._write(self._upsert_message, message, session, seq)

    async def persist_session(self, session: Session) -> None:
        await self._write(self._sync_session, session)

    async def _write(self, fn, *args) -> None:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            try:
                await asyncio.to_thread(fn, *args)
            except Exception as ex:
                raise PersistenceError(f"Failed to persist: {ex}") from ex

    def _upsert_session_row(self, session: Session) -> None:
        self._store.execute(
            """
            INSERT INTO sessions (id, title, session_type, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                session_type = excluded.session_type,
                updated_at = excluded.updated_at
            """,
            (
                session.id,
                session.title,
                session.session_type,
                session.created_at.isoformat(),
                session.updated_at.isoformat(),
            ),
        )

    def _upsert_message(self, message: Message, session: Session, seq: int) -> None:
        with self._store.transaction():
            self._upsert_session_row(session)
            self._store.execute(
                """
                INSERT INTO messages (id, session_id, seq, role, content, created_at, metadata_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    metadata_json = excluded.metadata_json
                """,
                (
                    message.id,
                    session.id,
                    seq,
                    message.role.value,
                    message.content,
                    message.created_at.isoformat(),
                    _metadata_to_json(message.metadata),
                ),
            )
        logger.debug(f"Persisted {message.role.value} message {message.id} (session={session.id}, seq={seq})")

    def _sync_session(self, session: Session) -> None:
        keep = [m.id for m in session.messages]
        with self._store.transaction():
            self._upsert_session_row(session)
            if keep:
                placeholders = ", ".join("?" for _ in keep)
                self._store.execute(
                    f"DELETE FROM messages WHERE session_id = ? AND id NOT IN ({placeholders})",
                    (session.id, *keep),
                )
            else:
                self._store.execute("DELETE FROM messages WHERE session_id = ?", (session.id,))
        logger.debug(f"Persisted session {session.id} ({len(keep)} messages)")

    def load_session(self, session_id: str) -> Session | None:
        row = self._store.fetchone("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,))
        if row is None:
            return None
        rows = self._store.fetchall(
            """
            SELECT id, role, content, created_at, metadata_json
            FROM messages
            WHERE session_id = ?
            ORDER BY seq ASC, created_at ASC
            """,
            (session_id,),
        )
        messages = tuple(
            Message(
                id=r["id"],
                role=MessageRole(r["role"]),
                content=r["content"],
                created_at=datetime.fromisoformat(r["created_at"]),
                metadata=_metadata_from_json(r["metadata_json"]),
            )
            for r in rows
        )
        return Session(
            id=row["id"],
            title=row["title"],
            messages=messages,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            session_type=row["session_type"],
        )

    def list_sessions(self, *, limit: int = 50) -> list[dict]:
        rows = self._store.fetchall(
            """
            SELECT id, title, session_type, created_at, updated_at
            FROM sessions
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ?
            """,
            (max(1, limit),),
        )
        return [dict(r) for r in rows]

    def latest_session(self) -> Session | None:
        sessions = self.list_sessions(limit=1)
        if not sessions:
            return None
        return self.load_session(sessions[0]["id"])
