from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from chat_assembler.app_config import AppConfig, RuntimeEnv
from chat_assembler.context_provider import ContextProvider, FileContextProvider, StaticContextProvider
from chat_assembler.logging_config import setup_logging
from chat_assembler.memory import MemoryStore, NullPersistenceSink, PersistenceSink, SqlitePersistenceSink
from chat_assembler.orchestrator import ChatOrchestrator
from chat_assembler.provider import create_backends
from chat_assembler.session_store import SessionStore


@dataclass
class AppRuntime:
    orchestrator: ChatOrchestrator
    memory_store: MemoryStore | None
    log_descriptions: list[str]

    def close(self) -> None:
        if self.memory_store is not None:
            self.memory_store.close()


def _resolve_path(raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else Path.cwd() / path


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    context_provider: ContextProvider
    if app.user_context_path:
        context_provider = FileContextProvider(_resolve_path(app.user_context_path))
    else:
        context_provider = StaticContextProvider()

    memory_store: MemoryStore | None = None
    persistence: PersistenceSink = NullPersistenceSink()
    store = SessionStore()

    if app.memory_enabled:
        memory_store = MemoryStore(str(_resolve_path(app.memory_db_path)))
        sqlite_sink = SqlitePersistenceSink(memory_store)
        persistence = sqlite_sink
        if app.continue_conversation:
            session = sqlite_sink.latest_session()
            if session is not None:
                logger.info(f"Continuing session {session.id} ({len(session.messages)} messages)")
                store = SessionStore(session)

    chat_config = app.chat_config(env)
    if not chat_config.has_credential and not app.force_gateway:
        logger.info(f"{env.provider_env_var} not set; using the proxy gateway at {app.gateway_url}")

    orchestrator = ChatOrchestrator(
        chat_config,
        backends=create_backends(app, env),
        store=store,
        context_provider=context_provider,
        persistence=persistence,
    )

    return AppRuntime(
        orchestrator=orchestrator,
        memory_store=memory_store,
        log_descriptions=log_descriptions,
    )
