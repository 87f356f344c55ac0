import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger

from chat_assembler.app_config import load_json_config, parse_app_config, resolve_runtime_env
from chat_assembler.bootstrap import bootstrap_runtime
from chat_assembler.errors import TurnInProgressError
from chat_assembler.models import MessageRole
from chat_assembler.session_store import ChatSnapshot, TurnState

_PROMPT = "you> "
_LINE_PREFIX = "assistant> "
_HELP = "Commands: /new [title], /clear, /export, /stats, /help, exit"


class StreamPrinter:
    """Store observer that echoes the growing assistant message to stdout."""

    def __init__(self) -> None:
        self._message_id: str | None = None
        self._printed = 0

    def __call__(self, snapshot: ChatSnapshot) -> None:
        if not snapshot.messages:
            return
        last = snapshot.messages[-1]
        if last.role is not MessageRole.ASSISTANT:
            return
        if last.id != self._message_id:
            self._message_id = last.id
            self._printed = 0
            print(_LINE_PREFIX, end="", flush=True)
        if len(last.content) > self._printed:
            print(last.content[self._printed:], end="", flush=True)
            self._printed = len(last.content)


async def _handle_command(runtime, command: str) -> None:
    orchestrator = runtime.orchestrator
    name, _, arg = command.partition(" ")
    if name == "/new":
        session = await orchestrator.new_session(arg)
        print(f"New session: {session.title} ({session.id})")
    elif name == "/clear":
        await orchestrator.clear_messages()
        print("Conversation cleared.")
    elif name == "/export":
        print(orchestrator.export_conversation())
    elif name == "/stats":
        stats = orchestrator.conversation_stats()
        print(
            f"messages={stats.total_messages} (user={stats.user_messages}, assistant={stats.assistant_messages}), "
            f"tokens={stats.total_tokens}, avg_time={stats.average_processing_time:.2f}s"
        )
    else:
        print(_HELP)


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    runtime = bootstrap_runtime(app, env)
    orchestrator = runtime.orchestrator

    print("chat-assembler (type 'exit' to quit, '/help' for commands)")
    print(f"Model: {app.model} via {orchestrator.strategy.value}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    unsubscribe = orchestrator.store.subscribe(StreamPrinter())
    loop = asyncio.get_running_loop()
    try:
        while True:
            try:
                user_input = await loop.run_in_executor(None, input, _PROMPT)
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue
            if trimmed.startswith("/"):
                await _handle_command(runtime, trimmed)
                continue

            try:
                task = orchestrator.send(trimmed)
            except TurnInProgressError as ex:
                print(str(ex))
                continue
            if task is not None:
                await task

            snapshot = orchestrator.store.snapshot()
            if snapshot.error is not None:
                label = "warning" if not snapshot.error.fatal else "error"
                print(f"\n[{label}] {snapshot.error.message}")
            elif snapshot.turn_state is TurnState.COMPLETED:
                print()
            print()
    finally:
        unsubscribe()
        await orchestrator.flush()
        runtime.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    run()
