from __future__ import annotations

from collections.abc import Sequence

from chat_assembler.models import Message, MessageRole
from chat_assembler.system_prompt import SYSTEM_PROMPT_TEMPLATE, build_system_prompt

DEFAULT_HISTORY_WINDOW = 15


def build_conversation_history(
    messages: Sequence[Message],
    new_user_text: str,
    user_context: str | None = None,
    *,
    window: int = DEFAULT_HISTORY_WINDOW,
    template: str = SYSTEM_PROMPT_TEMPLATE,
) -> list[dict[str, str]]:
    """Return ``[system, *recent history, user(new_user_text)]`` as role/content dicts.

    The window is taken from the tail of ``messages`` before filtering. Assistant
    messages with empty content (unfinished placeholders) are never replayed.
    """
    out: list[dict[str, str]] = [
        {"role": MessageRole.SYSTEM.value, "content": build_system_prompt(user_context, template)}
    ]

    recent = list(messages[-window:]) if window > 0 else []
    for message in recent:
        if message.role is MessageRole.ASSISTANT and not message.content:
            continue
        out.append(message.to_wire())

    out.append({"role": MessageRole.USER.value, "content": new_user_text})
    return out
