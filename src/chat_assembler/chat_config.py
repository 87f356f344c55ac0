from dataclasses import dataclass

from chat_assembler.history import DEFAULT_HISTORY_WINDOW


@dataclass
class ChatConfig:
    model: str = "gpt-4o-mini"
    max_tokens: int = 0
    temperature: float = 0.0
    force_proxy: bool = False
    has_credential: bool = False
    prefer_streaming: bool = True
    history_window: int = DEFAULT_HISTORY_WINDOW
    title_max_chars: int = 50
    title_message_count: int = 2
