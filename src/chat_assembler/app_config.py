from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from chat_assembler.chat_config import ChatConfig
from chat_assembler.strategy import has_credential

DEFAULT_GATEWAY_URL = "https://llm-proxy-gateway.example.workers.dev"


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    force_gateway: bool
    use_streaming: bool
    gateway_url: str
    gateway_timeout_seconds: float
    history_window: int
    title_max_chars: int
    title_message_count: int
    user_context_path: str | None
    memory_enabled: bool
    memory_db_path: str
    continue_conversation: bool
    log_level: str
    log_consumers: list | None

    def chat_config(self, env: RuntimeEnv) -> ChatConfig:
        return ChatConfig(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            force_proxy=self.force_gateway,
            has_credential=has_credential(env.provider_api_key),
            prefer_streaming=self.use_streaming,
            history_window=self.history_window,
            title_max_chars=self.title_max_chars,
            title_message_count=self.title_message_count,
        )


def load_json_config(path: Path | None = None) -> dict:
    """Read config.json from the working directory; a missing file means all defaults."""
    config_path = path or Path.cwd() / "config.json"
    if not config_path.is_file():
        return {}
    return json.loads(config_path.read_text(encoding="utf-8"))


_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, str):
        return bool(value)
    text = value.strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    return default


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=config.get("Provider", "openai").strip().lower(),
        model=config.get("Model", "gpt-4o-mini"),
        max_tokens=int(config.get("MaxTokens", 0)),
        temperature=float(config.get("Temperature", 0)),
        force_gateway=_to_bool(config.get("ForceGateway", False), default=False),
        use_streaming=_to_bool(config.get("UseStreaming", True), default=True),
        gateway_url=str(config.get("GatewayUrl", DEFAULT_GATEWAY_URL)).strip() or DEFAULT_GATEWAY_URL,
        gateway_timeout_seconds=float(config.get("GatewayTimeoutSeconds", 120)),
        history_window=int(config.get("HistoryWindow", 15)),
        title_max_chars=int(config.get("TitleMaxChars", 50)),
        title_message_count=int(config.get("TitleMessageCount", 2)),
        user_context_path=str(config.get("UserContextPath", "")).strip() or None,
        memory_enabled=_to_bool(config.get("MemoryEnabled", False), default=False),
        memory_db_path=str(config.get("MemoryDbPath", ".chat_assembler/memory.db")),
        continue_conversation=_to_bool(config.get("ContinueConversation", False), default=False),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


_API_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    env_var = _API_KEY_VARS.get(provider_name, "OPENAI_API_KEY")
    return RuntimeEnv(provider_api_key=os.environ.get(env_var, ""), provider_env_var=env_var)
