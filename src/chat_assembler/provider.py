from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from chat_assembler.events import StreamSink
from chat_assembler.models import ChatRequest, Completion
from chat_assembler.strategy import BackendStrategy, has_credential

if TYPE_CHECKING:
    from chat_assembler.app_config import AppConfig, RuntimeEnv


@runtime_checkable
class StreamingBackend(Protocol):
    name: str

    async def stream(self, request: ChatRequest, sink: StreamSink) -> None:
        """Run one streamed call, reporting every delta to ``sink``.

        Must finish by calling ``sink.on_complete()``; failures may either be
        raised or reported through ``sink.on_error()``.
        """
        ...


@runtime_checkable
class SynchronousBackend(Protocol):
    name: str

    async def complete(self, request: ChatRequest) -> Completion:
        """Single-shot call returning the whole response at once."""
        ...


Backend = StreamingBackend | SynchronousBackend


def create_primary_backend(provider_name: str, api_key: str):
    """Factory: create the direct provider backend by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from chat_assembler.providers.anthropic_provider import AnthropicBackend
        return AnthropicBackend(api_key)
    if name == "openai":
        from chat_assembler.providers.openai_provider import OpenAIBackend
        return OpenAIBackend(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")


def create_backends(app: AppConfig, env: RuntimeEnv) -> dict[BackendStrategy, Backend]:
    from chat_assembler.providers.gateway_provider import GatewayBackend

    backends: dict[BackendStrategy, Backend] = {
        BackendStrategy.PROXY_GATEWAY: GatewayBackend(app.gateway_url, timeout=app.gateway_timeout_seconds),
    }
    if has_credential(env.provider_api_key):
        primary = create_primary_backend(app.provider_name, env.provider_api_key.strip())
        backends[BackendStrategy.NATIVE_STREAMING] = primary
        backends[BackendStrategy.SYNCHRONOUS] = primary
    return backends
