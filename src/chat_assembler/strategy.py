from __future__ import annotations

from enum import Enum


class BackendStrategy(str, Enum):
    PROXY_GATEWAY = "proxy_gateway"
    NATIVE_STREAMING = "native_streaming"
    SYNCHRONOUS = "synchronous"

    @property
    def is_streaming(self) -> bool:
        return self is not BackendStrategy.SYNCHRONOUS


def has_credential(api_key: str | None) -> bool:
    return bool((api_key or "").strip())


def select_strategy(*, force_proxy: bool, has_credential: bool, prefer_streaming: bool) -> BackendStrategy:
    """Pick the backend strategy for one send. First match wins."""
    if force_proxy or not has_credential:
        return BackendStrategy.PROXY_GATEWAY
    if prefer_streaming:
        return BackendStrategy.NATIVE_STREAMING
    return BackendStrategy.SYNCHRONOUS
