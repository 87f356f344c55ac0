"""Proxy-gateway backend.

Used when no direct provider credential is configured (or the gateway is
forced). The gateway speaks the OpenAI chat-completions protocol and streams
Server-Sent Events.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from loguru import logger

from chat_assembler.errors import GatewayError
from chat_assembler.events import StreamSink
from chat_assembler.models import ChatRequest
from chat_assembler.providers.common import openai_style_kwargs, usage_from_counts

_GROQ_FAMILIES = ("llama", "mixtral", "gemma", "qwen", "deepseek")


def detect_provider(model: str) -> str | None:
    m = model.lower()
    if "claude" in m:
        return "anthropic"
    if "mistral" in m:
        return "mistral"
    if m.startswith(("gpt-", "o1", "o3")) or "chatgpt" in m:
        return "openai"
    # Namespaced ids ("org/model") are not served by groq.
    if any(family in m for family in _GROQ_FAMILIES) and "/" not in m:
        return "groq"
    return None


def _sse_data(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip()


class GatewayBackend:
    name = "ProxyGateway"

    def __init__(self, base_url: str, *, timeout: float = 120.0, client: httpx.AsyncClient | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    @property
    def url(self) -> str:
        return f"{self._base_url}/v1/chat/completions"

    def build_headers(self, model: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        provider = detect_provider(model)
        if provider:
            headers["x-provider"] = provider
        return headers

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def stream(self, request: ChatRequest, sink: StreamSink) -> None:
        payload = openai_style_kwargs(request)
        payload["stream"] = True
        headers = self.build_headers(request.model)

        logger.debug(
            f"Gateway request: model={request.model}, messages={len(request.messages)}, "
            f"provider={headers.get('x-provider', '?')}"
        )
        async with self._http() as client:
            async with client.stream("POST", self.url, json=payload, headers=headers) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise GatewayError(response.status_code, f"model={request.model} body={body[:500]}")

                async for line in response.aiter_lines():
                    data = _sse_data(line)
                    if not data:
                        continue
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed gateway chunk: {data[:200]}")
                        continue
                    self._dispatch_chunk(chunk, sink)

        sink.on_complete()

    def _dispatch_chunk(self, chunk: dict, sink: StreamSink) -> None:
        choices = chunk.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            text = delta.get("content")
            if text:
                sink.on_text_delta(text)

        usage = chunk.get("usage")
        if isinstance(usage, dict):
            snapshot = usage_from_counts(
                usage.get("prompt_tokens"),
                usage.get("completion_tokens"),
                usage.get("total_tokens"),
            )
            if snapshot is not None:
                sink.on_usage_delta(snapshot)
