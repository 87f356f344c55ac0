import asyncio
import json
import unittest

import httpx

from chat_assembler.errors import GatewayError
from chat_assembler.models import ChatRequest, Usage
from chat_assembler.providers.gateway_provider import GatewayBackend, detect_provider


class _RecordingSink:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def on_text_delta(self, fragment: str) -> None:
        self.calls.append(("text", fragment))

    def on_tool_call_delta(self, index, call_id, name, arguments_delta, completed=False) -> None:
        self.calls.append(("tool", index, call_id, name, arguments_delta, completed))

    def on_usage_delta(self, usage: Usage) -> None:
        self.calls.append(("usage", usage))

    def on_complete(self) -> None:
        self.calls.append(("complete",))

    def on_error(self, error: BaseException) -> None:
        self.calls.append(("error", error))

    @property
    def text(self) -> str:
        return "".join(c[1] for c in self.calls if c[0] == "text")


def _sse(*payloads) -> str:
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines)


def _chunk(content: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": content}}]}


def _request(model: str = "gpt-4o-mini", **kwargs) -> ChatRequest:
    return ChatRequest(
        messages=[{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}],
        model=model,
        **kwargs,
    )


class GatewayBackendTests(unittest.TestCase):
    def _run(self, handler, request: ChatRequest | None = None) -> _RecordingSink:
        sink = _RecordingSink()

        async def scenario() -> None:
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                backend = GatewayBackend("https://gateway.test/", client=client)
                await backend.stream(request or _request(), sink)

        asyncio.run(scenario())
        return sink

    def test_streams_text_until_done(self) -> None:
        body = _sse(_chunk("4"), _chunk(" is the answer"), "[DONE]", _chunk(" ignored"))

        sink = self._run(lambda request: httpx.Response(200, text=body))

        self.assertEqual("4 is the answer", sink.text)
        self.assertEqual(("complete",), sink.calls[-1])

    def test_request_shape(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, text=_sse("[DONE]"))

        self._run(handler, _request("claude-3-5-sonnet", temperature=0.3))

        request = captured[0]
        self.assertEqual("https://gateway.test/v1/chat/completions", str(request.url))
        self.assertEqual("anthropic", request.headers["x-provider"])
        self.assertEqual("text/event-stream", request.headers["accept"])
        payload = json.loads(request.content)
        self.assertTrue(payload["stream"])
        self.assertEqual("claude-3-5-sonnet", payload["model"])
        self.assertEqual(0.3, payload["temperature"])
        self.assertNotIn("max_tokens", payload)
        self.assertEqual("system", payload["messages"][0]["role"])

    def test_usage_chunk_is_forwarded(self) -> None:
        body = _sse(
            _chunk("ok"),
            {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5}},
            "[DONE]",
        )

        sink = self._run(lambda request: httpx.Response(200, text=body))

        usage = [c[1] for c in sink.calls if c[0] == "usage"]
        self.assertEqual([Usage(prompt_tokens=4, completion_tokens=1, total_tokens=5)], usage)

    def test_malformed_and_non_data_lines_are_skipped(self) -> None:
        body = ": keep-alive\n\nevent: ping\n\n" + _sse("{not json", _chunk("fine"), "[DONE]")

        sink = self._run(lambda request: httpx.Response(200, text=body))

        self.assertEqual("fine", sink.text)

    def test_stream_without_done_still_completes(self) -> None:
        sink = self._run(lambda request: httpx.Response(200, text=_sse(_chunk("a"))))
        self.assertEqual([("text", "a"), ("complete",)], sink.calls)

    def test_non_200_raises_gateway_error(self) -> None:
        with self.assertRaises(GatewayError) as ctx:
            self._run(lambda request: httpx.Response(503, text="upstream unavailable"))

        self.assertEqual(503, ctx.exception.status)
        self.assertIn("upstream unavailable", str(ctx.exception))

    def test_headers_without_known_provider(self) -> None:
        headers = GatewayBackend("https://gateway.test").build_headers("some-org/custom-model")
        self.assertNotIn("x-provider", headers)


class DetectProviderTests(unittest.TestCase):
    def test_known_families(self) -> None:
        cases = {
            "claude-3-haiku": "anthropic",
            "mistral-large": "mistral",
            "gpt-4o-mini": "openai",
            "o1-preview": "openai",
            "o3-mini": "openai",
            "chatgpt-4o-latest": "openai",
            "llama-3.1-70b": "groq",
            "mixtral-8x7b": "groq",
            "qwen-2.5": "groq",
        }
        for model, expected in cases.items():
            self.assertEqual(expected, detect_provider(model), model)

    def test_namespaced_open_models_are_not_groq(self) -> None:
        self.assertIsNone(detect_provider("meta/llama-3.1-8b"))

    def test_unknown_model(self) -> None:
        self.assertIsNone(detect_provider("my-model"))


if __name__ == "__main__":
    unittest.main()
