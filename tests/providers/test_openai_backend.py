import asyncio
import unittest
from types import SimpleNamespace

import httpx
import openai
from tenacity import wait_none

from chat_assembler.models import ChatRequest, Usage
from chat_assembler.providers.openai_provider import OpenAIBackend


class _FakeStream:
    def __init__(self, chunks: list[object]):
        self._chunks = chunks

    def __aiter__(self):
        self._iter = iter(self._chunks)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class _FakeCompletions:
    def __init__(self, results: list[object]):
        self._results = list(results)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class _FakeClient:
    def __init__(self, *results: object):
        self.chat = SimpleNamespace(completions=_FakeCompletions(list(results)))


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


def _chunk(content=None, tool_calls=None, finish_reason=None, usage=None) -> SimpleNamespace:
    choices = []
    if content is not None or tool_calls is not None or finish_reason is not None:
        choices = [
            SimpleNamespace(
                index=0,
                delta=SimpleNamespace(content=content, tool_calls=tool_calls),
                finish_reason=finish_reason,
            )
        ]
    return SimpleNamespace(choices=choices, usage=usage)


def _tool_delta(index, call_id=None, name=None, arguments=None) -> SimpleNamespace:
    return SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def _request() -> ChatRequest:
    return ChatRequest(messages=[{"role": "user", "content": "hi"}], model="gpt-4o-mini", max_tokens=64)


class OpenAIBackendStreamTests(unittest.TestCase):
    def _stream(self, chunks: list[object]) -> tuple[_RecordingSink, _FakeClient]:
        backend = OpenAIBackend("test-key")
        client = _FakeClient(_FakeStream(chunks))
        backend._client = client
        sink = _RecordingSink()
        asyncio.run(backend.stream(_request(), sink))
        return sink, client

    def test_text_and_usage(self) -> None:
        sink, client = self._stream(
            [
                _chunk(content="Hello"),
                _chunk(content=" world"),
                _chunk(finish_reason="stop"),
                _chunk(usage=SimpleNamespace(prompt_tokens=3, completion_tokens=2, total_tokens=5)),
            ]
        )

        self.assertEqual(
            [
                ("text", "Hello"),
                ("text", " world"),
                ("usage", Usage(prompt_tokens=3, completion_tokens=2, total_tokens=5)),
                ("complete",),
            ],
            sink.calls,
        )
        kwargs = client.chat.completions.calls[0]
        self.assertTrue(kwargs["stream"])
        self.assertEqual({"include_usage": True}, kwargs["stream_options"])
        self.assertEqual(64, kwargs["max_tokens"])
        self.assertNotIn("temperature", kwargs)

    def test_tool_call_fragments_marked_completed_on_finish(self) -> None:
        sink, _ = self._stream(
            [
                _chunk(tool_calls=[_tool_delta(0, "call_1", "lookup", '{"q":')]),
                _chunk(tool_calls=[_tool_delta(1, "call_2", "fetch", "")]),
                _chunk(tool_calls=[_tool_delta(0, None, None, '"x"}')]),
                _chunk(tool_calls=[_tool_delta(1, None, None, "{}")]),
                _chunk(finish_reason="tool_calls"),
            ]
        )

        self.assertEqual(
            [
                ("tool", 0, "call_1", "lookup", '{"q":', False),
                ("tool", 1, "call_2", "fetch", "", False),
                ("tool", 0, None, None, '"x"}', False),
                ("tool", 1, None, None, "{}", False),
                ("tool", 0, None, None, "", True),
                ("tool", 1, None, None, "", True),
                ("complete",),
            ],
            sink.calls,
        )

    def test_errors_propagate(self) -> None:
        backend = OpenAIBackend("test-key")
        backend._client = _FakeClient(RuntimeError("boom"))
        with self.assertRaises(RuntimeError):
            asyncio.run(backend.stream(_request(), _RecordingSink()))


class OpenAIBackendCompleteTests(unittest.TestCase):
    def _response(self) -> SimpleNamespace:
        return SimpleNamespace(
            choices=[
                SimpleNamespace(
                    finish_reason="tool_calls",
                    message=SimpleNamespace(
                        content="Checking.",
                        tool_calls=[
                            SimpleNamespace(
                                id="call_1",
                                function=SimpleNamespace(name="lookup", arguments='{"q":"x"}'),
                            )
                        ],
                    ),
                )
            ],
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=4, total_tokens=14),
        )

    def test_complete_builds_completion(self) -> None:
        backend = OpenAIBackend("test-key")
        backend._client = _FakeClient(self._response())

        completion = asyncio.run(backend.complete(_request()))

        self.assertEqual("Checking.", completion.text)
        self.assertEqual("tool_calls", completion.finish_reason)
        self.assertEqual("OpenAI", completion.provider)
        self.assertEqual(14, completion.usage.total_tokens)
        self.assertEqual(1, len(completion.tool_calls))
        call = completion.tool_calls[0]
        self.assertEqual((0, "call_1", "lookup", '{"q":"x"}', True), (call.index, call.id, call.name, call.arguments, call.is_completed))

    def test_complete_retries_connection_errors(self) -> None:
        backend = OpenAIBackend("test-key")
        failure = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
        client = _FakeClient(failure, self._response())
        backend._client = client

        complete = OpenAIBackend.complete.retry_with(wait=wait_none())
        completion = asyncio.run(complete(backend, _request()))

        self.assertEqual("Checking.", completion.text)
        self.assertEqual(2, len(client.chat.completions.calls))

    def test_complete_does_not_retry_other_errors(self) -> None:
        backend = OpenAIBackend("test-key")
        client = _FakeClient(ValueError("bad"), self._response())
        backend._client = client

        with self.assertRaises(ValueError):
            asyncio.run(backend.complete(_request()))
        self.assertEqual(1, len(client.chat.completions.calls))


if __name__ == "__main__":
    unittest.main()
