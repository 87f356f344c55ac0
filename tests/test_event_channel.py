import asyncio
import threading
import unittest

from chat_assembler.events import (
    EventChannel,
    StreamCompleted,
    StreamFailed,
    StreamSink,
    TextDelta,
    ToolCallDelta,
    UsageDelta,
)
from chat_assembler.models import Usage


async def _drain(channel: EventChannel) -> list:
    return [event async for event in channel]


class EventChannelTests(unittest.TestCase):
    def test_channel_satisfies_sink_protocol(self) -> None:
        async def scenario() -> None:
            self.assertIsInstance(EventChannel("m1"), StreamSink)

        asyncio.run(scenario())

    def test_events_arrive_in_call_order_tagged_with_message_id(self) -> None:
        async def scenario() -> list:
            channel = EventChannel("m1")
            channel.on_text_delta("a")
            channel.on_tool_call_delta(0, "c1", "lookup", '{"q":', False)
            channel.on_usage_delta(Usage(total_tokens=5))
            channel.on_text_delta("b")
            channel.on_complete()
            return await _drain(channel)

        events = asyncio.run(scenario())

        self.assertEqual(
            [TextDelta, ToolCallDelta, UsageDelta, TextDelta, StreamCompleted],
            [type(e) for e in events],
        )
        self.assertTrue(all(e.message_id == "m1" for e in events))
        self.assertEqual("lookup", events[1].name)
        self.assertEqual(5, events[2].usage.total_tokens)

    def test_first_terminal_event_closes_channel(self) -> None:
        async def scenario() -> tuple[list, bool]:
            channel = EventChannel("m1")
            channel.on_text_delta("par")
            channel.on_error(RuntimeError("boom"))
            channel.on_text_delta("late")
            channel.on_complete()
            return await _drain(channel), channel.closed

        events, closed = asyncio.run(scenario())

        self.assertTrue(closed)
        self.assertEqual([TextDelta, StreamFailed], [type(e) for e in events])
        self.assertEqual("boom", str(events[1].error))

    def test_none_arguments_are_normalized(self) -> None:
        async def scenario() -> list:
            channel = EventChannel("m1")
            channel.on_tool_call_delta(1, None, None, None, True)
            channel.on_complete()
            return await _drain(channel)

        events = asyncio.run(scenario())
        self.assertEqual("", events[0].arguments_delta)
        self.assertTrue(events[0].completed)

    def test_close_drops_later_callbacks(self) -> None:
        async def scenario() -> EventChannel:
            channel = EventChannel("m1")
            channel.close()
            await asyncio.to_thread(channel.on_text_delta, "late")
            channel.on_complete()
            await asyncio.sleep(0)
            return channel

        channel = asyncio.run(scenario())

        self.assertTrue(channel.closed)
        self.assertTrue(channel._queue.empty())

    def test_callbacks_from_worker_thread_are_serialized_in_order(self) -> None:
        fragments = [str(i) for i in range(200)]

        def produce(channel: EventChannel) -> None:
            for fragment in fragments:
                channel.on_text_delta(fragment)
            channel.on_complete()

        async def scenario() -> list:
            channel = EventChannel("m1")
            worker = threading.Thread(target=produce, args=(channel,))
            worker.start()
            events = await _drain(channel)
            worker.join()
            return events

        events = asyncio.run(scenario())

        self.assertIsInstance(events[-1], StreamCompleted)
        self.assertEqual(fragments, [e.fragment for e in events[:-1]])


if __name__ == "__main__":
    unittest.main()
