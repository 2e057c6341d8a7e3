import asyncio
import json

import pytest

from app.models.events import EventType, SSEEvent
from app.services import streaming
from app.services.event_channel import EventChannel
from app.services.publisher import publish_events


async def drain(generator) -> list[tuple[str, dict]]:
    return [(p["event"], json.loads(p["data"])) async for p in generator]


class TestPublishEvents:
    @pytest.mark.asyncio
    async def test_forwards_events_then_done(self):
        channel = EventChannel()
        channel.publish(streaming.node("clarify", {}))
        channel.publish(streaming.draft("report"))
        channel.close()

        events = await drain(publish_events(channel, keepalive_seconds=1, timeout_seconds=5))

        assert [e for e, _ in events] == ["node", "draft", "done"]

    @pytest.mark.asyncio
    async def test_keepalive_while_idle(self):
        channel = EventChannel()

        async def finish_later():
            await asyncio.sleep(0.25)
            channel.publish(streaming.custom("search", "Searching"))
            channel.close()

        closer = asyncio.create_task(finish_later())
        events = await drain(publish_events(channel, keepalive_seconds=0.1, timeout_seconds=5))
        await closer

        names = [e for e, _ in events]
        assert names.count("keepalive") >= 1
        assert names[-2:] == ["custom", "done"]

    @pytest.mark.asyncio
    async def test_timeout_emits_error_then_done_and_cancels_run(self):
        channel = EventChannel()
        run_task = asyncio.create_task(asyncio.sleep(10))

        events = await drain(
            publish_events(channel, run_task=run_task, keepalive_seconds=0.05, timeout_seconds=0.2)
        )
        await asyncio.gather(run_task, return_exceptions=True)

        assert events[-2][0] == "error"
        assert events[-2][1]["message"] == "Maximum stream duration exceeded"
        assert events[-1][0] == "done"
        assert run_task.cancelled()

    @pytest.mark.asyncio
    async def test_unserializable_event_becomes_error_and_stream_continues(self):
        channel = EventChannel()
        channel.publish(SSEEvent(event=EventType.CUSTOM, data={"bad": object()}))
        channel.publish(streaming.draft("still here"))
        channel.close()

        events = await drain(publish_events(channel, keepalive_seconds=1, timeout_seconds=5))

        assert [e for e, _ in events] == ["error", "draft", "done"]
        assert events[0][1]["error"] == "Stream error"

    @pytest.mark.asyncio
    async def test_done_event_in_channel_ends_stream_once(self):
        channel = EventChannel()
        channel.publish(streaming.done())
        channel.publish(streaming.draft("never sent"))

        events = await drain(publish_events(channel, keepalive_seconds=1, timeout_seconds=5))

        assert [e for e, _ in events] == ["done"]

    @pytest.mark.asyncio
    async def test_closing_consumer_cancels_run_task(self):
        channel = EventChannel()
        channel.publish(streaming.node("clarify", {}))
        run_task = asyncio.create_task(asyncio.sleep(10))
        stream = publish_events(channel, run_task=run_task, keepalive_seconds=1, timeout_seconds=5)

        await stream.__anext__()
        await stream.aclose()
        await asyncio.gather(run_task, return_exceptions=True)

        assert run_task.cancelled()


def test_closed_channel_ignores_publishes():
    channel = EventChannel()
    channel.close()
    channel.publish(streaming.draft("late"))
    assert channel.closed
    assert channel.drain() == []


def test_events_from_update_translates_fields():
    update = {
        "queries": ["q1"],
        "sources": [{"url": "https://a.com", "title": "A"}],
        "notes": ["n"],
        "issues": ["problem"],
        "final_report": "report",
        "supervisor_messages": [{"role": "user", "content": "x"}],
    }
    events = streaming.events_from_update("supervise_tools", update)

    assert [e.event.value for e in events] == ["node", "queries", "evidence", "issues", "draft"]
    assert events[0].data["update"]["supervisor_messages"] == {"count": 1}
    assert events[2].data == {"sources": [{"url": "https://a.com", "title": "A"}], "notes": 1, "node": "supervise_tools"}
