from __future__ import annotations

import asyncio

import pytest

from research_engine.models.events import EventType, ProgressEvent
from research_engine.services import streaming
from research_engine.services.progress import ProgressChannel, publish


def test_every_subscriber_gets_every_event():
    channel = ProgressChannel()
    first = channel.subscribe()
    second = channel.subscribe()

    channel.publish(streaming.planning_started("q"))
    channel.publish(streaming.api_started("pubmed", 5))

    assert [e.event for e in first.drain()] == [EventType.PLANNING_STARTED, EventType.API_STARTED]
    assert len(second.drain()) == 2


def test_full_queue_drops_for_that_subscriber_only():
    channel = ProgressChannel()
    slow = channel.subscribe(maxsize=1)
    fast = channel.subscribe()

    for i in range(3):
        channel.publish(streaming.round_started(i + 1, "q", 10))

    assert slow.dropped == 2
    assert len(slow.drain()) == 1
    assert len(fast.drain()) == 3


def test_failing_listener_does_not_break_publishing():
    channel = ProgressChannel()
    seen: list[ProgressEvent] = []

    def broken(event: ProgressEvent) -> None:
        raise RuntimeError("listener down")

    channel.add_listener(broken)
    channel.add_listener(seen.append)
    channel.publish(streaming.reflection_started(1))

    assert len(seen) == 1


def test_unsubscribed_queue_receives_nothing():
    channel = ProgressChannel()
    subscription = channel.subscribe()
    subscription.unsubscribe()

    channel.publish(streaming.planning_started("q"))

    assert subscription.drain() == []


def test_publish_helper_accepts_missing_channel():
    publish(None, streaming.planning_started("q"))


def test_event_to_dict_flattens_payload():
    event = streaming.api_completed("web", 4, 120, success=False, error="web timeout after 100ms")
    assert event.to_dict() == {
        "type": "api_completed",
        "api": "web",
        "count": 4,
        "duration_ms": 120,
        "success": False,
        "error": "web timeout after 100ms",
    }


@pytest.mark.asyncio
async def test_close_ends_async_iteration():
    channel = ProgressChannel()
    subscription = channel.subscribe()

    async def consume():
        return [event.event async for event in subscription]

    consumer = asyncio.create_task(consume())
    channel.publish(streaming.planning_started("q"))
    channel.publish(streaming.round_started(1, "q", 10))
    channel.publish(streaming.round_started(2, "q", 10))
    channel.close()

    received = await asyncio.wait_for(consumer, timeout=1)

    assert received == [EventType.PLANNING_STARTED, EventType.ROUND_STARTED, EventType.ROUND_STARTED]
    assert channel.closed
    channel.publish(streaming.planning_started("after close"))
    assert subscription.drain() == []
