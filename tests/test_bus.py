"""Tests for events.bus.EventBus."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from events.bus import EventBus
from events.models import HappeningKind, MatchEvent


def _make_event(event_id: str = "bra.1:401#9001") -> MatchEvent:
    return MatchEvent(
        league="bra.1",
        match_key="bra.1:401",
        kind=HappeningKind.GOAL,
        event_id=event_id,
        text="GOAL!",
        delivered_id="status-1",
        timestamp=datetime(2026, 5, 3, 19, 0, 0, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_publish_subscribe(event_bus: EventBus) -> None:
    """A subscriber should receive an event that is published."""
    received: list[MatchEvent] = []
    event = _make_event()

    async def consume() -> None:
        async for e in event_bus.subscribe():
            received.append(e)
            break

    consumer_task = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    event_bus.publish(event)
    await asyncio.wait_for(consumer_task, timeout=2.0)

    assert received == [event]


@pytest.mark.asyncio
async def test_fan_out_multiple_subscribers(event_bus: EventBus) -> None:
    """Multiple subscribers should each receive every published event."""
    received_a: list[MatchEvent] = []
    received_b: list[MatchEvent] = []
    event = _make_event()

    async def consume(dest: list[MatchEvent]) -> None:
        async for e in event_bus.subscribe():
            dest.append(e)
            break

    task_a = asyncio.create_task(consume(received_a))
    task_b = asyncio.create_task(consume(received_b))
    await asyncio.sleep(0.05)

    event_bus.publish(event)
    await asyncio.wait_for(asyncio.gather(task_a, task_b), timeout=2.0)

    assert received_a == [event]
    assert received_b == [event]


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_noop(event_bus: EventBus) -> None:
    event_bus.publish(_make_event())
    assert event_bus.size() == 0


@pytest.mark.asyncio
async def test_full_queue_drops_oldest() -> None:
    """Publishing never blocks; a lagging subscriber loses its oldest event."""
    bus = EventBus(max_queue_size=2)
    gen = bus.subscribe()
    first = asyncio.create_task(gen.__anext__())
    await asyncio.sleep(0.05)
    assert bus.size() == 1

    bus.publish(_make_event("e1"))
    assert (await asyncio.wait_for(first, timeout=1.0)).event_id == "e1"

    for n in (2, 3, 4):
        bus.publish(_make_event(f"e{n}"))

    assert (await gen.__anext__()).event_id == "e3"
    assert (await gen.__anext__()).event_id == "e4"
    await gen.aclose()
    assert bus.size() == 0


@pytest.mark.asyncio
async def test_size_reflects_active_subscribers(event_bus: EventBus) -> None:
    """size() should match the number of active subscriber queues."""
    assert event_bus.size() == 0

    async def consume() -> None:
        async for _ in event_bus.subscribe():
            break

    task1 = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    assert event_bus.size() == 1

    task2 = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    assert event_bus.size() == 2

    event_bus.publish(_make_event())
    await asyncio.wait_for(asyncio.gather(task1, task2), timeout=2.0)
    await asyncio.sleep(0.05)
    assert event_bus.size() == 0
