"""Tests for consumers.console.ConsoleConsumer and Consumer ABC."""

from __future__ import annotations

import asyncio

import pytest

from consumers.console import Consumer, ConsoleConsumer
from events.bus import EventBus
from events.models import MatchEvent


class TestConsoleConsumerFormatEvent:
    """Verify _format_event output."""

    def test_format_contains_header_and_text(self, sample_match_event: MatchEvent) -> None:
        output = ConsoleConsumer._format_event(sample_match_event)

        assert output.startswith("[2026-05-03 19:25:00] [GOAL] bra.1 bra.1:401\n")
        assert "Palmeiras 1-0 Santos" in output

    def test_format_event_contains_separator(self, sample_match_event: MatchEvent) -> None:
        output = ConsoleConsumer._format_event(sample_match_event)
        assert output.endswith("-" * 40)


class TestConsoleConsumerRun:
    @pytest.mark.asyncio
    async def test_prints_published_events(
        self,
        event_bus: EventBus,
        sample_match_event: MatchEvent,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        consumer = ConsoleConsumer(event_bus)
        task = asyncio.create_task(consumer.start())
        await asyncio.sleep(0.05)

        event_bus.publish(sample_match_event)
        await asyncio.sleep(0.05)
        await consumer.stop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        assert "[GOAL] bra.1 bra.1:401" in capsys.readouterr().out
        assert consumer.tally == {("bra.1", "goal"): 1}


class TestConsumerABCCannotBeInstantiated:
    """The abstract Consumer class must not be instantiable."""

    def test_cannot_instantiate_consumer_abc(self) -> None:
        with pytest.raises(TypeError):
            Consumer()  # type: ignore[abstract]
