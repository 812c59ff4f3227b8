"""Console consumer: prints every delivered match post to stdout."""

from __future__ import annotations

import abc
import logging
from collections import Counter
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from events.bus import EventBus
    from events.models import MatchEvent

logger = logging.getLogger(__name__)


class Consumer(abc.ABC):
    """Abstract base class that every event consumer must implement."""

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin consuming events.  Runs until :meth:`stop` is called."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Signal the consumer to shut down gracefully."""


class ConsoleConsumer(Consumer):
    """Prints each delivered post and keeps a per-league tally.

    The tally is logged when the consumer stops, which gives a one-line
    summary of what a run (or a dry run) would have posted.
    """

    _SEPARATOR = "-" * 40

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus
        self._running: bool = False
        self._tally: Counter[tuple[str, str]] = Counter()

    @property
    def tally(self) -> dict[tuple[str, str], int]:
        """Posts seen so far, keyed by ``(league, kind)``."""
        return dict(self._tally)

    async def start(self) -> None:
        self._running = True
        logger.info("ConsoleConsumer started, waiting for match events")

        async for event in self._event_bus.subscribe():
            if not self._running:
                break
            self._tally[(event.league, event.kind.value)] += 1
            print(self._format_event(event))

        logger.info("ConsoleConsumer stopped")

    async def stop(self) -> None:
        self._running = False
        if self._tally:
            summary = ", ".join(
                f"{league} {kind}={count}"
                for (league, kind), count in sorted(self._tally.items())
            )
            logger.info("ConsoleConsumer stopping; posts this run: %s", summary)
        else:
            logger.info("ConsoleConsumer stopping; nothing was posted this run")

    @staticmethod
    def _format_event(event: MatchEvent) -> str:
        """Return a printable block for *event*.

        Example output::

            [2026-05-03 19:02:11] [GOAL] bra.1 bra.1:401547
            GOAL! (23')
            Raphael Veiga
            Palmeiras 1-0 Santos
            ----------------------------------------
        """
        tag = event.kind.value.upper()
        ts = event.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        return (
            f"[{ts}] [{tag}] {event.league} {event.match_key}\n"
            f"{event.text}\n"
            f"{ConsoleConsumer._SEPARATOR}"
        )
