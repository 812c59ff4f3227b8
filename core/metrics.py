"""In-process counters for requests, posts and errors.

One :class:`Metrics` instance is shared by the fetcher, the publisher, the
processor and the state manager.  Everything runs on one event loop, so the
counters are plain integers.  The scheduler logs a summary after every
cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CallStats:
    """Outcome and latency tally for one kind of outbound call."""

    calls: int = 0
    successes: int = 0
    failures: int = 0
    total_latency: float = 0.0

    def record(self, success: bool, latency: float) -> None:
        self.calls += 1
        self.total_latency += max(latency, 0.0)
        if success:
            self.successes += 1
        else:
            self.failures += 1

    @property
    def success_rate(self) -> int:
        """Percentage of successful calls; 100 before any call was made."""
        if not self.calls:
            return 100
        return round(self.successes * 100 / self.calls)

    @property
    def avg_latency_ms(self) -> int:
        if not self.calls:
            return 0
        return round(self.total_latency * 1000 / self.calls)


@dataclass
class Metrics:
    """Counters for one process lifetime."""

    espn: CallStats = field(default_factory=CallStats)
    mastodon: CallStats = field(default_factory=CallStats)
    events_posted: int = 0
    errors: int = 0
    save_failures: int = 0

    def record_request(self, success: bool, latency: float) -> None:
        self.espn.record(success, latency)

    def record_post(self, success: bool, latency: float) -> None:
        self.mastodon.record(success, latency)

    def record_event_posted(self) -> None:
        self.events_posted += 1

    def record_error(self) -> None:
        self.errors += 1

    def record_save(self, ok: bool) -> None:
        if not ok:
            self.save_failures += 1

    def summary(self) -> dict[str, Any]:
        return {
            "espn": {
                "requests": self.espn.calls,
                "success_rate": self.espn.success_rate,
                "avg_latency_ms": self.espn.avg_latency_ms,
            },
            "mastodon": {
                "posts": self.mastodon.calls,
                "success_rate": self.mastodon.success_rate,
                "avg_latency_ms": self.mastodon.avg_latency_ms,
            },
            "events_posted": self.events_posted,
            "errors": self.errors,
            "save_failures": self.save_failures,
        }

    def log_summary(self) -> None:
        logger.info(
            "Metrics: espn %d req (%d%% ok, avg %dms), mastodon %d posts "
            "(%d%% ok, avg %dms), %d events posted, %d errors, %d failed saves",
            self.espn.calls,
            self.espn.success_rate,
            self.espn.avg_latency_ms,
            self.mastodon.calls,
            self.mastodon.success_rate,
            self.mastodon.avg_latency_ms,
            self.events_posted,
            self.errors,
            self.save_failures,
        )
