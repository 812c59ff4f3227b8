"""Elastic poll scheduler.

One task runs the polling loop: fetch every league's scoreboard, diff it
against the previous cycle, dispatch the resulting actions, then sleep for
a delay computed from what was observed.  The next cycle is only armed after
the current one completes, so cycles never overlap and the delay adapts to
live, upcoming and idle periods.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional, Sequence

from core.diff import compute_diff
from core.metrics import Metrics
from core.snapshot import MatchStatus, Snapshot, make_key, snapshots_by_id, split_key

if TYPE_CHECKING:
    from core.fetcher import ScoreboardFetcher
    from core.processor import EventProcessor
    from core.state import StateManager

logger = logging.getLogger(__name__)

_MAX_BACKOFF_EXP = 5  # cap for the exponent in exponential backoff


@dataclass(frozen=True)
class PollTunables:
    """Poll delays, all in seconds."""

    live_delay: float = 60.0
    alert_delay: float = 120.0
    hibernation_delay: float = 1800.0
    pre_window: float = 600.0
    max_refresh_delay: float = 3600.0


def compute_next_delay(
    has_live: bool,
    has_upcoming: bool,
    upcoming_starts: Sequence[float],
    now: float,
    tunables: PollTunables,
) -> float:
    """Return seconds until the next poll.

    Live matches poll at ``live_delay``.  With upcoming matches of known
    kickoff, sleep until ``pre_window`` before the earliest one, capped by
    ``hibernation_delay`` and ``max_refresh_delay`` (fixtures get moved, so
    even a distant kickoff is re-checked); once inside that window, or when
    no kickoff time is known, poll at ``alert_delay``.  Nothing to watch
    means ``hibernation_delay``.
    """
    if has_live:
        return tunables.live_delay
    if has_upcoming and upcoming_starts:
        wake_at = min(upcoming_starts) - tunables.pre_window
        if wake_at > now:
            return min(wake_at - now, tunables.hibernation_delay, tunables.max_refresh_delay)
        return tunables.alert_delay
    if has_upcoming:
        return tunables.alert_delay
    return tunables.hibernation_delay


def parse_start_time(value: Any) -> Optional[float]:
    """Parse an ISO-8601 kickoff (ESPN uses ``2026-02-12T22:00Z``) to epoch seconds."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return None


@dataclass
class _LeagueView:
    snapshots: dict[str, Snapshot]
    starts: dict[str, float]


class PollScheduler:
    """Drives polling across all configured leagues.

    Parameters
    ----------
    leagues:
        League codes to poll, e.g. ``["bra.1", "eng.1"]``.
    fetcher:
        Source of scoreboard records.
    processor:
        Handles diff actions and live-match follow-up.
    state_manager:
        Owner of the previous-snapshot cache; must be restored before the
        first cycle runs.
    tunables:
        Delay settings for :func:`compute_next_delay`.
    metrics:
        Shared counters, summarised in the log after every cycle.
    stale_after_cycles:
        An active match missing from this many non-empty scoreboards of its
        league in a row is forgotten.
    """

    def __init__(
        self,
        leagues: Sequence[str],
        fetcher: ScoreboardFetcher,
        processor: EventProcessor,
        state_manager: StateManager,
        tunables: PollTunables = PollTunables(),
        metrics: Optional[Metrics] = None,
        stale_after_cycles: int = 5,
    ) -> None:
        self._leagues = list(leagues)
        self._fetcher = fetcher
        self._processor = processor
        self._state_manager = state_manager
        self._tunables = tunables
        self._metrics = metrics if metrics is not None else Metrics()
        self._stale_after_cycles = max(1, stale_after_cycles)
        self._views: dict[str, _LeagueView] = {}
        self._absent_cycles: dict[str, int] = {}
        self._task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        """Spawn the polling task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._poll_loop(), name="poll-loop")
        logger.info(
            "Started polling %d league(s): %s", len(self._leagues), ", ".join(self._leagues)
        )

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        results = await asyncio.gather(self._task, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error("Polling task raised during shutdown: %s", result)
        self._task = None
        logger.info("Polling stopped")

    async def poll(self) -> float:
        """Run one full cycle and return the delay before the next one."""
        await self._state_manager.wait_ready()

        results = await asyncio.gather(
            *(self._fetcher.fetch_scoreboard(league) for league in self._leagues),
            return_exceptions=True,
        )

        for league, result in zip(self._leagues, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error("%s: scoreboard fetch failed, keeping last state: %s", league, result)
                self._metrics.record_error()
                continue
            try:
                await self._process_league(league, result)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s: error while processing scoreboard", league)
                self._metrics.record_error()

        delay = self._next_delay(time.time())
        stats = self._state_manager.stats()
        logger.info(
            "Cycle done: %d active, %d posted events; next poll in %.0fs",
            stats["active_matches"],
            stats["posted_events"],
            delay,
        )
        self._metrics.log_summary()
        return delay

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        """Poll, sleep for the computed delay, repeat."""
        failure_count = 0

        while True:
            try:
                sleep_time = await self.poll()
                failure_count = 0
            except asyncio.CancelledError:
                logger.info("Polling task cancelled")
                raise
            except Exception:
                failure_count += 1
                sleep_time = min(
                    self._tunables.live_delay * (2 ** min(failure_count, _MAX_BACKOFF_EXP)),
                    self._tunables.hibernation_delay,
                )
                logger.exception(
                    "Poll cycle failed (failure #%d, backing off %.1fs)",
                    failure_count,
                    sleep_time,
                )

            await asyncio.sleep(sleep_time)

    async def _process_league(self, league: str, records: list[dict[str, Any]]) -> None:
        snapshots = snapshots_by_id(records, league)
        by_id = {str(r["id"]).strip(): r for r in records if r.get("id") is not None}

        diff = compute_diff(league, snapshots, self._state_manager.get_previous_snapshot)
        await self._processor.process(league, diff, snapshots, by_id)
        self._state_manager.merge_previous_snapshots(diff.snapshot_entries)
        self._sweep_absent(league, snapshots)

        starts: dict[str, float] = {}
        for match_id, snapshot in snapshots.items():
            start = parse_start_time(by_id.get(match_id, {}).get("start_time"))
            if snapshot.status is MatchStatus.PRE and start is not None:
                starts[match_id] = start
        self._views[league] = _LeagueView(snapshots=snapshots, starts=starts)

        logger.info(
            "%s: %d match(es), %d action(s)", league, len(snapshots), len(diff.actions)
        )

    def _sweep_absent(self, league: str, snapshots: dict[str, Snapshot]) -> None:
        """Forget active matches of *league* that have left its scoreboard.

        A match restored as live can roll off the scoreboard before it is
        ever seen finished; without this it would stay active forever.  An
        empty scoreboard proves nothing and is not counted.
        """
        if not snapshots:
            return
        present = {make_key(league, match_id) for match_id in snapshots}
        for key in self._state_manager.active_keys():
            try:
                partition, _ = split_key(key)
            except ValueError:
                continue
            if partition != league:
                continue
            if key in present:
                self._absent_cycles.pop(key, None)
                continue
            missed = self._absent_cycles.get(key, 0) + 1
            if missed < self._stale_after_cycles:
                self._absent_cycles[key] = missed
                continue
            logger.warning(
                "%s: %s missing from the scoreboard for %d cycles, dropping it",
                league,
                key,
                missed,
            )
            self._state_manager.clear_match_state(key)
            self._absent_cycles.pop(key, None)

        # Counters for keys no longer active (finished elsewhere) are stale.
        active = set(self._state_manager.active_keys())
        for key in [k for k in self._absent_cycles if k not in active]:
            del self._absent_cycles[key]

    def _next_delay(self, now: float) -> float:
        has_live = has_upcoming = False
        upcoming_starts: list[float] = []
        for view in self._views.values():
            for match_id, snapshot in view.snapshots.items():
                if snapshot.status is MatchStatus.IN:
                    has_live = True
                elif snapshot.status is MatchStatus.PRE:
                    has_upcoming = True
                    if match_id in view.starts:
                        upcoming_starts.append(view.starts[match_id])
        return compute_next_delay(has_live, has_upcoming, upcoming_starts, now, self._tunables)
