"""Turns diff actions and live-match happenings into delivered posts.

Delivery follows one rule everywhere: check the event identity, deliver,
and mark it posted only once delivery succeeded.  A failed delivery leaves
the identity unmarked, so the next cycle re-derives the same identity from
the same provider data and tries again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from core.diff import ActionType, DiffAction, DiffResult
from core.fetcher import FetchError
from core.formatter import (
    format_happening,
    format_highlights,
    format_match_end,
    format_match_start,
)
from core.metrics import Metrics
from core.snapshot import MatchStatus, Snapshot, make_key
from events.models import (
    MATCH_LEVEL_KINDS,
    HappeningKind,
    MatchEvent,
    classify_happening,
    happening_event_id,
    match_event_id,
)

if TYPE_CHECKING:
    from core.fetcher import ScoreboardFetcher
    from core.publisher import MastodonPublisher
    from core.state import StateManager
    from events.bus import EventBus

logger = logging.getLogger(__name__)

Record = Mapping[str, Any]


class EventProcessor:
    """Dispatches lifecycle actions and follows live matches.

    Parameters
    ----------
    state_manager:
        Owner of dedupe, active-match and snapshot state.
    fetcher:
        Source of per-match happenings and highlights.
    publisher:
        Delivery target; ``deliver`` returns the delivered id or ``None``.
    event_bus:
        Receives a :class:`MatchEvent` for every delivered post.
    enabled_kinds:
        Happening kinds that are posted at all.
    hashtags:
        League code -> hashtags appended to posts.
    post_delay:
        Seconds to wait after each delivered post.
    metrics:
        Shared counters for delivered events and delivery errors.
    """

    def __init__(
        self,
        state_manager: StateManager,
        fetcher: ScoreboardFetcher,
        publisher: MastodonPublisher,
        event_bus: EventBus,
        enabled_kinds: Iterable[HappeningKind] = tuple(HappeningKind),
        hashtags: Optional[Mapping[str, Iterable[str]]] = None,
        post_delay: float = 0.0,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._state = state_manager
        self._fetcher = fetcher
        self._publisher = publisher
        self._event_bus = event_bus
        self._enabled_kinds = frozenset(enabled_kinds)
        self._hashtags = {k: tuple(v) for k, v in (hashtags or {}).items()}
        self._post_delay = post_delay
        self._metrics = metrics if metrics is not None else Metrics()
        # Keys whose catch-up fetch failed; retried before anything is delivered.
        self._pending_catch_up: set[str] = set()

    async def process(
        self,
        league: str,
        diff: DiffResult,
        snapshots: Mapping[str, Snapshot],
        records: Mapping[str, Record],
    ) -> None:
        """Handle one league's diff, then reconcile live and finished matches."""
        finished: set[str] = set()
        for action in diff.actions:
            await self.handle_action(action, records.get(action.snapshot.id))
            if action.type is ActionType.MATCH_END:
                finished.add(action.key)

        for match_id, snapshot in snapshots.items():
            key = make_key(league, match_id)
            record = records.get(match_id)
            if snapshot.status is MatchStatus.IN:
                await self.follow_live(league, snapshot, record)
            elif (
                snapshot.status is MatchStatus.POST
                and key not in finished
                and self._state.is_match_active(key)
            ):
                # Ended while we were down, or the end post failed last cycle.
                await self.finish(league, snapshot, record)

    async def handle_action(self, action: DiffAction, record: Optional[Record]) -> None:
        key = action.key
        snapshot = action.snapshot
        logger.info(
            "%s: %s for %s (%s, %s)",
            action.partition,
            action.type.value,
            key,
            snapshot.score,
            snapshot.clock,
        )
        if action.type is ActionType.MATCH_START:
            if not self._state.is_match_active(key):
                self._state.add_active_match(key, dict(record or {}))
            await self._announce_start(action.partition, key, snapshot, record)
        elif action.type is ActionType.SCORE_CHANGED:
            self._state.update_last_score(key, snapshot.score)
        elif action.type is ActionType.MATCH_END:
            await self.finish(action.partition, snapshot, record)

    async def follow_live(
        self, league: str, snapshot: Snapshot, record: Optional[Record]
    ) -> None:
        """Deliver new happenings of a live match, catching up first if needed.

        A match seen live for the first time, or one restored as live after a
        restart, is caught up: its current happenings are marked seen without
        being delivered.
        """
        key = make_key(league, snapshot.id)
        recovered = self._state.is_recovered_active_key(key)
        needs_catch_up = (
            recovered
            or key in self._pending_catch_up
            or not self._state.is_match_active(key)
        )

        if not self._state.is_match_active(key):
            self._state.add_active_match(key, dict(record or {}))
        await self._announce_start(league, key, snapshot, record)

        if not needs_catch_up:
            await self._sync_happenings(league, key, snapshot, record, catch_up=False)
        elif await self._sync_happenings(league, key, snapshot, record, catch_up=True):
            self._pending_catch_up.discard(key)
            logger.info("%s: caught up with live match %s", league, key)
        else:
            self._pending_catch_up.add(key)

    async def finish(
        self, league: str, snapshot: Snapshot, record: Optional[Record]
    ) -> bool:
        """Post the final score and forget the match.

        State is only cleared once the end post is delivered, so a failed
        delivery is retried on the next cycle.
        """
        key = make_key(league, snapshot.id)
        catch_up = self._state.is_recovered_active_key(key) or key in self._pending_catch_up
        await self._sync_happenings(league, key, snapshot, record, catch_up=catch_up)

        if HappeningKind.MATCH_END in self._enabled_kinds:
            text = format_match_end(snapshot, record, self._hashtags.get(league, ()))
            if not await self._deliver_match_post(league, key, HappeningKind.MATCH_END, text):
                logger.warning("%s: end of %s not delivered, will retry", league, key)
                return False

        if HappeningKind.HIGHLIGHTS in self._enabled_kinds:
            await self._post_highlights(league, key, snapshot, record)

        self._state.clear_match_state(key)
        self._pending_catch_up.discard(key)
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _announce_start(
        self, league: str, key: str, snapshot: Snapshot, record: Optional[Record]
    ) -> None:
        if HappeningKind.MATCH_START not in self._enabled_kinds:
            return
        text = format_match_start(snapshot, record, self._hashtags.get(league, ()))
        await self._deliver_match_post(league, key, HappeningKind.MATCH_START, text)

    async def _sync_happenings(
        self,
        league: str,
        key: str,
        snapshot: Snapshot,
        record: Optional[Record],
        catch_up: bool,
    ) -> bool:
        """Fetch a match's happenings and deliver (or just mark) the new ones.

        Returns ``False`` when the happenings could not be fetched.
        """
        try:
            happenings = await self._fetcher.fetch_happenings(league, snapshot.id)
        except FetchError as exc:
            logger.warning("%s: could not fetch happenings for %s: %s", league, key, exc)
            return False

        delivered = marked = 0
        for happening in happenings:
            kind = classify_happening(happening.get("type"))
            if kind is None or kind in MATCH_LEVEL_KINDS or kind not in self._enabled_kinds:
                continue
            event_id = happening_event_id(key, happening, kind)
            if self._state.is_event_posted(event_id):
                continue
            if catch_up:
                self._state.mark_event_posted(event_id)
                marked += 1
                continue
            text = format_happening(
                kind, happening, snapshot, record, self._hashtags.get(league, ())
            )
            if await self._deliver(league, key, kind, event_id, text):
                delivered += 1

        if delivered or marked:
            logger.info(
                "%s: %s -> %d delivered, %d marked seen", league, key, delivered, marked
            )
        return True

    async def _post_highlights(
        self, league: str, key: str, snapshot: Snapshot, record: Optional[Record]
    ) -> None:
        try:
            highlights = await self._fetcher.fetch_highlights(league, snapshot.id)
        except FetchError as exc:
            logger.warning("%s: could not fetch highlights for %s: %s", league, key, exc)
            return
        if not highlights:
            return
        text = format_highlights(snapshot, record, highlights)
        await self._deliver_match_post(league, key, HappeningKind.HIGHLIGHTS, text)

    async def _deliver_match_post(
        self, league: str, key: str, kind: HappeningKind, text: str
    ) -> bool:
        return await self._deliver(league, key, kind, match_event_id(key, kind), text)

    async def _deliver(
        self, league: str, key: str, kind: HappeningKind, event_id: str, text: str
    ) -> bool:
        """Deliver *text* once per *event_id*.  Returns ``True`` if posted."""
        if self._state.is_event_posted(event_id):
            return True

        try:
            delivered_id = await self._publisher.deliver(
                text, in_reply_to=self._state.get_last_post_id(key)
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: delivery of %s raised", league, event_id)
            self._metrics.record_error()
            delivered_id = None

        if not delivered_id:
            logger.warning("%s: delivery of %s failed, will retry", league, event_id)
            return False

        self._state.mark_event_posted(event_id)
        self._state.set_last_post_id(key, delivered_id)
        self._metrics.record_event_posted()
        self._event_bus.publish(
            MatchEvent(
                league=league,
                match_key=key,
                kind=kind,
                event_id=event_id,
                text=text,
                delivered_id=delivered_id,
                timestamp=datetime.now(tz=timezone.utc),
            )
        )
        logger.info("%s: posted %s (%s)", league, kind.value, event_id)

        if self._post_delay > 0:
            await asyncio.sleep(self._post_delay)
        return True
