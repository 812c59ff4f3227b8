"""Runtime state for match tracking.

Owns everything the poller remembers between cycles: the previous-snapshot
cache used for diffing, posted event identities used for dedupe, the set of
matches believed to be live, and the per-match extras (last score, last
delivered post id).  Durable persistence goes through a
:class:`~core.persistence.StateFile`; a restore must complete before the
first poll so no diff runs against an empty cache.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from core.metrics import Metrics
from core.persistence import StateFile
from core.snapshot import EVENT_SEPARATOR, Score, Snapshot

logger = logging.getLogger(__name__)

_LOUD_FAILURE_THRESHOLD = 3


def _require_id(value: Any, what: str = "key") -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{what} must be a non-empty string, got {value!r}")
    return value


class StateManager:
    """Centralised store for all match state.

    All mutation happens from the single polling task.  Only writes to disk
    are serialized: a save copies the state under a lock, so the last save
    to start is also the last one written.  Separate instances share
    nothing.

    Parameters
    ----------
    state_file:
        Where to load from and save to.  ``None`` keeps state in memory only.
    save_interval:
        Seconds between periodic saves once :meth:`start` has been called.
    metrics:
        Shared counters; failed saves are recorded.
    """

    def __init__(
        self,
        state_file: Optional[StateFile] = None,
        save_interval: float = 300.0,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._state_file = state_file
        self._save_interval = save_interval
        self._metrics = metrics if metrics is not None else Metrics()
        self._save_lock = asyncio.Lock()

        self._previous_snapshots: dict[str, Snapshot] = {}
        self._posted_event_ids: set[str] = set()
        self._active_matches: dict[str, Optional[dict[str, Any]]] = {}
        self._recovered_keys: set[str] = set()
        self._last_scores: dict[str, Score] = {}
        self._last_post_ids: dict[str, str] = {}

        self._ready = asyncio.Event()
        self._autosave_task: Optional[asyncio.Task[None]] = None
        self._save_failures = 0

    # ------------------------------------------------------------------
    # Active matches
    # ------------------------------------------------------------------

    def is_match_active(self, key: str) -> bool:
        return _require_id(key) in self._active_matches

    def add_active_match(self, key: str, details: Optional[dict[str, Any]] = None) -> None:
        self._active_matches[_require_id(key)] = details
        logger.info("Tracking live match %s", key)

    def active_keys(self) -> list[str]:
        return list(self._active_matches)

    def clear_match_state(self, key: str) -> None:
        """Forget a finished match.

        Drops the active flag, last score, last post id and recovered flag,
        and sweeps every posted identity under ``key#``.
        """
        _require_id(key)
        self._active_matches.pop(key, None)
        self._last_scores.pop(key, None)
        self._last_post_ids.pop(key, None)
        self._recovered_keys.discard(key)

        prefix = f"{key}{EVENT_SEPARATOR}"
        swept = {e for e in self._posted_event_ids if e.startswith(prefix)}
        self._posted_event_ids -= swept
        logger.info("Cleared state for %s (%d posted events swept)", key, len(swept))

    def is_recovered_active_key(self, key: str) -> bool:
        """Return ``True`` once for a key restored as active, then ``False``."""
        _require_id(key)
        if key in self._recovered_keys:
            self._recovered_keys.discard(key)
            return True
        return False

    # ------------------------------------------------------------------
    # Posted events
    # ------------------------------------------------------------------

    def is_event_posted(self, event_id: str) -> bool:
        return _require_id(event_id, "event id") in self._posted_event_ids

    def mark_event_posted(self, event_id: str) -> None:
        self._posted_event_ids.add(_require_id(event_id, "event id"))

    # ------------------------------------------------------------------
    # Previous snapshots
    # ------------------------------------------------------------------

    def get_previous_snapshot(self, key: str) -> Optional[Snapshot]:
        return self._previous_snapshots.get(_require_id(key))

    def merge_previous_snapshots(self, entries: Iterable[tuple[str, Snapshot]]) -> None:
        """Overwrite per key; keys missing from *entries* keep their value."""
        for key, snapshot in entries:
            self._previous_snapshots[_require_id(key)] = snapshot

    def previous_snapshots(self) -> dict[str, Snapshot]:
        return dict(self._previous_snapshots)

    # ------------------------------------------------------------------
    # Per-match extras
    # ------------------------------------------------------------------

    def get_last_score(self, key: str) -> Optional[Score]:
        return self._last_scores.get(_require_id(key))

    def update_last_score(self, key: str, score: Score) -> None:
        self._last_scores[_require_id(key)] = score

    def get_last_post_id(self, key: str) -> Optional[str]:
        return self._last_post_ids.get(_require_id(key))

    def set_last_post_id(self, key: str, post_id: str) -> None:
        self._last_post_ids[_require_id(key)] = post_id

    def stats(self) -> dict[str, int]:
        return {
            "active_matches": len(self._active_matches),
            "posted_events": len(self._posted_event_ids),
            "snapshots": len(self._previous_snapshots),
        }

    # ------------------------------------------------------------------
    # Lifecycle and persistence
    # ------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def wait_ready(self) -> None:
        """Block until :meth:`restore` has finished."""
        await self._ready.wait()

    async def restore(self) -> None:
        """Load persisted state, then mark the store ready.

        Every key that was active at save time is flagged as recovered so
        the first poll after a restart catches it up instead of assuming
        continuous tracking.
        """
        try:
            if self._state_file is None:
                return
            persisted = await asyncio.to_thread(self._state_file.load)
            self._posted_event_ids |= persisted.posted_event_ids
            self._previous_snapshots.update(persisted.previous_snapshots)
            for key in persisted.active_keys:
                self._active_matches.setdefault(key, None)
                self._recovered_keys.add(key)
            if persisted.active_keys:
                logger.info(
                    "Recovered %d match(es) that were live at last save",
                    len(persisted.active_keys),
                )
        finally:
            self._ready.set()

    async def start(self) -> None:
        """Restore from disk and launch the periodic save task."""
        await self.restore()
        if self._state_file is not None and self._autosave_task is None:
            self._autosave_task = asyncio.create_task(
                self._autosave_loop(), name="state-autosave"
            )

    async def stop(self) -> None:
        """Cancel periodic saving and persist one last time."""
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            try:
                await self._autosave_task
            except asyncio.CancelledError:
                pass
            self._autosave_task = None
        await self.save()

    async def save(self) -> bool:
        """Persist the current state.  Failures are logged, never raised.

        Waits for any save already in flight, then copies the state, so a
        write that started earlier can never land after this one.
        """
        if self._state_file is None:
            return True
        async with self._save_lock:
            ok = await asyncio.to_thread(
                self._state_file.save,
                set(self._posted_event_ids),
                dict(self._previous_snapshots),
                list(self._active_matches),
            )
        self._metrics.record_save(ok)
        if ok:
            self._save_failures = 0
            return True

        self._save_failures += 1
        if self._save_failures >= _LOUD_FAILURE_THRESHOLD:
            logger.critical(
                "State save has failed %d times in a row; a restart now would "
                "lose dedupe and diff state",
                self._save_failures,
            )
        else:
            logger.error("State save failed (%d in a row)", self._save_failures)
        return False

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self._save_interval)
            try:
                # Cancelling mid-write must not release the lock before the
                # worker thread is done with the file.
                await asyncio.shield(self.save())
            except Exception:
                logger.exception("Unexpected error during periodic state save")
