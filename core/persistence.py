"""Durable storage for the state store.

The state file holds three things: posted event identities, the
previous-snapshot cache and the keys of matches that were live at save
time.  Writes go to a temporary file in the same directory which is then
renamed over the target, so a crash mid-save leaves the last complete file
in place.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from core.snapshot import Snapshot, snapshot_from_dict, snapshot_to_dict

logger = logging.getLogger(__name__)

_FORMAT_VERSION = 2


@dataclass
class PersistedState:
    """Contents of a state file."""

    posted_event_ids: set[str] = field(default_factory=set)
    previous_snapshots: dict[str, Snapshot] = field(default_factory=dict)
    active_keys: list[str] = field(default_factory=list)


class StateFile:
    """Reads and atomically writes the JSON state file at *path*."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> PersistedState:
        """Return the persisted state, or an empty one if there is none.

        A corrupt or unreadable file is logged and treated as empty; the
        process keeps running with fresh state.
        """
        try:
            with open(self._path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            logger.info("No state file at %s, starting fresh", self._path)
            return PersistedState()
        except (OSError, ValueError) as exc:
            logger.error("Could not read state file %s: %s", self._path, exc)
            return PersistedState()

        if not isinstance(raw, dict):
            logger.error("State file %s has unexpected shape, ignoring", self._path)
            return PersistedState()

        state = PersistedState(
            posted_event_ids={str(e) for e in raw.get("postedEventIds") or [] if e},
            active_keys=[str(k) for k in raw.get("activeKeys") or [] if k],
        )
        for key, data in (raw.get("previousSnapshots") or {}).items():
            try:
                state.previous_snapshots[key] = snapshot_from_dict(data)
            except (KeyError, TypeError, AttributeError) as exc:
                logger.warning("Skipping unreadable snapshot %s: %s", key, exc)

        logger.info(
            "Loaded state from %s: %d posted events, %d snapshots, %d active",
            self._path,
            len(state.posted_event_ids),
            len(state.previous_snapshots),
            len(state.active_keys),
        )
        return state

    def save(
        self,
        posted_event_ids: Iterable[str],
        previous_snapshots: Mapping[str, Snapshot],
        active_keys: Iterable[str],
    ) -> bool:
        """Atomically write the state.  Returns ``False`` on failure."""
        payload: dict[str, Any] = {
            "version": _FORMAT_VERSION,
            "savedAt": datetime.now(tz=timezone.utc).isoformat(),
            "postedEventIds": sorted(posted_event_ids),
            "previousSnapshots": {
                key: snapshot_to_dict(snap) for key, snap in previous_snapshots.items()
            },
            "activeKeys": sorted(active_keys),
        }

        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Could not save state to %s: %s", self._path, exc)
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

        logger.debug(
            "Saved state to %s: %d posted events, %d snapshots",
            self._path,
            len(payload["postedEventIds"]),
            len(payload["previousSnapshots"]),
        )
        return True

    def stats(self) -> dict[str, Any]:
        try:
            st = self._path.stat()
        except OSError:
            return {"exists": False}
        return {
            "exists": True,
            "size": st.st_size,
            "modified": datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        }
