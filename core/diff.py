"""Diff engine: compare fresh snapshots with the previous cycle's cache.

Pure and I/O free.  The caller supplies a lookup for previous snapshots and
gets back the lifecycle actions plus every snapshot entry to persist.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from core.snapshot import MatchStatus, Snapshot, make_key


class ActionType(str, enum.Enum):
    MATCH_START = "match_start"
    MATCH_END = "match_end"
    SCORE_CHANGED = "score_changed"


@dataclass(frozen=True)
class DiffAction:
    type: ActionType
    snapshot: Snapshot
    partition: str

    @property
    def key(self) -> str:
        return make_key(self.partition, self.snapshot.id)


@dataclass
class DiffResult:
    actions: list[DiffAction] = field(default_factory=list)
    # (composite key, snapshot) for every input snapshot, changed or not.
    snapshot_entries: list[tuple[str, Snapshot]] = field(default_factory=list)


def compute_diff(
    partition: str,
    new_snapshots: Mapping[str, Snapshot],
    get_previous: Callable[[str], Optional[Snapshot]],
) -> DiffResult:
    """Compute lifecycle actions for one partition.

    ``pre -> in`` yields MATCH_START, ``in -> post`` yields MATCH_END and a
    live match whose score differs from the previous one (or has no previous
    snapshot at all) yields SCORE_CHANGED.  A first-seen live match never
    yields MATCH_START, and ``pre -> post`` yields nothing: the caller cannot
    tell from here whether the missed live phase was handled before a
    restart.
    """
    result = DiffResult()

    for match_id, new_snap in new_snapshots.items():
        key = make_key(partition, match_id)
        old_snap = get_previous(key)
        result.snapshot_entries.append((key, new_snap))

        old_status = old_snap.status if old_snap is not None else None
        new_status = new_snap.status
        score_changed = old_snap is None or old_snap.score != new_snap.score

        if old_status is MatchStatus.PRE and new_status is MatchStatus.IN:
            action_type = ActionType.MATCH_START
        elif old_status is MatchStatus.IN and new_status is MatchStatus.POST:
            action_type = ActionType.MATCH_END
        elif new_status is MatchStatus.IN and score_changed:
            action_type = ActionType.SCORE_CHANGED
        else:
            continue

        result.actions.append(
            DiffAction(type=action_type, snapshot=new_snap, partition=partition)
        )

    return result
