"""Normalized match snapshots and status vocabulary.

A :class:`Snapshot` is one observation of a match at poll time.  Everything
that reads raw provider records funnels through :func:`build_snapshot`, so a
change in the upstream JSON only has to be absorbed here and in the fetcher.
"""

from __future__ import annotations

import enum
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"
EVENT_SEPARATOR = "#"

_PRE_CLOCK = "-"
_ZERO_CLOCK = "0'"

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


class MalformedRecordError(Exception):
    """Raised when a raw match record lacks a required field."""


class MatchStatus(str, enum.Enum):
    """Three-state match lifecycle."""

    PRE = "pre"
    IN = "in"
    POST = "post"


# Single words are matched against tokens, phrases with word boundaries.
_POST_WORDS = frozenset({"final", "finished", "ft", "aet", "pen", "post", "ended"})
_POST_PHRASES = ("full time", "after extra time", "end of match")

_IN_WORDS = frozenset(
    {"in", "live", "1h", "2h", "ht", "et", "bt", "pt", "halftime", "half", "progress"}
)
_IN_PHRASES = (
    "in play",
    "in progress",
    "first half",
    "second half",
    "extra time",
    "penalty shootout",
)

_PRE_WORDS = frozenset(
    {"pre", "scheduled", "tbd", "postponed", "delayed", "canceled", "cancelled", "suspended"}
)
_PRE_PHRASES = ("not started",)


def _compile_phrases(phrases: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(rf"\b{re.escape(p)}\b") for p in phrases)


_POST_PHRASE_RES = _compile_phrases(_POST_PHRASES)
_IN_PHRASE_RES = _compile_phrases(_IN_PHRASES)
_PRE_PHRASE_RES = _compile_phrases(_PRE_PHRASES)


def _tokenize(raw: Any) -> list[str]:
    text = str(raw or "").lower()
    return [t for t in _TOKEN_SPLIT_RE.split(text) if t]


def _matches(
    tokens: set[str],
    joined: list[str],
    words: frozenset[str],
    phrases: tuple[re.Pattern[str], ...],
) -> bool:
    if tokens & words:
        return True
    return any(p.search(text) for p in phrases for text in joined)


def normalize_status(raw_name: Any = "", raw_state: Any = "") -> MatchStatus:
    """Collapse provider status strings into a :class:`MatchStatus`.

    Terminal keywords win over in-progress ones, which win over scheduled
    ones.  Anything unrecognised is ``PRE``: an unknown status must never
    end polling for a match nor announce a kickoff.
    """
    name_tokens = _tokenize(raw_name)
    state_tokens = _tokenize(raw_state)
    tokens = set(name_tokens) | set(state_tokens)
    joined = [" ".join(name_tokens), " ".join(state_tokens)]

    if _matches(tokens, joined, _POST_WORDS, _POST_PHRASE_RES):
        return MatchStatus.POST
    if _matches(tokens, joined, _IN_WORDS, _IN_PHRASE_RES):
        return MatchStatus.IN
    return MatchStatus.PRE


@dataclass(frozen=True)
class Score:
    home: int = 0
    away: int = 0

    def __str__(self) -> str:
        return f"{self.home}-{self.away}"


@dataclass(frozen=True)
class Snapshot:
    """One normalized observation of a match."""

    id: str
    score: Score
    status: MatchStatus
    clock: str = _PRE_CLOCK


def _coerce_score(value: Any) -> int:
    """Non-negative goal count from an int, a float or a numeric string; else 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            return 0
    if not math.isfinite(number) or number < 0:
        return 0
    return int(number)


def build_snapshot(record: Mapping[str, Any]) -> Snapshot:
    """Build a :class:`Snapshot` from a normalized scoreboard record.

    Raises :class:`MalformedRecordError` when the record has no id or its id
    contains a key delimiter.
    """
    raw_id = record.get("id")
    match_id = str(raw_id).strip() if raw_id is not None else ""
    if not match_id:
        raise MalformedRecordError("scoreboard record has no id")
    if KEY_SEPARATOR in match_id or EVENT_SEPARATOR in match_id:
        raise MalformedRecordError(f"record id {match_id!r} contains a reserved character")

    status = normalize_status(record.get("status"), record.get("state"))
    if status is MatchStatus.PRE:
        clock = _PRE_CLOCK
    else:
        raw_clock = record.get("clock")
        clock = str(raw_clock).strip() if raw_clock is not None else ""
        clock = clock or _ZERO_CLOCK

    return Snapshot(
        id=match_id,
        score=Score(
            home=_coerce_score(record.get("home_score")),
            away=_coerce_score(record.get("away_score")),
        ),
        status=status,
        clock=clock,
    )


def snapshots_by_id(
    records: Iterable[Mapping[str, Any]], partition: str = ""
) -> dict[str, Snapshot]:
    """Map match id -> snapshot, dropping records that cannot be built."""
    snapshots: dict[str, Snapshot] = {}
    for record in records:
        try:
            snapshot = build_snapshot(record)
        except MalformedRecordError as exc:
            logger.warning("Dropping malformed record in %s: %s", partition or "?", exc)
            continue
        snapshots[snapshot.id] = snapshot
    return snapshots


def make_key(partition: str, match_id: str) -> str:
    """Return the composite ``partition:id`` key.

    Neither part may be empty or contain ``:`` or ``#``; both characters are
    reserved as delimiters.
    """
    for part in (partition, match_id):
        if not isinstance(part, str) or not part:
            raise ValueError(f"key part must be a non-empty string, got {part!r}")
        if KEY_SEPARATOR in part or EVENT_SEPARATOR in part:
            raise ValueError(f"key part {part!r} contains a reserved character")
    return f"{partition}{KEY_SEPARATOR}{match_id}"


def split_key(key: str) -> tuple[str, str]:
    partition, sep, match_id = key.partition(KEY_SEPARATOR)
    if not sep or not partition or not match_id:
        raise ValueError(f"not a composite key: {key!r}")
    return partition, match_id


def snapshot_to_dict(snapshot: Snapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "score": {"home": snapshot.score.home, "away": snapshot.score.away},
        "status": snapshot.status.value,
        "clock": snapshot.clock,
    }


def snapshot_from_dict(data: Mapping[str, Any]) -> Snapshot:
    score = data.get("score") or {}
    try:
        status = MatchStatus(data.get("status"))
    except ValueError:
        status = MatchStatus.PRE
    return Snapshot(
        id=str(data["id"]),
        score=Score(
            home=_coerce_score(score.get("home")),
            away=_coerce_score(score.get("away")),
        ),
        status=status,
        clock=str(data.get("clock", _PRE_CLOCK)),
    )
