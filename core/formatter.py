"""Plain-text rendering of match posts."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from core.snapshot import Snapshot
from events.models import HappeningKind

_KIND_LABELS = {
    HappeningKind.GOAL: "GOAL!",
    HappeningKind.YELLOW_CARD: "Yellow card",
    HappeningKind.RED_CARD: "RED CARD",
    HappeningKind.SUBSTITUTION: "Substitution",
    HappeningKind.VAR: "VAR review",
}


def _team_name(record: Optional[Mapping[str, Any]], side: str, fallback: str) -> str:
    team = (record or {}).get(f"{side}_team") or {}
    return team.get("name") or fallback


def _scoreline(snapshot: Snapshot, record: Optional[Mapping[str, Any]]) -> str:
    home = _team_name(record, "home", "Home")
    away = _team_name(record, "away", "Away")
    return f"{home} {snapshot.score.home}-{snapshot.score.away} {away}"


def _with_hashtags(text: str, hashtags: Iterable[str]) -> str:
    tags = " ".join(hashtags)
    return f"{text}\n\n{tags}" if tags else text


def format_match_start(
    snapshot: Snapshot, record: Optional[Mapping[str, Any]], hashtags: Iterable[str] = ()
) -> str:
    home = _team_name(record, "home", "Home")
    away = _team_name(record, "away", "Away")
    lines = [f"Kick-off! {home} vs {away}"]
    venue = (record or {}).get("venue")
    if venue:
        lines.append(f"Venue: {venue}")
    return _with_hashtags("\n".join(lines), hashtags)


def format_match_end(
    snapshot: Snapshot, record: Optional[Mapping[str, Any]], hashtags: Iterable[str] = ()
) -> str:
    return _with_hashtags(f"Full time: {_scoreline(snapshot, record)}", hashtags)


def format_happening(
    kind: HappeningKind,
    happening: Mapping[str, Any],
    snapshot: Snapshot,
    record: Optional[Mapping[str, Any]],
    hashtags: Iterable[str] = (),
) -> str:
    label = _KIND_LABELS.get(kind, kind.value)
    minute = happening.get("minute")
    head = f"{label} ({minute})" if minute else label

    lines = [head]
    participant = happening.get("participant")
    if participant:
        lines.append(str(participant))
    description = happening.get("description")
    if description and description != participant:
        lines.append(str(description))
    if kind is HappeningKind.GOAL:
        lines.append(_scoreline(snapshot, record))
    return _with_hashtags("\n".join(lines), hashtags)


def format_highlights(
    snapshot: Snapshot,
    record: Optional[Mapping[str, Any]],
    highlights: Iterable[Mapping[str, Any]],
    limit: int = 3,
) -> str:
    lines = [f"Highlights: {_scoreline(snapshot, record)}"]
    for item in list(highlights)[:limit]:
        title = item.get("title")
        lines.append(f"{title}: {item['url']}" if title else str(item["url"]))
    return "\n".join(lines)
