from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from core.snapshot import EVENT_SEPARATOR


class HappeningKind(str, enum.Enum):
    """Everything the bot can post about a match."""

    GOAL = "goal"
    YELLOW_CARD = "yellow_card"
    RED_CARD = "red_card"
    SUBSTITUTION = "substitution"
    VAR = "var"
    MATCH_START = "match_start"
    MATCH_END = "match_end"
    HIGHLIGHTS = "highlights"


# Checked in order: "second yellow" is a red card and "own goal" a goal.
_CLASSIFIERS: tuple[tuple[HappeningKind, re.Pattern[str]], ...] = (
    (HappeningKind.RED_CARD, re.compile(r"\b(red ?card|second yellow)\b")),
    (HappeningKind.YELLOW_CARD, re.compile(r"\byellow ?card\b")),
    (HappeningKind.GOAL, re.compile(r"\b(goal|own goal|penalty scored)\b")),
    (HappeningKind.SUBSTITUTION, re.compile(r"\b(substitution|sub)\b")),
    (HappeningKind.VAR, re.compile(r"\b(var|video assistant referee)\b")),
    (HappeningKind.MATCH_START, re.compile(r"\b(kick ?off|match start)\b")),
    (HappeningKind.MATCH_END, re.compile(r"\b(full ?time|match end)\b")),
)

# Kinds that only ever come from the scoreboard, never from the play feed.
MATCH_LEVEL_KINDS = frozenset(
    {HappeningKind.MATCH_START, HappeningKind.MATCH_END, HappeningKind.HIGHLIGHTS}
)

_SUFFIX_CLEAN_RE = re.compile(r"[\s#]+")


def classify_happening(type_text: Optional[str]) -> Optional[HappeningKind]:
    """Map a provider play type (e.g. ``"Yellow Card"``) to a kind."""
    if not type_text:
        return None
    text = " ".join(re.split(r"[^a-z0-9]+", type_text.lower())).strip()
    for kind, pattern in _CLASSIFIERS:
        if pattern.search(text):
            return kind
    return None


def match_event_id(match_key: str, kind: HappeningKind) -> str:
    """Identity of a match-level post such as ``bra.1:401#match-start``."""
    return f"{match_key}{EVENT_SEPARATOR}{kind.value.replace('_', '-')}"


def happening_event_id(
    match_key: str, happening: Mapping[str, Any], kind: HappeningKind
) -> str:
    """Deterministic identity of one happening within a match.

    Uses the provider's id when there is one, otherwise kind, minute and
    participant, so re-fetching the same play always yields the same id.
    """
    external_id = happening.get("id")
    if external_id not in (None, ""):
        suffix = str(external_id)
    else:
        participant = happening.get("participant") or happening.get("team_id") or "unknown"
        suffix = f"{kind.value}-{happening.get('minute') or '?'}-{participant}"
    suffix = _SUFFIX_CLEAN_RE.sub("_", suffix)
    return f"{match_key}{EVENT_SEPARATOR}{suffix}"


@dataclass(frozen=True)
class MatchEvent:
    """A post that was delivered for a match."""

    league: str
    match_key: str
    kind: HappeningKind
    event_id: str
    text: str
    delivered_id: str
    timestamp: datetime

    def formatted_output(self) -> str:
        """Return a human-readable log line for this event."""
        ts = self.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        return f"[{ts}] {self.league} {self.match_key} {self.kind.value}\n  {self.text}"

    def __str__(self) -> str:
        return self.formatted_output()
