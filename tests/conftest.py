"""Shared fixtures for the match feed test suite."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.persistence import StateFile
from core.state import StateManager
from events.bus import EventBus
from events.models import HappeningKind, MatchEvent


@pytest.fixture
def event_bus() -> EventBus:
    """Return a fresh EventBus instance."""
    return EventBus()


@pytest.fixture
def state_manager() -> StateManager:
    """Return an in-memory StateManager that is already ready."""
    sm = StateManager()
    sm._ready.set()
    return sm


@pytest.fixture
def state_file(tmp_path: Path) -> StateFile:
    return StateFile(tmp_path / "state.json")


@pytest.fixture
def publisher() -> MagicMock:
    """A publisher whose deliveries succeed with increasing ids."""
    pub = MagicMock()
    counter = {"n": 0}

    async def deliver(text: str, in_reply_to: str | None = None) -> str:
        counter["n"] += 1
        return f"status-{counter['n']}"

    pub.deliver = AsyncMock(side_effect=deliver)
    return pub


@pytest.fixture
def fetcher() -> MagicMock:
    f = MagicMock()
    f.fetch_scoreboard = AsyncMock(return_value=[])
    f.fetch_happenings = AsyncMock(return_value=[])
    f.fetch_highlights = AsyncMock(return_value=[])
    return f


@pytest.fixture
def sample_match_event() -> MatchEvent:
    """Return a realistic delivered MatchEvent."""
    return MatchEvent(
        league="bra.1",
        match_key="bra.1:401",
        kind=HappeningKind.GOAL,
        event_id="bra.1:401#9001",
        text="GOAL! (23')\nRaphael Veiga\nPalmeiras 1-0 Santos",
        delivered_id="status-1",
        timestamp=datetime(2026, 5, 3, 19, 25, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def sample_scoreboard() -> dict[str, Any]:
    """Return a trimmed ESPN scoreboard payload with two matches."""
    return {
        "events": [
            {
                "id": 401547,
                "date": "2026-05-03T19:00Z",
                "competitions": [
                    {
                        "venue": {"fullName": "Allianz Parque"},
                        "status": {
                            "displayClock": "23'",
                            "type": {"name": "STATUS_FIRST_HALF", "state": "in"},
                        },
                        "competitors": [
                            {
                                "homeAway": "home",
                                "score": "1",
                                "team": {"id": "100", "displayName": "Palmeiras"},
                            },
                            {
                                "homeAway": "away",
                                "score": "0",
                                "team": {"id": "101", "displayName": "Santos"},
                            },
                        ],
                    }
                ],
            },
            {
                "id": "401548",
                "date": "2026-05-03T21:30Z",
                "competitions": [
                    {
                        "status": {
                            "displayClock": "0'",
                            "type": {"name": "STATUS_SCHEDULED", "state": "pre"},
                        },
                        "competitors": [
                            {"homeAway": "home", "score": "0", "team": {"id": "102", "displayName": "Flamengo"}},
                            {"homeAway": "away", "score": "0", "team": {"id": "103", "displayName": "Vasco"}},
                        ],
                    }
                ],
            },
        ]
    }
