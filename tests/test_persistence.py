"""Tests for core.persistence.StateFile."""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

from core.persistence import StateFile
from core.snapshot import MatchStatus, Score, Snapshot


def _snapshots() -> dict[str, Snapshot]:
    return {
        "bra.1:401": Snapshot("401", Score(1, 0), MatchStatus.IN, "45'"),
        "eng.1:77": Snapshot("77", Score(0, 0), MatchStatus.PRE, "-"),
    }


class TestLoad:
    def test_missing_file_is_empty_state(self, state_file: StateFile) -> None:
        state = state_file.load()
        assert state.posted_event_ids == set()
        assert state.previous_snapshots == {}
        assert state.active_keys == []

    def test_corrupt_file_is_empty_state(self, state_file: StateFile) -> None:
        state_file.path.write_text("{not json", encoding="utf-8")
        state = state_file.load()
        assert state.posted_event_ids == set()

    def test_unexpected_shape_is_empty_state(self, state_file: StateFile) -> None:
        state_file.path.write_text("[1, 2, 3]", encoding="utf-8")
        assert state_file.load().previous_snapshots == {}


class TestRoundTrip:
    def test_save_then_load_returns_equal_state(self, state_file: StateFile) -> None:
        posted = {"bra.1:401#match-start", "bra.1:401#9001"}
        assert state_file.save(posted, _snapshots(), ["bra.1:401"]) is True

        loaded = state_file.load()
        assert loaded.posted_event_ids == posted
        assert loaded.previous_snapshots == _snapshots()
        assert loaded.active_keys == ["bra.1:401"]

    def test_unicode_identifiers_survive(self, state_file: StateFile) -> None:
        posted = {"bra.1:401#gol-45'-João_Pedro", "tür.1:ç#😀"}
        snapshots = {"tür.1:ç": Snapshot("ç", Score(2, 2), MatchStatus.POST, "Tempo é")}

        state_file.save(posted, snapshots, [])
        loaded = state_file.load()

        assert loaded.posted_event_ids == posted
        assert loaded.previous_snapshots == snapshots
        assert "João" in state_file.path.read_text(encoding="utf-8")

    def test_file_records_the_three_fields(self, state_file: StateFile) -> None:
        state_file.save({"e1"}, _snapshots(), ["bra.1:401"])
        raw = json.loads(state_file.path.read_text(encoding="utf-8"))
        assert set(raw) >= {"postedEventIds", "previousSnapshots", "activeKeys"}
        assert raw["previousSnapshots"]["bra.1:401"]["status"] == "in"

    def test_creates_missing_directory(self, tmp_path: Path) -> None:
        state_file = StateFile(tmp_path / "nested" / "dir" / "state.json")
        assert state_file.save(set(), {}, []) is True
        assert state_file.path.exists()


class TestAtomicity:
    def test_failed_replace_keeps_previous_file(self, state_file: StateFile) -> None:
        state_file.save({"old"}, {}, [])

        with patch("core.persistence.os.replace", side_effect=OSError("disk full")):
            assert state_file.save({"new"}, {}, []) is False

        assert state_file.load().posted_event_ids == {"old"}
        leftovers = [p for p in os.listdir(state_file.path.parent) if p.endswith(".tmp")]
        assert leftovers == []

    def test_stale_temp_file_does_not_affect_load(self, state_file: StateFile) -> None:
        state_file.save({"kept"}, {}, [])
        (state_file.path.parent / ".state.json.partial.tmp").write_text('{"postedEv', encoding="utf-8")
        assert state_file.load().posted_event_ids == {"kept"}


class TestStats:
    def test_stats_before_and_after_save(self, state_file: StateFile) -> None:
        assert state_file.stats() == {"exists": False}
        state_file.save(set(), {}, [])
        stats = state_file.stats()
        assert stats["exists"] is True
        assert stats["size"] > 0
