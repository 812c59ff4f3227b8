"""Tests for core.config."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from core.config import DEFAULT_CONFIG_PATH, ConfigError, load_config, parse_config
from events.models import HappeningKind

TOKEN_ENV = {"MASTODON_ACCESS_TOKEN": "abcdefghijklmnop"}


def _raw(**overrides: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "leagues": [{"code": "bra.1", "name": "Brasileirão", "hashtags": ["#Brasileirão"]}],
    }
    raw.update(overrides)
    return raw


class TestParseConfig:
    def test_minimal_config_uses_defaults(self) -> None:
        settings = parse_config(_raw(), TOKEN_ENV)

        assert [league.code for league in settings.leagues] == ["bra.1"]
        assert settings.league("bra.1").hashtags == ("#Brasileirão",)
        assert settings.league("eng.1") is None
        assert settings.polling.live_delay == 60
        assert settings.polling.hibernation_delay == 1800
        assert settings.mastodon.access_token == TOKEN_ENV["MASTODON_ACCESS_TOKEN"]
        assert settings.enabled_kinds == frozenset(HappeningKind)

    def test_event_toggles(self) -> None:
        settings = parse_config(_raw(events={"substitution": False, "var": False}), TOKEN_ENV)

        assert HappeningKind.SUBSTITUTION not in settings.enabled_kinds
        assert HappeningKind.VAR not in settings.enabled_kinds
        assert HappeningKind.GOAL in settings.enabled_kinds

    def test_missing_token_is_an_error(self) -> None:
        with pytest.raises(ConfigError, match="MASTODON_ACCESS_TOKEN"):
            parse_config(_raw(), {})

    def test_dry_run_env_needs_no_token(self) -> None:
        settings = parse_config(_raw(), {"DRY_RUN": "true"})
        assert settings.mastodon.dry_run is True
        assert settings.mastodon.access_token is None

    def test_dry_run_env_overrides_file(self) -> None:
        settings = parse_config(_raw(mastodon={"dry_run": True}), {"DRY_RUN": "0", **TOKEN_ENV})
        assert settings.mastodon.dry_run is False

    def test_state_path_from_env(self) -> None:
        settings = parse_config(_raw(), {"STATE_PATH": "/tmp/x.json", **TOKEN_ENV})
        assert settings.state.path == Path("/tmp/x.json")

    def test_all_errors_reported_together(self) -> None:
        raw = _raw(
            leagues=[{"code": "bad:code"}],
            polling={"live_delay": 1, "alert_delay": "soon"},
            events={"penalty_shootout": True},
        )
        with pytest.raises(ConfigError) as excinfo:
            parse_config(raw, {})

        message = str(excinfo.value)
        assert "reserved character" in message
        assert "live_delay" in message
        assert "alert_delay" in message
        assert "penalty_shootout" in message
        assert "MASTODON_ACCESS_TOKEN" in message

    def test_no_leagues_is_an_error(self) -> None:
        with pytest.raises(ConfigError, match="at least one league"):
            parse_config({"leagues": []}, TOKEN_ENV)


class TestLoadConfig:
    def test_shipped_config_is_valid(self) -> None:
        settings = load_config(DEFAULT_CONFIG_PATH, {"DRY_RUN": "1"})
        codes = [league.code for league in settings.leagues]
        assert "bra.1" in codes
        assert HappeningKind.SUBSTITUTION not in settings.enabled_kinds

    def test_path_from_env(self, tmp_path: Path) -> None:
        path = tmp_path / "custom.yaml"
        path.write_text("leagues:\n  - code: eng.1\n", encoding="utf-8")

        settings = load_config(env={"MATCHFEED_CONFIG": str(path), "DRY_RUN": "yes"})

        assert [league.code for league in settings.leagues] == ["eng.1"]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(tmp_path / "nope.yaml", {})

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("leagues: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path, {})
