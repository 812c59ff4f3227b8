"""Configuration loading.

Settings live in a YAML file (``config/leagues.yaml`` by default); secrets
and the dry-run switch come from the environment.  :func:`load_config`
validates everything up front and reports all problems at once.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from core.scheduler import PollTunables
from core.snapshot import EVENT_SEPARATOR, KEY_SEPARATOR
from events.models import HappeningKind

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "leagues.yaml"


class ConfigError(Exception):
    """Raised when the configuration file or environment is invalid."""


@dataclass(frozen=True)
class League:
    code: str
    name: str
    hashtags: tuple[str, ...] = ()


@dataclass(frozen=True)
class EspnSettings:
    base_url: str = "https://site.api.espn.com/apis/site/v2/sports/soccer"
    timeout: float = 10.0
    max_attempts: int = 3
    max_concurrent_requests: int = 10


@dataclass(frozen=True)
class MastodonSettings:
    instance: str = "https://mastodon.social"
    access_token: Optional[str] = None
    visibility: str = "public"
    dry_run: bool = False


@dataclass(frozen=True)
class StateSettings:
    path: Path = Path("data/state.json")
    save_interval: float = 300.0


@dataclass(frozen=True)
class Settings:
    leagues: tuple[League, ...]
    polling: PollTunables
    espn: EspnSettings = field(default_factory=EspnSettings)
    mastodon: MastodonSettings = field(default_factory=MastodonSettings)
    state: StateSettings = field(default_factory=StateSettings)
    enabled_kinds: frozenset[HappeningKind] = frozenset(HappeningKind)
    post_delay: float = 2.0

    def league(self, code: str) -> Optional[League]:
        for league in self.leagues:
            if league.code == code:
                return league
        return None


def _number(
    section: Mapping[str, Any],
    name: str,
    default: float,
    errors: list[str],
    minimum: float = 0.0,
    maximum: float = float("inf"),
) -> float:
    value = section.get(name, default)
    try:
        number = float(value)
    except (TypeError, ValueError):
        errors.append(f"{name} must be a number, got {value!r}")
        return default
    if not minimum <= number <= maximum:
        errors.append(f"{name} must be between {minimum} and {maximum}, got {number}")
    return number


def _section(raw: Mapping[str, Any], name: str, errors: list[str]) -> Mapping[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        errors.append(f"section '{name}' must be a mapping")
        return {}
    return value


def _parse_leagues(raw: Any, errors: list[str]) -> tuple[League, ...]:
    if not isinstance(raw, list) or not raw:
        errors.append("at least one league must be configured under 'leagues'")
        return ()
    leagues: list[League] = []
    for entry in raw:
        code = str((entry or {}).get("code", "")).strip() if isinstance(entry, Mapping) else ""
        if not code:
            errors.append(f"league entry {entry!r} has no code")
            continue
        if KEY_SEPARATOR in code or EVENT_SEPARATOR in code:
            errors.append(f"league code {code!r} contains a reserved character")
            continue
        leagues.append(
            League(
                code=code,
                name=str(entry.get("name") or code),
                hashtags=tuple(str(h) for h in entry.get("hashtags") or ()),
            )
        )
    return tuple(leagues)


def _env_flag(env: Mapping[str, str], name: str) -> Optional[bool]:
    value = env.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_config(raw: Mapping[str, Any], env: Mapping[str, str]) -> Settings:
    """Build :class:`Settings` from an already-parsed YAML mapping."""
    errors: list[str] = []

    leagues = _parse_leagues(raw.get("leagues"), errors)

    polling = _section(raw, "polling", errors)
    tunables = PollTunables(
        live_delay=_number(polling, "live_delay", 60, errors, 10, 300),
        alert_delay=_number(polling, "alert_delay", 120, errors, 10, 900),
        hibernation_delay=_number(polling, "hibernation_delay", 1800, errors, 60, 86400),
        pre_window=_number(polling, "pre_window", 600, errors, 0, 7200),
        max_refresh_delay=_number(polling, "max_refresh_delay", 3600, errors, 60, 86400),
    )

    espn_raw = _section(raw, "espn", errors)
    espn = EspnSettings(
        base_url=str(espn_raw.get("base_url", EspnSettings.base_url)).rstrip("/"),
        timeout=_number(espn_raw, "timeout", EspnSettings.timeout, errors, 1, 60),
        max_attempts=int(
            _number(espn_raw, "max_attempts", EspnSettings.max_attempts, errors, 1, 10)
        ),
        max_concurrent_requests=int(
            _number(
                espn_raw,
                "max_concurrent_requests",
                EspnSettings.max_concurrent_requests,
                errors,
                1,
                100,
            )
        ),
    )

    mastodon_raw = _section(raw, "mastodon", errors)
    dry_run = _env_flag(env, "DRY_RUN")
    if dry_run is None:
        dry_run = bool(mastodon_raw.get("dry_run", False))
    token = env.get("MASTODON_ACCESS_TOKEN") or None
    if not dry_run:
        if not token:
            errors.append("MASTODON_ACCESS_TOKEN is required unless DRY_RUN is set")
        elif len(token) < 10:
            errors.append("MASTODON_ACCESS_TOKEN appears to be invalid (too short)")
    mastodon = MastodonSettings(
        instance=str(mastodon_raw.get("instance", MastodonSettings.instance)).rstrip("/"),
        access_token=token,
        visibility=str(mastodon_raw.get("visibility", MastodonSettings.visibility)),
        dry_run=dry_run,
    )

    state_raw = _section(raw, "state", errors)
    state = StateSettings(
        path=Path(env.get("STATE_PATH") or state_raw.get("path") or StateSettings.path),
        save_interval=_number(state_raw, "save_interval", 300, errors, 10, 3600),
    )

    events_raw = _section(raw, "events", errors)
    enabled = set(HappeningKind)
    for name, flag in events_raw.items():
        try:
            kind = HappeningKind(name)
        except ValueError:
            errors.append(f"unknown event kind {name!r} under 'events'")
            continue
        if not flag:
            enabled.discard(kind)

    delays = _section(raw, "delays", errors)
    post_delay = _number(delays, "between_posts", 2.0, errors, 0, 60)

    if errors:
        raise ConfigError("Configuration validation failed:\n" + "\n".join(errors))

    return Settings(
        leagues=leagues,
        polling=tunables,
        espn=espn,
        mastodon=mastodon,
        state=state,
        enabled_kinds=frozenset(enabled),
        post_delay=post_delay,
    )


def load_config(
    path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None
) -> Settings:
    """Read the YAML file at *path* and return validated :class:`Settings`."""
    env = os.environ if env is None else env
    path = path or Path(env.get("MATCHFEED_CONFIG") or DEFAULT_CONFIG_PATH)
    try:
        with open(path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping")

    settings = parse_config(raw, env)
    logger.info(
        "Loaded %d league(s) from %s (dry_run=%s)",
        len(settings.leagues),
        path,
        settings.mastodon.dry_run,
    )
    return settings
