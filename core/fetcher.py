"""Async ESPN client for scoreboards and match summaries.

Uses ``aiohttp`` with a shared session and a semaphore that caps concurrent
requests.  Responses are flattened into plain dict records so the rest of
the system never reads ESPN's JSON layout directly.  Transient failures are
retried with exponential backoff and then surfaced as :class:`FetchError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

import aiohttp

from core.metrics import Metrics

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://site.api.espn.com/apis/site/v2/sports/soccer"
_BACKOFF_BASE = 1.0  # seconds, doubled per retry
_MAX_BACKOFF = 10.0


class FetchError(Exception):
    """Raised when a request still fails after all retries."""


def _competitor(competition: dict[str, Any], side: str) -> dict[str, Any]:
    for competitor in competition.get("competitors") or []:
        if competitor.get("homeAway") == side:
            return competitor
    return {}


def _team(competitor: dict[str, Any]) -> dict[str, Any]:
    team = competitor.get("team") or {}
    return {
        "id": str(team["id"]) if team.get("id") is not None else None,
        "name": team.get("displayName") or team.get("name") or "",
    }


def _record_from_competition(
    event_id: Any, competition: dict[str, Any], start_time: Optional[str]
) -> dict[str, Any]:
    home = _competitor(competition, "home")
    away = _competitor(competition, "away")
    status = competition.get("status") or {}
    status_type = status.get("type") or {}
    return {
        "id": str(event_id) if event_id is not None else None,
        "home_team": _team(home),
        "away_team": _team(away),
        "home_score": home.get("score"),
        "away_score": away.get("score"),
        "status": status_type.get("name") or status_type.get("description") or "",
        "state": status_type.get("state") or "",
        "clock": status.get("displayClock"),
        "start_time": start_time,
        "venue": (competition.get("venue") or {}).get("fullName"),
    }


def parse_scoreboard(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten an ESPN scoreboard payload into match records."""
    records: list[dict[str, Any]] = []
    for event in data.get("events") or []:
        competitions = event.get("competitions") or []
        if not competitions:
            logger.debug("Skipping scoreboard event %s without competitions", event.get("id"))
            continue
        records.append(
            _record_from_competition(event.get("id"), competitions[0], event.get("date"))
        )
    return records


def parse_key_events(data: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten the ``keyEvents`` of an ESPN summary into happening records."""
    happenings: list[dict[str, Any]] = []
    for event in data.get("keyEvents") or []:
        participants = event.get("participants") or []
        athlete = (participants[0].get("athlete") or {}) if participants else {}
        happenings.append(
            {
                "id": str(event["id"]) if event.get("id") is not None else None,
                "type": (event.get("type") or {}).get("text") or "",
                "minute": (event.get("clock") or {}).get("displayValue") or "",
                "team_id": (event.get("team") or {}).get("id"),
                "participant": athlete.get("displayName"),
                "description": event.get("text") or "",
            }
        )
    return happenings


def parse_highlights(data: dict[str, Any]) -> list[dict[str, Any]]:
    highlights: list[dict[str, Any]] = []
    for video in data.get("videos") or []:
        links = video.get("links") or {}
        url = ((links.get("source") or {}).get("mezzanine") or {}).get("href") or (
            links.get("mobile") or {}
        ).get("href")
        if url:
            highlights.append({"url": url, "title": video.get("headline") or ""})
    return highlights


class ScoreboardFetcher:
    """Fetches ESPN scoreboards and summaries with concurrency control.

    Parameters
    ----------
    semaphore:
        An :class:`asyncio.Semaphore` that caps concurrent HTTP requests.
    session:
        A shared :class:`aiohttp.ClientSession` for connection pooling.
    base_url:
        Soccer API root; league codes are appended to it.
    timeout:
        Total per-request timeout in seconds.
    max_attempts:
        Attempts per request before :class:`FetchError` is raised.
    metrics:
        Shared counters; every attempt is recorded with its latency.
    """

    def __init__(
        self,
        semaphore: asyncio.Semaphore,
        session: aiohttp.ClientSession,
        base_url: str = _DEFAULT_BASE_URL,
        timeout: float = 10.0,
        max_attempts: int = 3,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._semaphore = semaphore
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_attempts = max(1, max_attempts)
        self._metrics = metrics if metrics is not None else Metrics()

    async def fetch_scoreboard(self, league: str) -> list[dict[str, Any]]:
        """Return today's match records for *league*."""
        data = await self._get_json(f"{self._base_url}/{league}/scoreboard")
        records = parse_scoreboard(data)
        logger.debug("%s: %d match(es) on scoreboard", league, len(records))
        return records

    async def fetch_happenings(self, league: str, match_id: str) -> list[dict[str, Any]]:
        """Return the key events (goals, cards, ...) of one match."""
        return parse_key_events(await self._summary(league, match_id))

    async def fetch_highlights(self, league: str, match_id: str) -> list[dict[str, Any]]:
        return parse_highlights(await self._summary(league, match_id))

    async def _summary(self, league: str, match_id: str) -> dict[str, Any]:
        return await self._get_json(
            f"{self._base_url}/{league}/summary", params={"event": match_id}
        )

    async def _get_json(
        self, url: str, params: Optional[dict[str, str]] = None
    ) -> dict[str, Any]:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self._max_attempts + 1):
            started = time.perf_counter()
            try:
                async with self._semaphore:
                    async with self._session.get(
                        url, params=params, timeout=self._timeout
                    ) as response:
                        if response.status == 404:
                            self._metrics.record_request(True, time.perf_counter() - started)
                            return {}
                        response.raise_for_status()
                        data = await response.json(content_type=None)
                self._metrics.record_request(True, time.perf_counter() - started)
                return data if isinstance(data, dict) else {}
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                self._metrics.record_request(False, time.perf_counter() - started)
                last_error = exc
                if attempt == self._max_attempts:
                    break
                delay = min(_BACKOFF_BASE * (2 ** (attempt - 1)), _MAX_BACKOFF)
                logger.warning(
                    "GET %s failed (attempt %d/%d): %s, retrying in %.1fs",
                    url,
                    attempt,
                    self._max_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

        raise FetchError(f"GET {url} failed after {self._max_attempts} attempt(s): {last_error}")
