"""Mastodon publisher.

Posts status text through the Mastodon REST API with ``aiohttp``.  Delivery
failures are logged and reported as ``None``; deduplication is the caller's
job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import aiohttp

from core.metrics import Metrics

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15)
DRY_RUN_ID = "dry-run"


class MastodonPublisher:
    """Posts statuses to a Mastodon instance.

    Parameters
    ----------
    session:
        A shared :class:`aiohttp.ClientSession`.
    instance:
        Base URL of the instance, e.g. ``https://mastodon.social``.
    access_token:
        Bearer token of the bot account.  Not needed in dry-run mode.
    visibility:
        Visibility of every post (``public``, ``unlisted``, ...).
    dry_run:
        Log posts instead of sending them.
    metrics:
        Shared counters; every real post attempt is recorded.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        instance: str,
        access_token: Optional[str] = None,
        visibility: str = "public",
        dry_run: bool = False,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._session = session
        self._instance = instance.rstrip("/")
        self._access_token = access_token
        self._visibility = visibility
        self._dry_run = dry_run
        self._metrics = metrics if metrics is not None else Metrics()

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def deliver(self, text: str, in_reply_to: Optional[str] = None) -> Optional[str]:
        """Post *text*, optionally as a reply.  Returns the status id or ``None``."""
        if self._dry_run:
            logger.info("[DRY RUN] Would post: %s", text)
            return DRY_RUN_ID

        started = time.perf_counter()
        status_id = await self._post_status(text, in_reply_to)
        self._metrics.record_post(status_id is not None, time.perf_counter() - started)
        return status_id

    async def _post_status(self, text: str, in_reply_to: Optional[str]) -> Optional[str]:
        form = {"status": text, "visibility": self._visibility}
        if in_reply_to and in_reply_to != DRY_RUN_ID:
            form["in_reply_to_id"] = in_reply_to

        try:
            async with self._session.post(
                f"{self._instance}/api/v1/statuses",
                data=form,
                headers=self._headers(),
                timeout=_REQUEST_TIMEOUT,
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(
                        "Mastodon rejected post (%d): %.200s", response.status, body
                    )
                    return None
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.error("Failed to post status: %s", exc)
            return None

        status_id = payload.get("id") if isinstance(payload, dict) else None
        if not status_id:
            logger.error("Mastodon response carried no status id")
            return None
        logger.info("Posted status %s", status_id)
        return str(status_id)

    async def verify_credentials(self) -> bool:
        """Check that the access token is valid."""
        if self._dry_run:
            return True
        try:
            async with self._session.get(
                f"{self._instance}/api/v1/accounts/verify_credentials",
                headers=self._headers(),
                timeout=_REQUEST_TIMEOUT,
            ) as response:
                if response.status != 200:
                    logger.error("Credential check failed (%d)", response.status)
                    return False
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.error("Credential check failed: %s", exc)
            return False
        if isinstance(payload, dict):
            logger.info("Authenticated as %s", payload.get("username"))
        return True
