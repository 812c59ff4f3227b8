"""Entry point for the match feed bot.

Loads configuration, restores persisted state, wires up all components and
runs the polling loop until interrupted with Ctrl+C or SIGTERM.  Shutdown
stops polling first, then saves state one last time.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import aiohttp

from consumers.console import ConsoleConsumer
from core.config import ConfigError, load_config
from core.fetcher import ScoreboardFetcher
from core.metrics import Metrics
from core.persistence import StateFile
from core.processor import EventProcessor
from core.publisher import MastodonPublisher
from core.scheduler import PollScheduler
from core.state import StateManager
from events.bus import EventBus

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    try:
        settings = load_config()
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    event_bus = EventBus()
    metrics = Metrics()
    state_file = StateFile(settings.state.path)
    file_stats = state_file.stats()
    if file_stats["exists"]:
        logger.info(
            "Resuming from %s (%d bytes, saved %s)",
            state_file.path,
            file_stats["size"],
            file_stats["modified"].isoformat(),
        )
    state_manager = StateManager(
        state_file=state_file,
        save_interval=settings.state.save_interval,
        metrics=metrics,
    )
    semaphore = asyncio.Semaphore(settings.espn.max_concurrent_requests)

    async with aiohttp.ClientSession() as session:
        publisher = MastodonPublisher(
            session=session,
            instance=settings.mastodon.instance,
            access_token=settings.mastodon.access_token,
            visibility=settings.mastodon.visibility,
            dry_run=settings.mastodon.dry_run,
            metrics=metrics,
        )
        if settings.mastodon.dry_run:
            logger.info("DRY RUN enabled, nothing will be posted")
        elif not await publisher.verify_credentials():
            logger.error("Mastodon authentication failed, exiting")
            sys.exit(1)

        fetcher = ScoreboardFetcher(
            semaphore=semaphore,
            session=session,
            base_url=settings.espn.base_url,
            timeout=settings.espn.timeout,
            max_attempts=settings.espn.max_attempts,
            metrics=metrics,
        )
        processor = EventProcessor(
            state_manager=state_manager,
            fetcher=fetcher,
            publisher=publisher,
            event_bus=event_bus,
            enabled_kinds=settings.enabled_kinds,
            hashtags={league.code: league.hashtags for league in settings.leagues},
            post_delay=settings.post_delay,
            metrics=metrics,
        )
        scheduler = PollScheduler(
            leagues=[league.code for league in settings.leagues],
            fetcher=fetcher,
            processor=processor,
            state_manager=state_manager,
            tunables=settings.polling,
            metrics=metrics,
        )
        consumer = ConsoleConsumer(event_bus=event_bus)

        # State must be restored before the first poll.
        await state_manager.start()
        consumer_task = asyncio.create_task(consumer.start(), name="console-consumer")
        await scheduler.start()

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        logger.info("Match feed running, press Ctrl+C to stop")
        await stop_event.wait()

        logger.info("Shutting down…")
        await scheduler.stop()
        await state_manager.stop()
        await consumer.stop()
        consumer_task.cancel()
        try:
            await consumer_task
        except asyncio.CancelledError:
            pass

    metrics.log_summary()
    logger.info("Goodbye")


if __name__ == "__main__":
    asyncio.run(main())
