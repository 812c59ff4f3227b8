from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator

from events.models import MatchEvent

logger = logging.getLogger(__name__)

_DEFAULT_QUEUE_SIZE = 256


class EventBus:
    """Fan-out bus for delivered match events.

    Every call to :meth:`subscribe` creates a dedicated bounded queue and
    :meth:`publish` places each event into all of them.  Publishing never
    waits on a subscriber: when a queue is full its oldest event is dropped,
    so a slow consumer cannot stall the polling cycle.
    """

    def __init__(self, max_queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        self._max_queue_size = max_queue_size
        self._subscriber_queues: list[asyncio.Queue[MatchEvent]] = []

    def publish(self, event: MatchEvent) -> None:
        """Broadcast *event* to all current subscribers."""
        for queue in list(self._subscriber_queues):
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning(
                    "Subscriber lagging, dropped event %s", dropped.event_id
                )
            queue.put_nowait(event)

    async def subscribe(self) -> AsyncGenerator[MatchEvent, None]:
        """Yield events as they are published until the generator is closed."""
        queue: asyncio.Queue[MatchEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscriber_queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscriber_queues.remove(queue)

    def size(self) -> int:
        """Return the number of active subscriber queues."""
        return len(self._subscriber_queues)
