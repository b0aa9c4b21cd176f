"""In-memory change feed with per-subscriber queues."""
import asyncio
import uuid
from collections.abc import AsyncIterator

import structlog

from listing_search.events.types import ChangeNotification

logger = structlog.get_logger()


class ChangeFeed:
    """Async fan-out feed for listing change notifications.

    Each subscriber gets its own bounded queue. A full queue makes the
    publisher wait; notifications are never dropped.

    Attributes:
        queue_size: Maximum pending notifications per subscriber.
    """

    def __init__(self, queue_size: int = 1000) -> None:
        """Initialize change feed.

        Args:
            queue_size: Maximum pending notifications per subscriber.
        """
        self._subscribers: dict[str, asyncio.Queue[ChangeNotification]] = {}
        self._queue_size = queue_size
        self._published = 0
        self._lock = asyncio.Lock()

    @property
    def subscriber_count(self) -> int:
        """Number of active subscribers."""
        return len(self._subscribers)

    @property
    def published_count(self) -> int:
        """Total notifications accepted by the feed."""
        return self._published

    @property
    def pending(self) -> int:
        """Largest backlog across subscriber queues."""
        return max((q.qsize() for q in self._subscribers.values()), default=0)

    def take_pending(self) -> list[ChangeNotification]:
        """Remove and return every queued notification, oldest first per subscriber."""
        taken: list[ChangeNotification] = []
        for queue in self._subscribers.values():
            while not queue.empty():
                taken.append(queue.get_nowait())
        return taken

    async def publish(self, notification: ChangeNotification) -> int:
        """Deliver a notification to every subscriber.

        Waits for queue space when a subscriber is behind.

        Args:
            notification: Change to publish.

        Returns:
            Number of subscribers that received the notification.
        """
        self._published += 1
        delivered = 0
        for queue in list(self._subscribers.values()):
            await queue.put(notification)
            delivered += 1

        logger.debug(
            "change_published",
            listing_id=notification.id,
            operation=notification.operation.value,
            subscribers=delivered,
        )
        return delivered

    async def subscribe(self) -> tuple[str, AsyncIterator[ChangeNotification]]:
        """Subscribe to change notifications.

        Returns:
            Tuple of (subscriber_id, notification_iterator).
        """
        async with self._lock:
            subscriber_id = str(uuid.uuid4())
            queue: asyncio.Queue[ChangeNotification] = asyncio.Queue(
                maxsize=self._queue_size,
            )
            self._subscribers[subscriber_id] = queue

        async def notification_iterator() -> AsyncIterator[ChangeNotification]:
            try:
                while True:
                    yield await queue.get()
            finally:
                await self.unsubscribe(subscriber_id)

        return subscriber_id, notification_iterator()

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Remove a subscriber from the feed.

        Args:
            subscriber_id: ID of the subscriber to remove.
        """
        async with self._lock:
            if self._subscribers.pop(subscriber_id, None) is not None:
                logger.debug("feed_subscriber_removed", subscriber_id=subscriber_id)
