import asyncio
import logging
from typing import Any, Dict, Optional, Set

from shared.config import settings

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """A bounded channel of real-time messages. When full, the oldest message is dropped."""

    def __init__(self, broadcaster: "Broadcaster", user_id: Optional[str], maxsize: int):
        self.user_id = user_id
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, user_id: Optional[str]) -> bool:
        return self.user_id is None or self.user_id == user_id

    def offer(self, message: Any) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(message)

    async def get(self) -> Any:
        message = await self._queue.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broadcaster.unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        return await self.get()


class Broadcaster:
    def __init__(self, maxsize: int = settings.SUBSCRIBER_QUEUE_SIZE):
        self._maxsize = maxsize
        self._subscribers: Set[Subscription] = set()

    def subscribe(self, user_id: Optional[str] = None, maxsize: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, user_id, maxsize or self._maxsize)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, message: Dict[str, Any], user_id: Optional[str] = None) -> None:
        for subscription in list(self._subscribers):
            if not subscription.wants(user_id):
                continue
            try:
                subscription.offer(message)
            except Exception as e:
                logger.error(f"Error delivering real-time message: {e}")

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()
