"""In-process topic fan-out with bounded per-subscriber buffers.

``publish`` never awaits. Each subscriber owns a bounded queue; when it is
full the oldest buffered update is discarded to make room, so a slow
subscriber loses history instead of slowing the ingestion pipeline. Every
publish call reaches each subscriber at most once.
"""

import asyncio
import itertools
from typing import Protocol

from loguru import logger
from pydantic import BaseModel


class Publisher(Protocol):
    def publish(self, topic: str, payload: BaseModel) -> int: ...


class Subscription:
    """Handle returned by ``Broadcaster.subscribe``."""

    _ids = itertools.count(1)

    def __init__(self, topic: str, maxsize: int) -> None:
        self.id = next(self._ids)
        self.topic = topic
        self.dropped = 0
        self.closed = False
        self._queue: asyncio.Queue[BaseModel] = asyncio.Queue(maxsize=maxsize)

    def _offer(self, payload: BaseModel) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(payload)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> BaseModel:
        return await self._queue.get()

    def get_nowait(self) -> BaseModel:
        """Next buffered update. Raises ``asyncio.QueueEmpty`` if none."""
        return self._queue.get_nowait()

    def drain(self) -> list[BaseModel]:
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, topic={self.topic!r}, pending={self.pending})"


class Broadcaster:
    def __init__(self, queue_size: int = 256) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")
        self._queue_size = queue_size
        self._topics: dict[str, set[Subscription]] = {}
        self.published = 0
        self.delivered = 0

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(topic, self._queue_size)
        self._topics.setdefault(topic, set()).add(sub)
        logger.debug(f"[BCAST] +sub {sub.id} on {topic}")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Leave the topic. Idempotent; buffered updates stay readable."""
        sub.closed = True
        subs = self._topics.get(sub.topic)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._topics[sub.topic]
        logger.debug(f"[BCAST] -sub {sub.id} on {sub.topic}")

    def publish(self, topic: str, payload: BaseModel) -> int:
        """Deliver to every current subscriber of ``topic``. Returns how many."""
        self.published += 1
        delivered = 0
        # Snapshot: a subscriber may leave while we iterate
        for sub in tuple(self._topics.get(topic, ())):
            if sub.closed:
                continue
            sub._offer(payload)
            delivered += 1
        self.delivered += delivered
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    @property
    def topics(self) -> list[str]:
        return sorted(self._topics)
