"""Redis pub/sub backend for derived updates.

``RedisPublisher`` is a drop-in ``Publisher`` for the ingestion process:
each publish queues the update for one background sender and returns
immediately.
``RedisRelay`` runs in subscriber-facing processes and replays those
channels into a local ``Broadcaster``.
"""

import asyncio
import contextlib
from typing import Annotated

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from src.broadcast.broadcaster import Broadcaster
from src.broadcast.updates import PriceUpdate, Update

PRICE_CACHE_TTL_SEC = 10
MCAP_CACHE_TTL_SEC = 30

_update_adapter: TypeAdapter[Update] = TypeAdapter(
    Annotated[Update, Field(discriminator="type")]
)


def price_cache_key(mint: str) -> str:
    return f"token:{mint}:price"


def mcap_cache_key(mint: str) -> str:
    return f"token:{mint}:mcap"


class RedisPublisher:
    """Fire-and-forget publisher with a single ordered sender.

    Updates go through one bounded queue drained by one task, so the price
    and mcap cache always ends on the latest update. New updates are dropped
    while ``max_pending`` are queued.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        channel_prefix: str = "openclaw:",
        max_pending: int = 1000,
    ) -> None:
        self._redis = redis
        self._prefix = channel_prefix
        self._queue: asyncio.Queue[tuple[str, BaseModel]] = asyncio.Queue(maxsize=max_pending)
        self._sender: asyncio.Task | None = None
        self._sending = False
        self.dropped = 0
        self.failed = 0

    def publish(self, topic: str, payload: BaseModel) -> int:
        try:
            self._queue.put_nowait((topic, payload))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"[BCAST] Redis backlog full, dropping update for {topic}")
            return 0
        if self._sender is None or self._sender.done():
            self._sender = asyncio.create_task(self._run(), name="redis_publisher")
        return 1

    async def _run(self) -> None:
        while True:
            topic, payload = await self._queue.get()
            self._sending = True
            try:
                await self._send(topic, payload)
            finally:
                self._sending = False
                self._queue.task_done()

    async def _send(self, topic: str, payload: BaseModel) -> None:
        try:
            await self._redis.publish(self._prefix + topic, payload.model_dump_json())
            if isinstance(payload, PriceUpdate):
                await self._redis.set(
                    price_cache_key(payload.mint),
                    str(payload.price_lamports),
                    ex=PRICE_CACHE_TTL_SEC,
                )
                await self._redis.set(
                    mcap_cache_key(payload.mint),
                    str(payload.market_cap_lamports),
                    ex=MCAP_CACHE_TTL_SEC,
                )
        except (RedisError, OSError) as e:
            self.failed += 1
            logger.warning(f"[BCAST] Redis publish to {topic} failed: {e}")

    @property
    def pending(self) -> int:
        """Updates queued or being sent."""
        return self._queue.qsize() + int(self._sending)

    async def flush(self, timeout: float = 5.0) -> None:
        """Wait for queued sends, then stop the sender (used on shutdown)."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except TimeoutError:
            logger.warning(f"[BCAST] {self.pending} Redis sends still pending at shutdown")
        if self._sender is not None:
            self._sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sender
            self._sender = None


class RedisRelay:
    """Pattern-subscribes to ``<prefix>*`` and republishes into a Broadcaster."""

    def __init__(
        self,
        redis: Redis,
        broadcaster: Broadcaster,
        *,
        channel_prefix: str = "openclaw:",
    ) -> None:
        self._redis = redis
        self._broadcaster = broadcaster
        self._prefix = channel_prefix
        self._running = False
        self.message_count = 0

    def handle_message(self, message: dict) -> int:
        """Decode one pub/sub message and fan it out. Returns deliveries."""
        if message.get("type") != "pmessage":
            return 0
        channel = message.get("channel", "")
        if isinstance(channel, bytes):
            channel = channel.decode()
        if not channel.startswith(self._prefix):
            return 0
        try:
            update = _update_adapter.validate_json(message.get("data", ""))
        except ValidationError as e:
            logger.debug(f"[BCAST] Bad relay payload on {channel}: {e}")
            return 0
        self.message_count += 1
        return self._broadcaster.publish(channel[len(self._prefix):], update)

    async def run(self) -> None:
        self._running = True
        pubsub = self._redis.pubsub()
        await pubsub.psubscribe(f"{self._prefix}*")
        logger.info(f"[BCAST] Relaying {self._prefix}* into local broadcaster")
        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message:
                    self.handle_message(message)
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()

    def stop(self) -> None:
        self._running = False
