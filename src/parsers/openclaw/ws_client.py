"""WebSocket log source for the OpenClaw program via Solana logsSubscribe.

Mirrors the other WS clients: ConnectionState enum, exponential backoff,
typed callback. A reconnect subscribes again from "now"; whatever the node
replays or we miss in between is absorbed by the materializer's
idempotency gates, so no resume point is tracked.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from enum import Enum

import websockets
from loguru import logger

from src.parsers.openclaw.models import LogBatch


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ACTIVE = "active"


class OpenClawLogsClient:
    """Subscription feed of confirmed transaction logs mentioning the program.

    ``on_logs`` is awaited for every notification, so a slow consumer slows
    the read loop instead of growing an unbounded buffer here.
    """

    def __init__(
        self,
        ws_url: str,
        program_id: str,
        commitment: str = "confirmed",
        *,
        reconnect_delay: float = 5.0,
    ) -> None:
        self._ws_url = ws_url
        self._program_id = program_id
        self._commitment = commitment
        self._ws: websockets.WebSocketClientProtocol | None = None
        self._state = ConnectionState.DISCONNECTED
        self._running = False
        self._base_reconnect_delay = reconnect_delay
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = 60.0
        self._message_count = 0
        self._subscription_id: int | None = None

        self.on_logs: Callable[[LogBatch], Awaitable[None]] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def message_count(self) -> int:
        return self._message_count

    async def connect(self) -> None:
        """Connect and listen. Auto-reconnects on disconnect until ``stop()``."""
        self._running = True
        while self._running:
            try:
                self._state = ConnectionState.CONNECTING
                async with websockets.connect(
                    self._ws_url,
                    ping_interval=30,
                    ping_timeout=10,
                    close_timeout=5,
                ) as ws:
                    self._ws = ws
                    self._state = ConnectionState.CONNECTED
                    self._reconnect_delay = self._base_reconnect_delay
                    await self._subscribe()
                    self._state = ConnectionState.ACTIVE
                    logger.info(f"[OC] WS connected, logsSubscribe active for {self._program_id[:12]}")
                    await self._listen()
            except websockets.InvalidURI:
                logger.critical(f"[OC] Invalid WS URL {self._ws_url!r}")
                raise
            except (
                websockets.WebSocketException,
                ConnectionError,
                OSError,
                TimeoutError,
            ) as e:
                logger.warning(f"[OC] WS disconnected: {e!r}")
            finally:
                self._state = ConnectionState.DISCONNECTED
                self._ws = None
                self._subscription_id = None

            if self._running:
                logger.info(f"[OC] Reconnecting in {self._reconnect_delay:.0f}s...")
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

    def subscribe_request(self) -> str:
        return json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self._program_id]},
                {"commitment": self._commitment},
            ],
        })

    async def _subscribe(self) -> None:
        if not self._ws:
            return
        await self._ws.send(self.subscribe_request())
        try:
            response = await asyncio.wait_for(self._ws.recv(), timeout=10.0)
            data = json.loads(response)
            if "result" in data:
                self._subscription_id = data["result"]
                logger.debug(f"[OC] logsSubscribe id={self._subscription_id}")
        except (asyncio.TimeoutError, json.JSONDecodeError) as e:
            logger.warning(f"[OC] Subscribe confirmation failed: {e}")

    async def _listen(self) -> None:
        if not self._ws:
            return
        async for message in self._ws:
            if not self._running:
                break
            await self.handle_message(message)

    @staticmethod
    def parse_notification(message: str | bytes) -> LogBatch | None:
        """Extract a LogBatch from a logsNotification; None for anything else.

        {"method": "logsNotification",
         "params": {"result": {"context": {"slot": N},
                               "value": {"signature": ..., "err": ..., "logs": [...]}}}}
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        params = data.get("params")
        if not params:
            return None

        result = params.get("result", {})
        value = result.get("value", {})
        signature = value.get("signature")
        if not signature:
            return None
        return LogBatch(
            signature=signature,
            success=value.get("err") is None,
            logs=value.get("logs") or [],
            slot=result.get("context", {}).get("slot"),
        )

    async def handle_message(self, message: str | bytes) -> None:
        """Dispatch one notification. Errors are logged and never end the feed."""
        self._message_count += 1
        try:
            batch = self.parse_notification(message)
            if batch is None or self.on_logs is None:
                return
            await self.on_logs(batch)
        except Exception as e:
            logger.error(f"[OC] Notification handling failed: {e!r}")

    async def stop(self) -> None:
        self._running = False
        if self._ws:
            await self._ws.close()
            self._ws = None
        self._state = ConnectionState.DISCONNECTED
