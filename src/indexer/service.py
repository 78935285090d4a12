"""IngestionService: LogSource -> EventParser -> Materializer, with a lifecycle.

Chain-context resolution for each event starts as soon as its batch
arrives, but a single applier task applies events strictly in delivery
order. At most ``max_inflight`` events wait between the two stages; beyond
that the log source is back-pressured.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Protocol

from loguru import logger

from src.indexer.errors import IngestionFatalError
from src.indexer.materializer import Materializer, PreparedEvent
from src.parsers.openclaw.event_parser import parse_transaction
from src.parsers.openclaw.models import LogBatch


class LogSource(Protocol):
    on_logs: Callable[[LogBatch], Awaitable[None]] | None

    @property
    def message_count(self) -> int: ...

    async def connect(self) -> None: ...

    async def stop(self) -> None: ...


class IngestionService:
    def __init__(
        self,
        source: LogSource,
        materializer: Materializer,
        *,
        max_inflight: int = 32,
        stats_interval: float = 60.0,
        stop_timeout: float = 30.0,
    ) -> None:
        self._source = source
        self._materializer = materializer
        self._max_inflight = max(max_inflight, 1)
        self._stats_interval = stats_interval
        self._stop_timeout = stop_timeout
        self._metrics = materializer.metrics

        self._queue: asyncio.Queue[asyncio.Task[PreparedEvent] | None] | None = None
        self._source_task: asyncio.Task | None = None
        self._applier_task: asyncio.Task | None = None
        self._stats_task: asyncio.Task | None = None
        self._done = asyncio.Event()
        self._fatal: IngestionFatalError | None = None
        self._running = False
        self._accepting = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def inflight(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        if self._running:
            raise RuntimeError("IngestionService already started")
        self._queue = asyncio.Queue(maxsize=self._max_inflight)
        self._done = asyncio.Event()
        self._fatal = None
        self._running = True
        self._accepting = True

        self._applier_task = asyncio.create_task(self._apply_loop(), name="ingest_apply")
        self._source.on_logs = self.submit
        self._source_task = asyncio.create_task(self._source.connect(), name="log_source")
        self._source_task.add_done_callback(self._on_source_done)
        if self._stats_interval > 0:
            self._stats_task = asyncio.create_task(self._stats_reporter(), name="ingest_stats")
        logger.info(f"[IDX] Ingestion started (max_inflight={self._max_inflight})")

    def _on_source_done(self, task: asyncio.Task) -> None:
        # stop() clears _running before it stops the source
        if not self._running or task.cancelled():
            return
        error = task.exception()
        if self._fatal is not None:
            return
        if error is None:
            logger.critical("[IDX] Log source ended unexpectedly, stopping")
            self._fatal = IngestionFatalError("log source ended")
        else:
            logger.opt(exception=error).critical(f"[IDX] Log source failed, stopping: {error!r}")
            self._fatal = IngestionFatalError(f"log source failed: {error!r}")
        self._accepting = False
        self._done.set()

    async def submit(self, batch: LogBatch) -> None:
        """Parse one transaction's logs and queue its events for application."""
        if not self._accepting or self._queue is None:
            logger.debug(f"[IDX] Not accepting, dropped batch {batch.signature[:16]}")
            return
        self._metrics.record_batch()
        parsed = parse_transaction(batch)
        if parsed.mismatches:
            self._metrics.record_parse_mismatch(len(parsed.mismatches))
        if not batch.success:
            self._metrics.record_outcome("failed_tx")
            return

        for event in parsed.events:
            task = asyncio.create_task(self._materializer.prepare(event))
            try:
                await self._queue.put(task)
            except asyncio.CancelledError:
                task.cancel()
                raise

    async def _apply_loop(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is None:
                return
            try:
                prepared = await item
                await self._materializer.apply(prepared)
            except IngestionFatalError as e:
                logger.critical(f"[IDX] Fatal ingestion error, stopping: {e}")
                self._fatal = e
                self._accepting = False
                self._done.set()
                return
            except Exception as e:
                logger.error(f"[IDX] Event processing failed: {e!r}")
                self._metrics.record_outcome("error")

    async def _stats_reporter(self) -> None:
        """Log ingestion stats every ``stats_interval`` seconds."""
        while True:
            await asyncio.sleep(self._stats_interval)
            parts = [
                f"LOGS messages: {self._source.message_count}",
                f"In-flight: {self.inflight}",
                self._metrics.format_stats_line(),
            ]
            logger.info(f"[STATS] {' | '.join(parts)}")

    async def run_until_stopped(self) -> None:
        """Block until ``stop()`` completes; re-raises a fatal ingestion error."""
        await self._done.wait()
        if self._fatal is not None:
            await self.stop()
            raise self._fatal

    async def stop(self) -> None:
        """Stop accepting logs, finish queued events, release the subscription."""
        if not self._running:
            return
        self._running = False
        self._accepting = False
        logger.info("[IDX] Stopping ingestion...")

        await self._source.stop()
        for task in (self._source_task, self._stats_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        applier = self._applier_task
        if applier is not None and not applier.done() and self._queue is not None:
            await self._queue.put(None)
            done, _ = await asyncio.wait({applier}, timeout=self._stop_timeout)
            if not done:
                logger.warning("[IDX] In-flight events did not finish in time, cancelling")
                applier.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await applier

        self._cancel_leftovers()
        self._source.on_logs = None
        self._done.set()
        logger.info("[IDX] Ingestion stopped")

    def _cancel_leftovers(self) -> None:
        if self._queue is None:
            return
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                item.cancel()
