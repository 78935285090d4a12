"""Entry point for the OpenClaw indexer."""

import asyncio
import signal
import sys

from loguru import logger

from config.settings import settings
from src.broadcast.broadcaster import Broadcaster, Publisher
from src.broadcast.redis_bridge import RedisPublisher
from src.db.database import create_engine, create_session_factory
from src.db.redis import close_redis, create_redis
from src.db.store import SqlStateStore
from src.indexer.errors import IngestionFatalError
from src.indexer.materializer import Materializer
from src.indexer.metrics import IngestionMetrics
from src.indexer.service import IngestionService
from src.parsers.openclaw.models import GlobalConfig
from src.parsers.openclaw.rpc_client import ChainContextClient
from src.parsers.openclaw.ws_client import OpenClawLogsClient
from src.utils.logger import setup_logger


async def main() -> int:
    setup_logger(json_logs=settings.json_logs, level=settings.log_level)
    logger.info(f"Starting OpenClaw indexer for program {settings.program_id}...")

    engine = create_engine(settings.database_url)
    store = SqlStateStore(create_session_factory(engine))
    resolver = ChainContextClient(
        settings.solana_rpc_url,
        timeout=settings.rpc_timeout_sec,
        max_rps=settings.rpc_max_rps,
        commitment=settings.commitment,
    )

    redis = None
    publisher: Publisher
    if settings.broadcast_backend == "redis":
        redis = create_redis(settings.redis_url)
        publisher = RedisPublisher(redis, channel_prefix=settings.redis_channel_prefix)
    else:
        publisher = Broadcaster(queue_size=settings.broadcast_queue_size)

    materializer = Materializer(
        store,
        resolver,
        publisher,
        GlobalConfig.from_settings(settings),
        program_id=settings.program_id,
        trade_token_account_index=settings.trade_token_account_index,
        # A trade needs getTransaction then getAccountInfo, each bounded by the client
        resolve_timeout=settings.rpc_timeout_sec * 2,
        retry_attempts=settings.store_retry_attempts,
        retry_base_delay=settings.store_retry_base_delay_sec,
        metrics=IngestionMetrics(),
    )
    source = OpenClawLogsClient(settings.solana_ws_url, settings.program_id, settings.commitment)
    service = IngestionService(
        source,
        materializer,
        max_inflight=settings.max_inflight_events,
        stats_interval=settings.stats_interval_sec,
    )

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    await service.start()
    ingest_task = asyncio.create_task(service.run_until_stopped())

    # Wait for either a fatal ingestion error or shutdown signal
    done, pending = await asyncio.wait(
        [ingest_task, asyncio.create_task(shutdown_event.wait())],
        return_when=asyncio.FIRST_COMPLETED,
    )

    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    exit_code = 0
    try:
        if ingest_task in done:
            await ingest_task
    except IngestionFatalError:
        exit_code = 1
    finally:
        await service.stop()
        if isinstance(publisher, RedisPublisher):
            await publisher.flush()
        await resolver.close()
        await close_redis(redis)
        await engine.dispose()

    logger.info("Shutdown complete")
    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
