import logging
import os
import sys
from pathlib import Path

from loguru import logger

# Chatty third-party loggers routed into loguru, with their floor level
_LIBRARY_LEVELS = {
    "websockets": logging.INFO,
    "httpx": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "alembic": logging.INFO,
}


class _InterceptHandler(logging.Handler):
    """Forward stdlib ``logging`` records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logger(*, json_logs: bool = False, level: str = "INFO", log_dir: str = "logs") -> None:
    """Configure loguru for the indexer.

    Console level comes from LOG_LEVEL (falls back to ``level``). The daily
    file sink keeps DEBUG so skipped and duplicate events can be traced later.
    """
    console_level = os.getenv("LOG_LEVEL", level).upper()
    logger.remove()

    if json_logs:
        logger.add(sys.stdout, serialize=True, level=console_level)
    else:
        logger.add(
            sys.stdout,
            format=(
                "<green>{time:HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
                "<level>{message}</level>"
            ),
            level=console_level,
            colorize=True,
        )

    logger.add(
        Path(log_dir) / "indexer_{time:YYYY-MM-DD}.log",
        rotation="00:00",
        retention="7 days",
        compression="gz",
        level="DEBUG",
        serialize=json_logs,
        enqueue=True,
    )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name, floor in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(floor)
