"""Tests for loguru setup."""

import logging

from loguru import logger

from src.utils.logger import setup_logger


def test_stdlib_records_reach_loguru(tmp_path):
    setup_logger(level="DEBUG", log_dir=str(tmp_path))
    messages: list[str] = []
    sink_id = logger.add(messages.append, format="{level}|{message}")
    try:
        logging.getLogger("websockets.client").info("connection open")
        logging.getLogger("httpx").info("HTTP Request: POST")  # below floor
        logging.getLogger("httpx").warning("retrying")
    finally:
        logger.remove()
        logging.basicConfig(handlers=[logging.NullHandler()], force=True)

    assert [m.strip() for m in messages] == ["INFO|connection open", "WARNING|retrying"]
