from datetime import datetime

from src.utils.clock import from_unix, utcnow


def test_from_unix_is_naive_utc():
    assert from_unix(0) == datetime(1970, 1, 1)
    assert from_unix(1_767_268_800) == datetime(2026, 1, 1, 12, 0, 0)


def test_missing_block_time_falls_back_to_now():
    before = utcnow()
    ts = from_unix(None)
    assert ts.tzinfo is None
    assert before <= ts <= utcnow()
