from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: int | None) -> datetime:
    if ts is None:
        return utcnow()
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)
