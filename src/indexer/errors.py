"""Ingestion error taxonomy.

Everything except ``IngestionFatalError`` is local to one event: it is
logged, counted and the stream moves on.
"""


class IndexerError(Exception):
    """Base class for ingestion errors."""


class ParseMismatch(IndexerError):
    """A log line carried a known marker but its payload did not parse."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


class UnresolvedToken(IndexerError):
    """An event could not be mapped to a known bonding curve."""


class DuplicateEvent(IndexerError):
    """Idempotency gate hit. Callers treat this as a silent no-op."""


class CurveMigrated(IndexerError):
    """Trade arrived for a curve that has already migrated."""


class ReserveUnderflow(IndexerError):
    """Applying a trade would drive a reserve below zero."""


class StoreRejected(IndexerError):
    """The store refused the event's data. Retrying cannot succeed."""


class StateStoreConflict(IndexerError):
    """Atomic apply failed for a transient storage reason. Retryable."""


class IngestionFatalError(IndexerError):
    """Storage stayed unavailable after all retries. Needs an operator."""
