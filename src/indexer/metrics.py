"""Ingestion metrics: per-outcome counters and apply latency.

Thread-safe counters that accumulate during runtime and are read by the
stats reporter.
"""

import time
from collections import Counter
from threading import Lock


class IngestionMetrics:
    """Accumulator for the ingestion pipeline.

    Ingestion is single-threaded async, but the stats reporter and tests
    read concurrently, so every access goes through one lock.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._outcomes: Counter[str] = Counter()
        self._batches: int = 0
        self._parse_mismatches: int = 0
        self._store_retries: int = 0
        self._total_apply_ms: float = 0.0
        self._max_apply_ms: float = 0.0
        self._applied_events: int = 0
        self._start_time: float = time.monotonic()

    def record_batch(self) -> None:
        with self._lock:
            self._batches += 1

    def record_parse_mismatch(self, count: int = 1) -> None:
        with self._lock:
            self._parse_mismatches += count

    def record_outcome(self, outcome: str) -> None:
        with self._lock:
            self._outcomes[outcome] += 1

    def record_store_retry(self) -> None:
        with self._lock:
            self._store_retries += 1

    def record_apply_latency(self, latency_ms: float) -> None:
        with self._lock:
            self._applied_events += 1
            self._total_apply_ms += latency_ms
            if latency_ms > self._max_apply_ms:
                self._max_apply_ms = latency_ms

    def outcome_count(self, outcome: str) -> int:
        with self._lock:
            return self._outcomes[outcome]

    def get_summary(self) -> dict:
        """Return a snapshot of all metrics."""
        with self._lock:
            uptime = time.monotonic() - self._start_time
            avg = self._total_apply_ms / self._applied_events if self._applied_events else 0.0
            return {
                "uptime_sec": round(uptime),
                "batches": self._batches,
                "batches_per_min": round(self._batches / max(uptime / 60, 1), 1),
                "parse_mismatches": self._parse_mismatches,
                "store_retries": self._store_retries,
                "avg_apply_ms": round(avg),
                "max_apply_ms": round(self._max_apply_ms),
                "outcomes": dict(self._outcomes),
            }

    def format_stats_line(self) -> str:
        """One-line summary for the stats reporter."""
        with self._lock:
            uptime = time.monotonic() - self._start_time
            rate = self._batches / max(uptime / 60, 1)
            avg = self._total_apply_ms / self._applied_events if self._applied_events else 0.0
            outcomes = " ".join(f"{k}={v}" for k, v in sorted(self._outcomes.items()))
            return (
                f"batches={self._batches} "
                f"rate={rate:.1f}/min "
                f"avg_apply={avg:.0f}ms "
                f"mismatches={self._parse_mismatches} "
                f"retries={self._store_retries}"
                + (f" {outcomes}" if outcomes else "")
            )
