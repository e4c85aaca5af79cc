"""In-memory performance telemetry for provider invocations."""

from __future__ import annotations

import threading
from collections import defaultdict

import structlog

from hybrid_search.models import ErrorSummary, InvocationRecord, PerformanceStats

logger = structlog.get_logger(__name__)

RECENT_ERRORS = 5


class PerformanceMonitor:
    """Append-only log of :class:`InvocationRecord` entries.

    Appends are serialised with a lock so concurrent requests (or threads)
    can record safely; :meth:`stats` works on a snapshot and may be slightly
    stale.  The log is kept for the process lifetime.
    """

    def __init__(self) -> None:
        self._records: list[InvocationRecord] = []
        self._lock = threading.Lock()

    def record(self, invocation: InvocationRecord) -> None:
        with self._lock:
            self._records.append(invocation)
        logger.debug(
            "monitor.recorded",
            provider=invocation.provider_id,
            success=invocation.success,
            duration_ms=round(invocation.duration_ms, 1),
        )

    def records(self) -> list[InvocationRecord]:
        """Return a snapshot copy of the record log."""
        with self._lock:
            return list(self._records)

    def stats(self, recent: int = RECENT_ERRORS) -> PerformanceStats:
        """Compute aggregate statistics over every record so far.

        Args:
            recent: How many of the latest errors to surface.

        Returns:
            :class:`PerformanceStats` with success rate, per-provider usage
            and mean latency, and the most recent errors verbatim.
        """
        snapshot = self.records()
        total = len(snapshot)
        successes = sum(1 for r in snapshot if r.success)

        usage: dict[str, int] = defaultdict(int)
        durations: dict[str, float] = defaultdict(float)
        for r in snapshot:
            usage[r.provider_id] += 1
            durations[r.provider_id] += r.duration_ms

        errors = [
            ErrorSummary(provider=r.provider_id, error=r.error or "unknown error", timestamp=r.started_at)
            for r in snapshot
            if not r.success
        ]

        return PerformanceStats(
            total_queries=total,
            successful_queries=successes,
            failed_queries=total - successes,
            success_rate=successes / total if total else 0.0,
            provider_usage=dict(usage),
            avg_latency_ms={pid: durations[pid] / count for pid, count in usage.items()},
            recent_errors=errors[-recent:] if recent > 0 else [],
        )
