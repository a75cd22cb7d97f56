"""
Operation metrics for offsync.

Executor attempts and drain passes are timed under an
operation name. Each name keeps running totals plus a short window of recent
durations, which is what slow-operation recommendations are based on.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

SLOW_OPERATION_MS = 2000.0
SLOW_AVERAGE_MS = 3000.0
RECENT_WINDOW = 20


@dataclass
class OperationMetrics:
    """Running totals and recent durations for one operation name."""
    count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float | None = None
    max_duration_ms: float = 0.0
    last_called: datetime | None = None
    recent: deque = field(default_factory=lambda: deque(maxlen=RECENT_WINDOW))

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.count if self.count else 0.0

    @property
    def recent_avg_ms(self) -> float:
        return sum(self.recent) / len(self.recent) if self.recent else 0.0

    @property
    def success_rate(self) -> float:
        if not self.count:
            return 1.0
        return (self.count - self.error_count) / self.count

    def record(self, duration_ms: float, error: bool = False) -> None:
        self.count += 1
        self.error_count += int(error)
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        self.recent.append(duration_ms)
        self.last_called = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "error_count": self.error_count,
            "success_rate": round(self.success_rate, 4),
            "avg_duration_ms": round(self.avg_duration_ms, 2),
            "recent_avg_ms": round(self.recent_avg_ms, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_called": self.last_called.isoformat() if self.last_called else None,
        }


class MetricsCollector:
    """
    In-process collector shared by the executor and the sync queue.

    Thread-safe; records may arrive from worker threads.

    Args:
        max_operations: Distinct operation names kept before the least used
            ones are dropped
        slow_threshold_ms: Single durations above this are logged as slow
    """

    def __init__(
        self,
        max_operations: int = 1000,
        slow_threshold_ms: float = SLOW_OPERATION_MS,
    ):
        self.max_operations = max_operations
        self.slow_threshold_ms = slow_threshold_ms
        self._lock = threading.Lock()
        self._operations: dict[str, OperationMetrics] = {}
        self._gauges: dict[str, float] = {}
        self._started = time.monotonic()

    def _stats_for(self, operation: str) -> OperationMetrics:
        # Caller holds the lock
        stats = self._operations.get(operation)
        if stats is None:
            while len(self._operations) >= self.max_operations:
                least_used = min(self._operations, key=lambda k: self._operations[k].count)
                del self._operations[least_used]
            stats = self._operations[operation] = OperationMetrics()
        return stats

    def record_operation(self, operation: str, duration_ms: float, error: bool = False) -> None:
        with self._lock:
            self._stats_for(operation).record(duration_ms, error)

        if duration_ms > self.slow_threshold_ms:
            logger.warning(f"Slow operation detected: {operation} took {duration_ms:.0f}ms")

    def increment_counter(self, name: str, value: int = 1) -> None:
        """Count an event that has no duration (e.g. ``cache_clear``)."""
        with self._lock:
            self._stats_for(name).count += value

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def get_gauge(self, name: str) -> float | None:
        with self._lock:
            return self._gauges.get(name)

    def get_operation_metrics(self, operation: str) -> dict | None:
        with self._lock:
            stats = self._operations.get(operation)
            return stats.to_dict() if stats else None

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_seconds": round(time.monotonic() - self._started, 3),
                "operations": {name: s.to_dict() for name, s in self._operations.items()},
                "gauges": dict(self._gauges),
            }

    def get_summary(self) -> dict[str, Any]:
        """Totals across operations plus the five slowest by average."""
        with self._lock:
            total = sum(s.count for s in self._operations.values())
            errors = sum(s.error_count for s in self._operations.values())
            timed = [(name, s) for name, s in self._operations.items() if s.total_duration_ms]
            timed.sort(key=lambda item: item[1].avg_duration_ms, reverse=True)

            return {
                "total_operations": total,
                "total_errors": errors,
                "overall_success_rate": round((total - errors) / total, 4) if total else 1.0,
                "slowest_operations": [
                    {"operation": name, "avg_ms": round(s.avg_duration_ms, 2)}
                    for name, s in timed[:5]
                ],
                "gauges": dict(self._gauges),
            }

    def recommendations(self, threshold_ms: float = SLOW_AVERAGE_MS) -> list[str]:
        """Operations whose recent average exceeds ``threshold_ms``."""
        with self._lock:
            return [
                f"{name} is running slowly ({s.recent_avg_ms:.0f}ms average)"
                for name, s in self._operations.items()
                if s.recent and s.recent_avg_ms > threshold_ms
            ]

    def timer(self, operation: str) -> "AsyncTimer":
        return AsyncTimer(self, operation)

    def reset(self) -> None:
        with self._lock:
            self._operations.clear()
            self._gauges.clear()
            self._started = time.monotonic()


class AsyncTimer:
    """
    Times an ``async with`` block and records it, failed if the block raised.

    Example:
        async with metrics.timer("sync_drain"):
            await queue.drain()
    """

    def __init__(self, collector: MetricsCollector, operation: str):
        self.collector = collector
        self.operation = operation
        self.duration_ms = 0.0
        self._start = 0.0

    async def __aenter__(self) -> "AsyncTimer":
        self._start = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = (time.perf_counter() - self._start) * 1000
        self.collector.record_operation(self.operation, self.duration_ms, error=exc_type is not None)


__all__ = [
    "AsyncTimer",
    "MetricsCollector",
    "OperationMetrics",
    "SLOW_AVERAGE_MS",
    "SLOW_OPERATION_MS",
]
