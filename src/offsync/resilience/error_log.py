"""
Error audit trail.

Append-only, capacity-bounded record of failures seen by the resilience
layer. Nothing in the core reads it back; it exists for diagnostics. With a
store attached, the retained records are written under ``error_logs`` so the
history survives a restart.
"""

import json
import logging
import threading
from collections import Counter, deque
from typing import TYPE_CHECKING

from offsync.core.clock import Clock, SystemClock
from offsync.core.types import ErrorCategory, ErrorRecord

if TYPE_CHECKING:
    from offsync.core.protocols import DurableStore

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
DEFAULT_STORAGE_KEY = "error_logs"


class ErrorLog:
    """
    Bounded error history, oldest entries evicted first.

    ``record`` stays synchronous so breakers and caches can call it from
    anywhere; ``flush`` writes the retained records to the store. Store
    failures are logged and never raised.
    """

    def __init__(
        self,
        capacity: int = 50,
        clock: Clock | None = None,
        store: "DurableStore | None" = None,
        storage_key: str = DEFAULT_STORAGE_KEY,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._clock = clock if clock is not None else SystemClock()
        self._records: deque[ErrorRecord] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._total = 0
        self.store = store
        self.storage_key = storage_key
        self._loaded = store is None
        self._dirty = False

    def record(
        self,
        category: ErrorCategory,
        message: str,
        context: str,
    ) -> ErrorRecord:
        """Append a record and emit it through the module logger."""
        entry = ErrorRecord(
            timestamp=self._clock.now(),
            category=category,
            message=message,
            context=context,
        )
        with self._lock:
            self._records.append(entry)
            self._total += 1
            self._dirty = True

        if category == ErrorCategory.FATAL:
            logger.error(f"[{category.value}] {context}: {message}")
        else:
            logger.warning(f"[{category.value}] {context}: {message}")
        return entry

    def records(self) -> list[ErrorRecord]:
        """Snapshot of retained records, oldest first."""
        with self._lock:
            return list(self._records)

    def statistics(self, window: float = DAY_SECONDS) -> dict:
        """Counts by category over the last ``window`` seconds."""
        cutoff = self._clock.now() - window
        recent = [r for r in self.records() if r.timestamp >= cutoff]
        by_category = Counter(r.category.value for r in recent)
        most_common = by_category.most_common(1)
        return {
            "total_errors": len(recent),
            "errors_by_category": dict(by_category),
            "most_common": most_common[0][0] if most_common else None,
            "recorded_since_start": self._total,
        }

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._dirty = True

    async def load(self) -> bool:
        """
        Merge the persisted history in front of records made this run.

        Returns True once the store has been read (or there is no store).
        A failed read is retried by the next ``load`` or ``flush``.
        """
        if self._loaded:
            return True
        try:
            raw = await self.store.get(self.storage_key)
        except Exception as e:
            logger.warning(f"Could not load error history from {self.storage_key}: {e}")
            return False

        stored = self._decode(raw) if raw else []
        with self._lock:
            merged = stored + list(self._records)
            self._records = deque(merged[-self.capacity:], maxlen=self.capacity)
            self._loaded = True
        if stored:
            logger.debug(f"Restored {len(stored)} error records")
        return True

    async def flush(self) -> bool:
        """Write retained records to the store if anything changed. Returns success."""
        if self.store is None:
            return True
        if not await self.load():
            return False
        with self._lock:
            if not self._dirty:
                return True
            data = json.dumps([r.to_dict() for r in self._records]).encode()
            self._dirty = False
        try:
            await self.store.set(self.storage_key, data)
        except Exception as e:
            self._dirty = True
            logger.warning(f"Could not persist error history to {self.storage_key}: {e}")
            return False
        return True

    def _decode(self, raw: bytes) -> list[ErrorRecord]:
        try:
            return [
                ErrorRecord(
                    timestamp=float(item["timestamp"]),
                    category=ErrorCategory(item["category"]),
                    message=str(item["message"]),
                    context=str(item["context"]),
                )
                for item in json.loads(raw)
            ]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable error history in {self.storage_key}: {e}")
            return []

    def __len__(self) -> int:
        return len(self._records)


__all__ = ["DAY_SECONDS", "DEFAULT_STORAGE_KEY", "ErrorLog"]
