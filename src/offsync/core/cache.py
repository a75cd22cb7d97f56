"""
TTL cache for offsync.

Architecture:
- Primary: in-memory index, O(1) lookups, bounded entry count
- Persistent tier: entries whose key marks them as important business data
  (predictions, inventory, ...) are also written to the durable store and
  reloaded from it on an index miss
- Graceful degradation: a store failure leaves the cache memory-only and is
  never surfaced to the caller

Eviction when the index exceeds its bound: purge expired entries first, then
drop the oldest-stored entries. This is LRU by insertion, not by access.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from offsync.core.clock import Clock, SystemClock
from offsync.core.protocols import DurableStore
from offsync.core.types import CacheEntry, ErrorCategory
from offsync.resilience.error_log import ErrorLog

logger = logging.getLogger(__name__)

DEFAULT_PERSIST_KEYS = ("predictions", "inventory", "user_subscription", "market_data")


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    errors: int = 0
    evictions: int = 0
    expirations: int = 0
    last_hit: float | None = None
    last_miss: float | None = None

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "errors": self.errors,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": round(self.hit_rate, 4),
            "last_hit": self.last_hit,
            "last_miss": self.last_miss,
        }


class TTLCache:
    """
    Time-bounded cache over a durable store.

    Safe for concurrent callers: operations on the same key are serialized
    by a per-key lock, different keys proceed independently.

    Example:
        cache = TTLCache(store, max_entries=50)
        await cache.put("predictions_7d", predictions, ttl=600)
        cached = await cache.get("predictions_7d")
    """

    def __init__(
        self,
        store: DurableStore,
        clock: Clock | None = None,
        max_entries: int = 50,
        default_ttl: float = 300.0,
        persist_keys: Sequence[str] = DEFAULT_PERSIST_KEYS,
        key_prefix: str = "cache_",
        error_log: ErrorLog | None = None,
    ):
        """
        Initialize TTL cache.

        Args:
            store: Durable store for the persistent tier
            clock: Time source for expiry
            max_entries: Maximum entries held in memory
            default_ttl: TTL in seconds when ``put`` is given none
            persist_keys: Key substrings that mark an entry as persist-worthy
            key_prefix: Prefix for store keys
            error_log: Audit trail for storage failures
        """
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be > 0")

        self._store = store
        self._clock = clock if clock is not None else SystemClock()
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.persist_keys = tuple(persist_keys)
        self.key_prefix = key_prefix
        self._error_log = error_log

        # Insertion-ordered; overwrites re-insert at the end
        self._index: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per key; a lock is dropped once nobody uses it
        self._lock_users: dict[str, int] = {}
        self._stats = CacheStats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_persistent(self, key: str) -> bool:
        """Whether entries for ``key`` are also written to the store."""
        return any(marker in key for marker in self.persist_keys)

    async def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store ``value`` under ``key`` for ``ttl`` seconds.

        Never raises; persistence failures degrade to memory-only.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            logger.warning(f"Ignoring cache write for '{key}' with non-positive ttl {ttl}")
            return

        entry = CacheEntry.create(value, self._clock.now(), ttl)

        async with self._locked(key):
            self._index.pop(key, None)
            self._index[key] = entry
            self._stats.sets += 1
            self._enforce_capacity()

            if self.is_persistent(key):
                await self._persist(key, entry)

    async def get(self, key: str) -> Any | None:
        """
        Get a fresh value for ``key``.

        Returns:
            Cached value, or None if absent or expired
        """
        async with self._locked(key):
            entry = self._index.get(key)

            if entry is None and self.is_persistent(key):
                entry = await self._load(key)
                now = self._clock.now()
                if entry is not None and entry.is_valid(now):
                    # Reloaded entries count as newest for eviction
                    entry = entry.model_copy(update={"stored_at": now})
                    self._index[key] = entry
                    self._enforce_capacity()

            if entry is None:
                self._record_miss()
                return None

            if not entry.is_valid(self._clock.now()):
                self._index.pop(key, None)
                self._stats.expirations += 1
                if self.is_persistent(key):
                    await self._remove_persisted(key)
                self._record_miss()
                return None

            self._stats.hits += 1
            self._stats.last_hit = self._clock.now()
            return entry.value

    async def invalidate(self, key: str) -> None:
        """Remove ``key`` from memory and from the store."""
        async with self._locked(key):
            self._index.pop(key, None)
            if self.is_persistent(key):
                await self._remove_persisted(key)

    async def clear(self) -> None:
        """Clear the in-memory index. Persisted entries are kept."""
        self._index.clear()

    def purge_expired(self) -> int:
        """Drop expired entries from memory. Returns how many were removed."""
        now = self._clock.now()
        expired = [k for k, e in self._index.items() if not e.is_valid(now)]
        for key in expired:
            del self._index[key]
        self._stats.expirations += len(expired)
        return len(expired)

    def stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats

    def keys(self) -> list[str]:
        """Keys currently indexed (valid or not yet purged)."""
        return list(self._index)

    def __contains__(self, key: str) -> bool:
        entry = self._index.get(key)
        return entry is not None and entry.is_valid(self._clock.now())

    def __len__(self) -> int:
        return len(self._index)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[key] - 1
            if remaining:
                self._lock_users[key] = remaining
            else:
                del self._lock_users[key]
                del self._locks[key]

    def _record_miss(self) -> None:
        self._stats.misses += 1
        self._stats.last_miss = self._clock.now()

    def _enforce_capacity(self) -> None:
        if len(self._index) <= self.max_entries:
            return

        removed = self.purge_expired()

        overflow = len(self._index) - self.max_entries
        if overflow > 0:
            # sorted() is stable, so equal stored_at falls back to insertion order
            oldest = sorted(self._index.items(), key=lambda kv: kv[1].stored_at)[:overflow]
            for key, _ in oldest:
                del self._index[key]
            self._stats.evictions += overflow
            removed += overflow

        logger.debug(f"Cleaned up {removed} cache entries")

    def _store_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _storage_error(self, action: str, key: str, exc: Exception) -> None:
        self._stats.errors += 1
        message = f"Cache {action} failed for '{key}': {exc}"
        if self._error_log is not None:
            self._error_log.record(ErrorCategory.STORAGE, message, f"cache_{action}")
        else:
            logger.warning(message)

    async def _persist(self, key: str, entry: CacheEntry) -> None:
        try:
            await self._store.set(self._store_key(key), entry.model_dump_json().encode("utf-8"))
        except Exception as e:
            self._storage_error("persist", key, e)

    async def _load(self, key: str) -> CacheEntry | None:
        try:
            raw = await self._store.get(self._store_key(key))
            if raw is None:
                return None
            return CacheEntry.model_validate_json(raw)
        except Exception as e:
            self._storage_error("load", key, e)
            return None

    async def _remove_persisted(self, key: str) -> None:
        try:
            await self._store.delete(self._store_key(key))
        except Exception as e:
            self._storage_error("delete", key, e)


__all__ = ["CacheStats", "DEFAULT_PERSIST_KEYS", "TTLCache"]
