"""
Durable queue of local mutations awaiting delivery.

Records live as a single JSON array under one store key, mirrored in
memory. The mirror is loaded lazily and written through on every change;
when the store is unavailable the mirror keeps working and the next
successful write persists everything. Records enqueued before the first
successful load are merged into the stored list once it can be read.

Every write and every drain pass re-reads the stored list first and folds in
records another writer added, so a second queue on the same store is never
overwritten.

Delivery is at-least-once: a record can be accepted remotely and still be
pending locally if the process dies before the synced flag is persisted.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any

from pydantic import TypeAdapter, ValidationError

from offsync.core.clock import Clock, SystemClock
from offsync.core.protocols import DurableStore, RemoteUploader
from offsync.core.types import ErrorCategory, MutationKind, QueuedMutation, new_mutation_id
from offsync.observability.metrics import MetricsCollector
from offsync.resilience.errors import StorageFailure
from offsync.resilience.executor import ResilientExecutor, RetryPolicy
from offsync.resilience.results import Ok
from offsync.sync.uploader import dispatch_upload

logger = logging.getLogger(__name__)

_RECORDS = TypeAdapter(list[QueuedMutation])


@dataclass
class DrainReport:
    """Outcome of one drain pass."""
    attempted: int = 0
    synced: int = 0
    failed: int = 0
    batches: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "synced": self.synced,
            "failed": self.failed,
            "batches": self.batches,
            "failed_ids": list(self.failed_ids),
        }


class SyncQueue:
    """
    Offline mutation queue with batched, retried replay.

    Usage:
        queue = SyncQueue(store, executor, uploader)
        await queue.enqueue(MutationKind.SALE, {"item": "milk", "qty": 2})

        # later, when connectivity returns
        report = await queue.drain()
    """

    def __init__(
        self,
        store: DurableStore,
        executor: ResilientExecutor,
        uploader: RemoteUploader,
        clock: Clock | None = None,
        capacity: int = 100,
        batch_size: int = 5,
        batch_pause: float = 0.2,
        upload_policy: RetryPolicy | None = None,
        drain_policy: RetryPolicy | None = None,
        storage_key: str = "offline_data",
        id_factory: Callable[[], str] = new_mutation_id,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize sync queue.

        Args:
            store: Durable store holding the record list
            executor: Executor used for upload and drain retries
            uploader: Remote write operations
            clock: Time source for timestamps and batch pauses
            capacity: Maximum retained records; oldest are dropped beyond it
            batch_size: Uploads issued concurrently per batch
            batch_pause: Seconds to wait between batches
            upload_policy: Retry policy per record upload
            drain_policy: Retry policy for a whole drain pass
            storage_key: Store key for the record list
            id_factory: Generates unique record ids
            metrics: Optional collector for drain timings and pending gauge
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")

        self._store = store
        self._executor = executor
        self._uploader = uploader
        self._clock = clock if clock is not None else executor.clock
        self.capacity = capacity
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        if upload_policy is None:
            upload_policy = RetryPolicy(max_attempts=2, base_delay=1.0)
        if drain_policy is None:
            drain_policy = RetryPolicy(max_attempts=3, base_delay=2.0)
        self.upload_policy = upload_policy
        self.drain_policy = drain_policy
        self.storage_key = storage_key
        self._id_factory = id_factory
        self._metrics = metrics

        self._records: list[QueuedMutation] = []
        self._loaded = False
        self._dirty = False
        # Ids present in the store at our last read or write
        self._known_ids: set[str] = set()
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._dropped = 0

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _decode(self, raw: bytes) -> list[QueuedMutation]:
        try:
            return _RECORDS.validate_json(raw)
        except (ValidationError, json.JSONDecodeError, ValueError) as e:
            # Unreadable list: start over rather than block the queue forever
            logger.warning(f"Invalid offline data structure, resetting: {e}")
            self._storage_error("decode", e)
            return []

    async def _ensure_loaded(self) -> None:
        """
        Load the stored list into the mirror, once.

        Must be called with ``self._lock`` held.

        Raises:
            StorageFailure: If the store cannot be read
        """
        if self._loaded:
            return
        try:
            raw = await self._store.get(self.storage_key)
        except Exception as e:
            raise StorageFailure("get", self.storage_key, e) from e

        stored = self._decode(raw) if raw else []
        known = {r.id for r in stored}
        early = [r for r in self._records if r.id not in known]
        self._records = sorted(stored + early, key=lambda r: r.created_at)
        self._known_ids = known
        self._loaded = True
        if early:
            self._dirty = True
            logger.info(f"Merged {len(early)} records queued while the store was unavailable")
        self._apply_retention()

    def _merge(self, stored: list[QueuedMutation]) -> int:
        """
        Fold ``stored`` into the mirror. Returns how many records were taken over.

        Unknown ids are records another writer added. A record synced in
        either copy stays synced. Ids seen before and since dropped here
        (compaction, retention) stay gone.
        """
        index = {r.id: i for i, r in enumerate(self._records)}
        added = []
        for record in stored:
            i = index.get(record.id)
            if i is None:
                if record.id not in self._known_ids:
                    added.append(record)
            elif record.synced and not self._records[i].synced:
                self._records[i] = record

        if added:
            self._records = sorted(self._records + added, key=lambda r: r.created_at)
            logger.info(f"Picked up {len(added)} records written by another queue")
        self._known_ids.update(r.id for r in stored)
        return len(added)

    async def _refresh(self) -> None:
        """
        Re-read the stored list and merge it into the mirror.

        Must be called with ``self._lock`` held, after a successful load.

        Raises:
            StorageFailure: If the store cannot be read
        """
        try:
            raw = await self._store.get(self.storage_key)
        except Exception as e:
            raise StorageFailure("get", self.storage_key, e) from e

        before = len(self._records)
        added = self._merge(self._decode(raw) if raw else [])
        self._apply_retention()
        if before + added != len(self._records):
            self._dirty = True

    async def _persist(self) -> bool:
        """
        Write the mirror to the store. Failures are absorbed.

        Must be called with ``self._lock`` held.
        """
        if not self._loaded:
            # Writing now would clobber records we have not read yet
            self._dirty = True
            return False
        try:
            await self._refresh()
        except StorageFailure as e:
            self._dirty = True
            self._storage_error("get", e.cause or e)
            return False
        try:
            data = _RECORDS.dump_json(self._records)
            await self._store.set(self.storage_key, data)
        except Exception as e:
            self._dirty = True
            self._storage_error("set", e)
            return False
        self._dirty = False
        self._known_ids = {r.id for r in self._records}
        self._update_gauge()
        return True

    def _apply_retention(self) -> None:
        overflow = len(self._records) - self.capacity
        if overflow > 0:
            dropped = self._records[:overflow]
            del self._records[:overflow]
            self._dropped += overflow
            unsynced = sum(1 for r in dropped if not r.synced)
            logger.warning(
                f"Sync queue over capacity: dropped {overflow} oldest records "
                f"({unsynced} undelivered)"
            )

    def _storage_error(self, action: str, exc: BaseException) -> None:
        self._executor.error_log.record(
            ErrorCategory.STORAGE,
            f"Sync queue {action} failed for '{self.storage_key}': {exc}",
            f"sync_queue_{action}",
        )

    def _update_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge(
                "sync.pending", sum(1 for r in self._records if not r.synced)
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, kind: MutationKind | str, payload: Any) -> QueuedMutation:
        """
        Record a local mutation for later delivery.

        Storage failures are absorbed; the record is kept in memory and
        persisted by the next successful write.

        Raises:
            ValueError: If ``kind`` is not a known mutation kind
        """
        record = QueuedMutation(
            id=self._id_factory(),
            kind=MutationKind(kind),
            payload=payload,
            created_at=self._clock.now(),
        )

        async with self._lock:
            try:
                await self._ensure_loaded()
            except StorageFailure as e:
                self._storage_error("load", e.cause or e)

            self._records.append(record)
            self._apply_retention()
            await self._persist()

        logger.info(f"Saved {record.kind.value} data offline ({record.id})")
        return record

    async def records(self) -> list[QueuedMutation]:
        """All retained records, oldest first. Returns the mirror if the store is unreadable."""
        async with self._lock:
            try:
                await self._ensure_loaded()
            except StorageFailure as e:
                self._storage_error("load", e.cause or e)
            return list(self._records)

    async def pending(self) -> list[QueuedMutation]:
        """Records not yet synced, oldest first."""
        return [r for r in await self.records() if not r.synced]

    async def compact(self) -> int:
        """Drop synced records. Returns how many were removed."""
        async with self._lock:
            try:
                await self._ensure_loaded()
            except StorageFailure as e:
                self._storage_error("load", e.cause or e)
                return 0
            before = len(self._records)
            self._records = [r for r in self._records if not r.synced]
            removed = before - len(self._records)
            if removed:
                await self._persist()
            return removed

    async def stats(self) -> dict:
        records = await self.records()
        synced = sum(1 for r in records if r.synced)
        return {
            "total": len(records),
            "synced": synced,
            "pending": len(records) - synced,
            "capacity": self.capacity,
            "dropped": self._dropped,
            "loaded": self._loaded,
            "dirty": self._dirty,
        }

    async def drain(self) -> DrainReport:
        """
        Push every unsynced record to the remote service.

        The pass as a whole is retried with ``drain_policy`` when it cannot
        run (e.g. the store is unreadable). Individual upload failures do not
        fail the pass; those records stay pending for the next drain.

        Raises:
            ExhaustedError: If every pass attempt failed
        """
        timer = self._metrics.timer("sync_drain") if self._metrics else nullcontext()
        async with self._drain_lock, timer:
            # Uploads carry their own timeouts; the pass as a whole is unbounded
            return await self._executor.with_retry(
                self._drain_pass, self.drain_policy, context="sync_drain", timeout=None
            )

    # ------------------------------------------------------------------
    # Drain internals
    # ------------------------------------------------------------------

    async def _drain_pass(self) -> DrainReport:
        async with self._lock:
            was_loaded = self._loaded
            await self._ensure_loaded()
            if was_loaded:
                await self._refresh()
            if self._dirty:
                await self._persist()
            unsynced = [r for r in self._records if not r.synced]

        report = DrainReport()
        if not unsynced:
            logger.debug("No data to sync")
            return report

        logger.info(f"Syncing {len(unsynced)} offline items...")

        for start in range(0, len(unsynced), self.batch_size):
            batch = unsynced[start:start + self.batch_size]
            report.batches += 1
            report.attempted += len(batch)

            outcomes = await asyncio.gather(*(self._upload(r) for r in batch))

            succeeded = {r.id for r, ok in zip(batch, outcomes) if ok}
            for record, ok in zip(batch, outcomes):
                if not ok:
                    report.failed_ids.append(record.id)
            report.synced += len(succeeded)
            report.failed += len(batch) - len(succeeded)

            if succeeded:
                await self._mark_synced(succeeded)

            if start + self.batch_size < len(unsynced):
                await self._clock.sleep(self.batch_pause)

        logger.info(
            f"Offline data sync completed: {report.synced} synced, {report.failed} pending"
        )
        return report

    async def _upload(self, record: QueuedMutation) -> bool:
        outcome = await self._executor.try_with_retry(
            lambda: dispatch_upload(self._uploader, record),
            self.upload_policy,
            context=f"upload_{record.kind.value}",
        )
        if isinstance(outcome, Ok):
            return True
        logger.error(f"Failed to sync item {record.id}: {outcome.error}")
        return False

    async def _mark_synced(self, ids: set[str]) -> None:
        now = self._clock.now()
        async with self._lock:
            self._records = [
                r.mark_synced(now) if r.id in ids else r for r in self._records
            ]
            await self._persist()


__all__ = ["DrainReport", "SyncQueue"]
