"""
Composition root for offsync.

``OfflineCore`` wires the cache, executor, sync queue, probe and scheduler
from Settings. Any component can be injected instead, which is how tests
run it against a memory store, a manual clock and a fake uploader.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Any

from offsync.core.cache import TTLCache
from offsync.core.clock import Clock, SystemClock
from offsync.core.config import Settings, get_settings
from offsync.core.protocols import DurableStore, RemoteUploader
from offsync.core.types import MutationKind, QueuedMutation
from offsync.observability.logging import OperationLogger
from offsync.observability.metrics import MetricsCollector
from offsync.resilience.error_log import ErrorLog
from offsync.resilience.executor import ResilientExecutor
from offsync.storage import create_store
from offsync.sync.connectivity import ConnectivityProbe
from offsync.sync.queue import DrainReport, SyncQueue
from offsync.sync.scheduler import SyncScheduler
from offsync.sync.uploader import HttpUploader

logger = logging.getLogger(__name__)


class OfflineCore:
    """
    Offline-first data access for an application.

    Example:
        async with OfflineCore() as core:
            inventory = await core.fetch("inventory", api.get_inventory)
            await core.record_mutation("sale", {"item": "milk", "qty": 2})
            if await core.is_online():
                await core.sync()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: DurableStore | None = None,
        uploader: RemoteUploader | None = None,
        probe: ConnectivityProbe | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the core.

        Args:
            settings: Configuration (defaults to ``get_settings()``)
            store: Durable store (defaults to ``create_store(settings)``)
            uploader: Remote write operations (defaults to HttpUploader)
            probe: Connectivity probe (defaults to settings.probe_targets)
            clock: Time source shared by every component
            metrics: Metrics collector shared by executor and queue
        """
        self.settings = settings if settings is not None else get_settings()
        s = self.settings

        self.session_id = uuid.uuid4().hex[:12]
        self.clock = clock if clock is not None else SystemClock()
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.store = store if store is not None else create_store(s)
        self.error_log = ErrorLog(capacity=s.error_log_capacity, clock=self.clock, store=self.store)

        self._owns_uploader = uploader is None
        if uploader is None:
            uploader = HttpUploader(
                s.sync_base_url, timeout=s.operation_timeout or 10.0, user_id=s.user_id
            )
        self.uploader = uploader

        self.executor = ResilientExecutor(
            clock=self.clock,
            error_log=self.error_log,
            metrics=self.metrics,
            default_policy=s.retry_policy(),
            network_policy=s.network_policy(),
            operation_timeout=s.operation_timeout,
            breaker_config=s.breaker_config(),
        )
        self.cache = TTLCache(
            self.store,
            clock=self.clock,
            max_entries=s.cache_max_entries,
            default_ttl=s.cache_default_ttl,
            persist_keys=s.cache_persist_keys,
            error_log=self.error_log,
        )
        self.queue = SyncQueue(
            self.store,
            self.executor,
            self.uploader,
            clock=self.clock,
            capacity=s.queue_capacity,
            batch_size=s.sync_batch_size,
            batch_pause=s.sync_batch_pause,
            upload_policy=s.upload_policy(),
            drain_policy=s.drain_policy(),
            metrics=self.metrics,
        )
        if probe is None:
            probe = ConnectivityProbe(s.probe_targets, timeout=s.probe_timeout)
        self.probe = probe
        self.scheduler = SyncScheduler(self.probe, self.queue, clock=self.clock)
        self._closed = False

    async def __aenter__(self) -> "OfflineCore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def fetch(
        self,
        key: str,
        fetcher: Callable[[], Any],
        ttl: float | None = None,
        fallback: Callable[[], Any] | None = None,
    ) -> Any | None:
        """
        Read-through fetch: cache, then network with fallback.

        A fresh value is written back to the cache. Returns None when the
        cache misses and both the fetcher and the fallback failed.
        """
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        try:
            value = await self.executor.with_fallback(fetcher, fallback, context=f"fetch_{key}")
            if value is not None:
                await self.cache.put(key, value, ttl)
        finally:
            await self.error_log.flush()
        return value

    async def record_mutation(self, kind: MutationKind | str, payload: Any) -> QueuedMutation:
        """Queue a local change for delivery on the next sync."""
        try:
            return await self.queue.enqueue(kind, payload)
        finally:
            await self.error_log.flush()

    async def sync(self) -> DrainReport:
        """
        Push pending mutations now.

        Raises:
            ExhaustedError: If the queue could not be drained at all
        """
        try:
            async with OperationLogger("sync", session_id=self.session_id) as op:
                report = await self.queue.drain()
                op.set_result(synced=report.synced, failed=report.failed)
        finally:
            await self.error_log.flush()
        return report

    async def is_online(self) -> bool:
        return await self.probe.is_online()

    def start(self, interval: float | None = None) -> None:
        """Start periodic connectivity checks with drain on reconnect."""
        self.scheduler.start(interval or self.settings.sync_interval)

    async def status(self) -> dict:
        """Snapshot of connectivity, queue, breakers, cache and errors."""
        await self.error_log.flush()
        queue_stats = await self.queue.stats()
        return {
            "session_id": self.session_id,
            "online": await self.is_online(),
            "pending": queue_stats["pending"],
            "queue": queue_stats,
            "breakers": self.executor.breakers.get_stats(),
            "cache": self.cache.stats().to_dict(),
            "errors": self.error_log.statistics(),
            "metrics": self.metrics.get_summary(),
            "recommendations": self.metrics.recommendations(),
        }

    async def close(self) -> None:
        """Stop the scheduler, persist the error history and release the HTTP client."""
        if self._closed:
            return
        self._closed = True

        if self.scheduler.running:
            await self.scheduler.stop()
        await self.error_log.flush()
        if self._owns_uploader and isinstance(self.uploader, HttpUploader):
            await self.uploader.close()
        logger.info(f"Offline core closed (session {self.session_id})")


__all__ = ["OfflineCore"]
