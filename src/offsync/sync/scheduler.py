"""
Drain scheduling.

Couples the connectivity probe to the sync queue: a drain runs when the
device comes back online, or while online with records still pending.
"""

import asyncio
import logging
from dataclasses import dataclass

from offsync.core.clock import Clock, SystemClock
from offsync.resilience.errors import ExhaustedError
from offsync.sync.connectivity import ConnectivityProbe
from offsync.sync.queue import DrainReport, SyncQueue

logger = logging.getLogger(__name__)


@dataclass
class SchedulerTick:
    """What one scheduler tick observed and did."""
    online: bool
    drained: bool = False
    report: DrainReport | None = None


class SyncScheduler:
    """
    Periodic connectivity check with drain on reconnect.

    Example:
        scheduler = SyncScheduler(probe, queue)
        scheduler.start(interval=30.0)
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        queue: SyncQueue,
        clock: Clock | None = None,
    ):
        self.probe = probe
        self.queue = queue
        self._clock = clock if clock is not None else SystemClock()
        self._was_online: bool | None = None
        self._task: asyncio.Task | None = None
        self._running = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self) -> SchedulerTick:
        """
        Probe once and drain if warranted.

        Never raises ExhaustedError; a drain that keeps failing is logged
        and retried on a later tick.
        """
        self.ticks += 1
        online = await self.probe.is_online()
        reconnected = online and self._was_online is False
        self._was_online = online

        if not online:
            return SchedulerTick(online=False)

        if reconnected:
            logger.info("Connectivity restored, syncing offline data")
        elif not await self.queue.pending():
            return SchedulerTick(online=True)

        try:
            report = await self.queue.drain()
        except ExhaustedError as e:
            logger.error(f"Offline data sync failed: {e}")
            return SchedulerTick(online=True, drained=False)

        return SchedulerTick(online=True, drained=True, report=report)

    def start(self, interval: float = 30.0) -> None:
        """Run ``tick`` every ``interval`` seconds in a background task."""
        if self._running:
            return
        if interval <= 0:
            raise ValueError("interval must be > 0")

        self._running = True
        self._task = asyncio.create_task(self._loop(interval))
        logger.info(f"Sync scheduler started (interval={interval}s)")

    async def stop(self) -> None:
        """Stop the background task and wait for it to finish."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Sync scheduler stopped")

    async def _loop(self, interval: float) -> None:
        while self._running:
            try:
                await self.tick()
                await self._clock.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sync scheduler error: {e}", exc_info=True)
                await self._clock.sleep(interval)


__all__ = ["SchedulerTick", "SyncScheduler"]
