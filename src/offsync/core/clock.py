"""
Time sources for offsync.

Every component takes a clock instead of calling time.time()/asyncio.sleep()
directly, so backoff, TTL expiry and breaker timeouts can be driven by a
virtual clock in tests.
"""

import asyncio
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Wall-clock time plus an awaitable delay."""

    def now(self) -> float:
        """Current time in seconds since the epoch."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""
        ...


class SystemClock:
    """Real time."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """
    Virtual clock that only moves when told to.

    ``sleep`` advances the clock by the requested amount and yields once to
    the event loop, so code under test observes the delay without actually
    waiting. Requested delays are kept in ``sleeps`` for assertions.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        """Move the clock forward."""
        if seconds < 0:
            raise ValueError("Cannot move clock backwards")
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)


__all__ = ["Clock", "ManualClock", "SystemClock"]
