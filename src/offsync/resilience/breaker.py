"""
Circuit breaker for remote endpoints.

States:
- CLOSED: calls pass through, consecutive failures are counted
- OPEN: calls are rejected without invoking the operation
- HALF_OPEN: a single probe call is let through to test recovery

OPEN moves to HALF_OPEN lazily: the first call made after ``reset_timeout``
has elapsed performs the transition and is itself the probe. No background
timer or health check is involved.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any

from offsync.core.clock import Clock, SystemClock
from offsync.core.types import ErrorCategory
from offsync.resilience.error_log import ErrorLog
from offsync.resilience.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds for one breaker. ``excluded_exceptions`` never count as failures."""
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    excluded_exceptions: tuple = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


@dataclass
class CircuitBreakerState:
    """Mutable part of a breaker; only touched under the breaker lock."""
    status: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    probe_in_flight: bool = field(default=False, repr=False)

    def open(self, now: float) -> None:
        self.status = CircuitState.OPEN
        self.opened_at = now

    def close(self) -> None:
        self.status = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = None


class CircuitBreaker:
    """
    Circuit breaker guarding one named endpoint.

    Example:
        cb = CircuitBreaker("predictions_api", CircuitBreakerConfig(failure_threshold=5))

        @cb.protect
        async def fetch_predictions():
            return await client.get("/predictions")
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
        error_log: ErrorLog | None = None,
    ):
        """
        Args:
            name: Endpoint identifier, e.g. "inventory_api"
            config: Thresholds; defaults to 5 failures and 60 s
            clock: Time source for opened_at and the reset timeout
            error_log: Receives a network record per counted failure
        """
        self.name = name
        self.config = config if config is not None else CircuitBreakerConfig()
        self._clock = clock if clock is not None else SystemClock()
        self._error_log = error_log
        self._state = CircuitBreakerState()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state.status

    @property
    def is_open(self) -> bool:
        return self._state.status == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._state.consecutive_failures

    @property
    def opened_at(self) -> float | None:
        return self._state.opened_at

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state.status
        if new_state == CircuitState.OPEN:
            self._state.open(self._clock.now())
        elif new_state == CircuitState.CLOSED:
            self._state.close()
        else:
            self._state.status = new_state

        if old_state != new_state:
            logger.warning(f"Breaker {self.name}: {old_state.value} -> {new_state.value}")

    def _retry_in(self) -> float:
        opened_at = self._state.opened_at or self._clock.now()
        return max(0.0, self.config.reset_timeout - (self._clock.now() - opened_at))

    async def _admit(self) -> bool:
        """
        Decide whether a call may proceed.

        Returns True when the admitted call is the half-open probe.

        Raises:
            CircuitOpenError: If the call is rejected
        """
        async with self._lock:
            if self._state.status == CircuitState.OPEN:
                elapsed = self._clock.now() - (self._state.opened_at or 0.0)
                if elapsed > self.config.reset_timeout:
                    self._transition_to(CircuitState.HALF_OPEN)
                    self._state.consecutive_failures = 0

            if self._state.status == CircuitState.OPEN:
                raise CircuitOpenError(
                    self.name, self._state.consecutive_failures, self._retry_in()
                )

            if self._state.status == CircuitState.HALF_OPEN:
                if self._state.probe_in_flight:
                    raise CircuitOpenError(
                        self.name, self._state.consecutive_failures, 0.0
                    )
                self._state.probe_in_flight = True
                return True

            return False

    async def _handle_success(self, probe: bool) -> None:
        async with self._lock:
            if probe:
                self._state.probe_in_flight = False
            if self._state.status == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
                logger.info(f"Breaker {self.name} closed after successful probe")
            else:
                self._state.consecutive_failures = 0

    async def _handle_failure(self, exc: BaseException, probe: bool) -> None:
        async with self._lock:
            if probe:
                self._state.probe_in_flight = False

            if isinstance(exc, self.config.excluded_exceptions):
                return

            self._state.consecutive_failures += 1

            if self._state.status == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                logger.warning(f"Breaker {self.name} probe failed: {exc}")
            elif (
                self._state.status == CircuitState.CLOSED
                and self._state.consecutive_failures >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)
                logger.error(
                    f"Breaker {self.name} open after "
                    f"{self._state.consecutive_failures} consecutive failures: {exc}"
                )

        if self._error_log is not None:
            self._error_log.record(
                ErrorCategory.NETWORK,
                f"Circuit breaker failure for {self.name}: {exc}",
                f"circuit_breaker_{self.name}",
            )

    async def execute(
        self,
        func: Callable[..., Any],
        *args,
        **kwargs,
    ) -> Any:
        """
        Run ``func`` (sync or async) if the breaker admits the call.

        Failures from ``func`` are counted and re-raised unchanged.

        Raises:
            CircuitOpenError: If the breaker is open, or a probe is already running
        """
        probe = await self._admit()

        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            if probe:
                async with self._lock:
                    self._state.probe_in_flight = False
            raise
        except Exception as e:
            await self._handle_failure(e, probe)
            raise

        await self._handle_success(probe)
        return result

    def protect(self, func: Callable[..., Any]) -> Callable[..., Any]:
        """Decorator form of :meth:`execute`; the wrapped function becomes async."""
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await self.execute(func, *args, **kwargs)
        return wrapper

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.status.value,
            "consecutive_failures": self._state.consecutive_failures,
            "opened_at": self._state.opened_at,
            "failure_threshold": self.config.failure_threshold,
            "reset_timeout": self.config.reset_timeout,
        }

    async def reset(self) -> None:
        """Force CLOSED and clear the failure count."""
        async with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._state.probe_in_flight = False
            logger.info(f"Breaker {self.name} reset")


class CircuitBreakerRegistry:
    """
    Breakers keyed by endpoint name.

    Breakers are created on first use and live as long as the registry.
    Each breaker has its own lock, so endpoints never contend with each other.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Clock | None = None,
        error_log: ErrorLog | None = None,
    ):
        self.default_config = default_config if default_config is not None else CircuitBreakerConfig()
        self._clock = clock if clock is not None else SystemClock()
        self._error_log = error_log
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Breaker for ``name``, created with ``config`` (or the default) on first use."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config if config is not None else self.default_config,
                clock=self._clock,
                error_log=self._error_log,
            )
            self._breakers[name] = breaker
        return breaker

    def all(self) -> dict[str, CircuitBreaker]:
        return dict(self._breakers)

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {name: cb.get_stats() for name, cb in self._breakers.items()}

    async def reset_all(self) -> None:
        for cb in self._breakers.values():
            await cb.reset()

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitState",
]
