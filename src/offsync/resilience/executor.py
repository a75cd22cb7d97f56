"""
Resilient execution of fallible async operations.

One core primitive (bounded retry with exponential backoff) and three
wrappers built on it:

- with_fallback: network calls; never raises, returns None when degraded
- breaker/call: per-endpoint circuit breaking
- graceful_degrade: primary then fallback; raises only if both fail

Every attempt is classified into a tagged result (Ok, Retryable, Fatal);
exceptions only reappear at the public ``with_retry``/``graceful_degrade``
boundary, as one of ExhaustedError, CircuitOpenError or BothFailedError.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from offsync.core.clock import Clock, SystemClock
from offsync.core.types import ErrorCategory
from offsync.observability.metrics import MetricsCollector
from offsync.resilience.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from offsync.resilience.error_log import ErrorLog
from offsync.resilience.errors import TERMINAL_ERRORS, BothFailedError, ExhaustedError
from offsync.resilience.results import Fatal, Ok, Result, Retryable, is_result

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Any]

_UNSET: Any = object()


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior. Delays are in seconds."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    fatal_errors: tuple = ()  # Exceptions that must not be retried

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based)."""
        return min(
            self.base_delay * self.backoff_multiplier ** (attempt - 1),
            self.max_delay,
        )

    @classmethod
    def network(cls) -> "RetryPolicy":
        """Looser budget used for network calls with a fallback."""
        return cls(max_attempts=2, base_delay=2.0)


class ResilientExecutor:
    """
    Uniform failure handling for async operations.

    Example:
        executor = ResilientExecutor(error_log=ErrorLog())

        data = await executor.with_fallback(
            lambda: api.get_inventory(),
            fallback=lambda: cache.get("inventory"),
            context="load_inventory",
        )
    """

    def __init__(
        self,
        clock: Clock | None = None,
        error_log: ErrorLog | None = None,
        metrics: MetricsCollector | None = None,
        default_policy: RetryPolicy | None = None,
        network_policy: RetryPolicy | None = None,
        operation_timeout: float | None = 10.0,
        breaker_config: CircuitBreakerConfig | None = None,
    ):
        """
        Initialize executor.

        Args:
            clock: Time source for backoff delays and breaker timeouts
            error_log: Audit trail for failed attempts
            metrics: Optional collector for per-context attempt timings
            default_policy: Policy for with_retry when none is given
            network_policy: Policy for with_fallback
            operation_timeout: Per-attempt timeout in seconds (None disables)
            breaker_config: Defaults for breakers created by ``breaker``
        """
        self.clock = clock if clock is not None else SystemClock()
        self.error_log = error_log if error_log is not None else ErrorLog(clock=self.clock)
        self.metrics = metrics
        self.default_policy = default_policy if default_policy is not None else RetryPolicy()
        self.network_policy = network_policy if network_policy is not None else RetryPolicy.network()
        self.operation_timeout = operation_timeout
        self.breakers = CircuitBreakerRegistry(
            breaker_config, clock=self.clock, error_log=self.error_log
        )

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def attempt(
        self,
        op: Operation,
        context: str = "unknown",
        policy: RetryPolicy | None = None,
        timeout: float | None = _UNSET,
    ) -> Result:
        """
        Run ``op`` once and classify the outcome.

        Args:
            op: Zero-argument callable, sync or async
            context: Operation name for metrics
            policy: Supplies ``fatal_errors``
            timeout: Overrides ``operation_timeout``
        """
        policy = policy if policy is not None else self.default_policy
        if timeout is _UNSET:
            timeout = self.operation_timeout

        start = time.perf_counter()
        try:
            value = op()
            if inspect.isawaitable(value):
                if timeout is not None:
                    value = await asyncio.wait_for(value, timeout)
                else:
                    value = await value
            outcome: Result = value if is_result(value) else Ok(value)
        except asyncio.TimeoutError:
            outcome = Retryable(TimeoutError(f"{context} timed out after {timeout}s"))
        except TERMINAL_ERRORS as e:
            outcome = Fatal(e)
        except Exception as e:
            if policy.fatal_errors and isinstance(e, policy.fatal_errors):
                outcome = Fatal(e)
            else:
                outcome = Retryable(e)

        if self.metrics is not None:
            self.metrics.record_operation(
                context,
                (time.perf_counter() - start) * 1000,
                error=not isinstance(outcome, Ok),
            )
        return outcome

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def try_with_retry(
        self,
        op: Operation,
        policy: RetryPolicy | None = None,
        context: str = "unknown",
        timeout: float | None = _UNSET,
    ) -> Ok | Fatal:
        """
        Attempt ``op`` up to ``policy.max_attempts`` times.

        Returns:
            Ok(value) on the first success, otherwise Fatal wrapping either
            the non-retryable error or an ExhaustedError.
        """
        policy = policy if policy is not None else self.default_policy

        for attempt in range(1, policy.max_attempts + 1):
            outcome = await self.attempt(
                op, context=context, policy=policy, timeout=timeout
            )

            if isinstance(outcome, Ok):
                if attempt > 1:
                    logger.info(f"Operation succeeded on attempt {attempt} for {context}")
                return outcome

            error = outcome.error
            self.error_log.record(
                ErrorCategory.OPERATION,
                f"Attempt {attempt}/{policy.max_attempts} failed for {context}: {error}",
                context,
            )

            if isinstance(outcome, Fatal):
                if isinstance(error, TERMINAL_ERRORS):
                    return outcome
                return Fatal(ExhaustedError(context, attempt, error))

            if attempt == policy.max_attempts:
                return Fatal(ExhaustedError(context, attempt, error))

            delay = policy.delay_for(attempt)
            logger.debug(
                f"Retrying {context} in {delay:.2f}s "
                f"(attempt {attempt + 1}/{policy.max_attempts})"
            )
            await self.clock.sleep(delay)

        raise RuntimeError("Retry loop exited without a result")

    async def with_retry(
        self,
        op: Operation,
        policy: RetryPolicy | None = None,
        context: str = "unknown",
        timeout: float | None = _UNSET,
    ) -> Any:
        """
        Retry ``op`` with exponential backoff.

        Returns:
            The value of the first successful attempt

        Raises:
            ExhaustedError: All attempts failed (or a non-retryable error occurred)
            CircuitOpenError: The operation was rejected by a circuit breaker
            BothFailedError: The operation itself reported both paths failing
        """
        outcome = await self.try_with_retry(op, policy, context, timeout)
        if isinstance(outcome, Ok):
            return outcome.value
        raise outcome.error

    # ------------------------------------------------------------------
    # Network fallback
    # ------------------------------------------------------------------

    async def with_fallback(
        self,
        primary: Operation,
        fallback: Operation | None = None,
        context: str = "network_operation",
    ) -> Any | None:
        """
        Run a network operation, degrading to ``fallback`` or None.

        Never raises: "no data" is a legitimate outcome of a degraded
        network path.
        """
        outcome = await self.try_with_retry(primary, self.network_policy, context)
        if isinstance(outcome, Ok):
            return outcome.value

        self.error_log.record(
            ErrorCategory.NETWORK,
            f"Network operation failed: {context}: {outcome.error}",
            context,
        )

        if fallback is None:
            return None

        logger.info(f"Using fallback for {context}")
        result = await self.attempt(fallback, context=f"{context}.fallback")
        if isinstance(result, Ok):
            return result.value

        self.error_log.record(
            ErrorCategory.NETWORK,
            f"Fallback also failed for {context}: {result.error}",
            context,
        )
        return None

    # ------------------------------------------------------------------
    # Circuit breaking
    # ------------------------------------------------------------------

    def breaker(
        self,
        name: str,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
    ) -> CircuitBreaker:
        """
        Get or create the circuit breaker for endpoint ``name``.

        Thresholds only apply when the breaker is first created.
        """
        config = None
        if failure_threshold is not None or reset_timeout is not None:
            defaults = self.breakers.default_config
            config = CircuitBreakerConfig(
                failure_threshold=failure_threshold or defaults.failure_threshold,
                reset_timeout=reset_timeout if reset_timeout is not None else defaults.reset_timeout,
                excluded_exceptions=defaults.excluded_exceptions,
            )
        return self.breakers.get(name, config)

    async def call(self, name: str, op: Operation) -> Any:
        """Run ``op`` through the breaker for ``name``."""
        return await self.breaker(name).execute(op)

    # ------------------------------------------------------------------
    # Graceful degradation
    # ------------------------------------------------------------------

    async def graceful_degrade(
        self,
        primary: Operation,
        fallback: Operation,
        context: str,
    ) -> Any:
        """
        Run ``primary``; on failure run ``fallback``.

        No retry happens at this layer.

        Raises:
            BothFailedError: If both operations failed
        """
        first = await self.attempt(primary, context=context)
        if isinstance(first, Ok):
            return first.value

        self.error_log.record(
            ErrorCategory.OPERATION,
            f"Primary operation failed for {context}, using fallback: {first.error}",
            context,
        )

        second = await self.attempt(fallback, context=f"{context}.fallback")
        if isinstance(second, Ok):
            return second.value

        self.error_log.record(
            ErrorCategory.FATAL,
            f"Both primary and fallback failed for {context}: {second.error}",
            context,
        )
        raise BothFailedError(context, first.error, second.error)

    def get_stats(self) -> dict:
        return {
            "breakers": self.breakers.get_stats(),
            "errors": self.error_log.statistics(),
        }


__all__ = ["Operation", "ResilientExecutor", "RetryPolicy"]
