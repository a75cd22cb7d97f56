"""
Resilience patterns for offsync.

Retry with backoff, circuit breaking, network fallback and graceful
degradation for fallible async operations.
"""

from offsync.resilience.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitState,
)
from offsync.resilience.error_log import ErrorLog
from offsync.resilience.errors import (
    BothFailedError,
    CircuitOpenError,
    ExhaustedError,
    ResilienceError,
    StorageFailure,
)
from offsync.resilience.executor import ResilientExecutor, RetryPolicy
from offsync.resilience.results import Fatal, Ok, Result, Retryable

__all__ = [
    "BothFailedError",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitOpenError",
    "CircuitState",
    "ErrorLog",
    "ExhaustedError",
    "Fatal",
    "Ok",
    "ResilienceError",
    "ResilientExecutor",
    "Result",
    "Retryable",
    "RetryPolicy",
    "StorageFailure",
]
