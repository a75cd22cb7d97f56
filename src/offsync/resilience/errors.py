"""Failure taxonomy surfaced to callers of the resilience layer."""


class ResilienceError(Exception):
    """Base class for failures produced by the resilience layer itself."""


class ExhaustedError(ResilienceError):
    """Raised when an operation failed on every allowed attempt."""

    def __init__(self, context: str, attempts: int, last_error: BaseException | None = None):
        self.context = context
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(
            f"Operation '{context}' failed after {attempts} attempt(s){detail}"
        )


class CircuitOpenError(ResilienceError):
    """Raised when a circuit breaker rejects a call without invoking it."""

    def __init__(self, name: str, failures: int, retry_in: float):
        self.name = name
        self.failures = failures
        self.retry_in = retry_in
        super().__init__(
            f"Circuit breaker '{name}' is OPEN after {failures} failures. "
            f"Will probe again in {retry_in:.1f}s"
        )


class BothFailedError(ResilienceError):
    """Raised when both the primary and the fallback operation failed."""

    def __init__(
        self,
        context: str,
        primary_error: BaseException,
        fallback_error: BaseException,
    ):
        self.context = context
        self.primary_error = primary_error
        self.fallback_error = fallback_error
        super().__init__(
            f"All operations failed for '{context}': "
            f"primary={primary_error!r}, fallback={fallback_error!r}"
        )


class StorageFailure(ResilienceError):
    """Raised when the durable store could not complete an operation."""

    def __init__(self, operation: str, key: str, cause: BaseException | None = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"Storage {operation} failed for '{key}': {cause}")


# Outcomes that end an operation outright; retrying them immediately is pointless
TERMINAL_ERRORS = (ExhaustedError, CircuitOpenError, BothFailedError)


__all__ = [
    "TERMINAL_ERRORS",
    "BothFailedError",
    "CircuitOpenError",
    "ExhaustedError",
    "ResilienceError",
    "StorageFailure",
]
