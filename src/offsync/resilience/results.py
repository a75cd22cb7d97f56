"""
Tagged outcomes of a single attempt.

An operation handed to the executor may return one of these directly to say
how its failure should be treated; otherwise the executor wraps its return
value in Ok and classifies raised exceptions.
"""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Retryable:
    """Transient failure; another attempt may succeed."""
    error: BaseException

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class Fatal:
    """Failure that further attempts cannot fix."""
    error: BaseException

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[Any], Retryable, Fatal]


def is_result(value: Any) -> bool:
    return isinstance(value, (Ok, Retryable, Fatal))


__all__ = ["Fatal", "Ok", "Result", "Retryable", "is_result"]
