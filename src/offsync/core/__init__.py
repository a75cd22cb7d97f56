"""Core types, clock and collaborator protocols for offsync."""

from offsync.core.clock import Clock, ManualClock, SystemClock
from offsync.core.protocols import DurableStore, RemoteUploader
from offsync.core.types import (
    CacheEntry,
    ErrorCategory,
    ErrorRecord,
    MutationKind,
    QueuedMutation,
)

__all__ = [
    "CacheEntry",
    "Clock",
    "DurableStore",
    "ErrorCategory",
    "ErrorRecord",
    "ManualClock",
    "MutationKind",
    "QueuedMutation",
    "RemoteUploader",
    "SystemClock",
]
