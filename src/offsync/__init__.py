"""
offsync: offline resilience and synchronization core.

Keeps an application working against an unreliable network: a TTL cache
persisted for important keys, retry and circuit breaking around remote
calls, and a durable mutation queue replayed once connectivity returns.
"""

__version__ = "0.1.0"

from offsync.core.cache import CacheStats, TTLCache
from offsync.core.clock import Clock, ManualClock, SystemClock
from offsync.core.config import Settings, get_settings, reset_settings
from offsync.core.types import CacheEntry, ErrorCategory, MutationKind, QueuedMutation
from offsync.resilience import (
    BothFailedError,
    CircuitOpenError,
    ExhaustedError,
    ResilientExecutor,
    RetryPolicy,
)
from offsync.service import OfflineCore
from offsync.sync import ConnectivityProbe, DrainReport, HttpUploader, SyncQueue, SyncScheduler

__all__ = [
    "__version__",
    "BothFailedError",
    "CacheEntry",
    "CacheStats",
    "CircuitOpenError",
    "Clock",
    "ConnectivityProbe",
    "DrainReport",
    "ErrorCategory",
    "ExhaustedError",
    "HttpUploader",
    "ManualClock",
    "MutationKind",
    "OfflineCore",
    "QueuedMutation",
    "ResilientExecutor",
    "RetryPolicy",
    "Settings",
    "SyncQueue",
    "SyncScheduler",
    "SystemClock",
    "TTLCache",
    "get_settings",
    "reset_settings",
]
