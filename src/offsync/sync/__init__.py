"""
Offline mutation queue and its delivery path.

Modules:
- queue: Durable queue with batched, retried drain
- uploader: Per-kind dispatch and the HTTP uploader
- connectivity: Reachability probe
- scheduler: Drain on reconnect / periodic drain
"""

from offsync.sync.connectivity import DEFAULT_TARGETS, ConnectivityProbe
from offsync.sync.queue import DrainReport, SyncQueue
from offsync.sync.scheduler import SchedulerTick, SyncScheduler
from offsync.sync.uploader import (
    DEFAULT_ENDPOINTS,
    HttpUploader,
    UploadError,
    dispatch_upload,
)

__all__ = [
    "DEFAULT_ENDPOINTS",
    "DEFAULT_TARGETS",
    "ConnectivityProbe",
    "DrainReport",
    "HttpUploader",
    "SchedulerTick",
    "SyncQueue",
    "SyncScheduler",
    "UploadError",
    "dispatch_upload",
]
