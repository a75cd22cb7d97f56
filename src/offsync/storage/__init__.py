"""
Durable store adapters.

Both implementations satisfy ``offsync.core.protocols.DurableStore``.
"""

import logging
from typing import TYPE_CHECKING

from offsync.core.protocols import DurableStore
from offsync.storage.file_store import FileStore
from offsync.storage.memory import MemoryStore

if TYPE_CHECKING:
    from offsync.core.config import Settings

logger = logging.getLogger(__name__)


def create_store(settings: "Settings") -> DurableStore:
    """Build the durable store selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        logger.info("Using in-memory store; queued data will not survive restarts")
        return MemoryStore()
    if settings.store_backend == "file":
        return FileStore(settings.data_dir)
    raise ValueError(f"Unknown store backend: {settings.store_backend}")


__all__ = ["FileStore", "MemoryStore", "create_store"]
