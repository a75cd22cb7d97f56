"""
Protocol definitions for offsync.

These describe the collaborators the core depends on but does not own: a
durable key/value store and the remote service that receives mutations.
"""

from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class DurableStore(Protocol):
    """
    Asynchronous key/value persistence.

    Each call may fail independently by raising. Writes replace the whole
    value for a key; no multi-key transactions are assumed.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the stored bytes, or None if the key is absent."""
        ...

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Atomically replace the value stored under key."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Deleting an absent key is not an error."""
        ...


@runtime_checkable
class RemoteUploader(Protocol):
    """
    Remote write operations, one per mutation kind.

    Implementations must be idempotent under ``record_id``: a record may be
    delivered more than once if it was accepted remotely but not marked
    synced locally.
    """

    @abstractmethod
    async def upload_inventory(self, record_id: str, payload: Any) -> None:
        ...

    @abstractmethod
    async def upload_prediction(self, record_id: str, payload: Any) -> None:
        ...

    @abstractmethod
    async def upload_sale(self, record_id: str, payload: Any) -> None:
        ...

    @abstractmethod
    async def upload_waste(self, record_id: str, payload: Any) -> None:
        ...


__all__ = ["DurableStore", "RemoteUploader"]
