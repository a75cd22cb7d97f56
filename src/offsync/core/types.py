"""
Core data types for offsync.

- CacheEntry: a value with its storage and expiry timestamps
- QueuedMutation: a locally made change waiting to reach the remote service
- ErrorRecord: one entry of the diagnostic audit trail
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


# Enums

class MutationKind(str, Enum):
    """Kinds of mutation the remote service accepts."""
    INVENTORY = "inventory"
    PREDICTION = "prediction"
    SALE = "sale"
    WASTE = "waste"


class ErrorCategory(str, Enum):
    """Audit trail categories."""
    NETWORK = "network"
    STORAGE = "storage"
    OPERATION = "operation"
    FATAL = "fatal"


# Cache

class CacheEntry(BaseModel):
    """A cached value. Valid while ``now < expires_at``."""
    model_config = ConfigDict(frozen=True)

    value: Any
    stored_at: float
    expires_at: float

    @classmethod
    def create(cls, value: Any, now: float, ttl: float) -> "CacheEntry":
        return cls(value=value, stored_at=now, expires_at=now + ttl)

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


# Sync queue

def new_mutation_id() -> str:
    """Random unique record id."""
    return uuid4().hex


class QueuedMutation(BaseModel):
    """
    A pending (or delivered) local mutation.

    Lifecycle: Pending -> Synced (terminal), Pending -> Pending on a failed
    upload, Pending -> dropped by queue retention. Synced records are
    immutable; ``mark_synced`` returns a new instance.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_mutation_id, min_length=1)
    kind: MutationKind
    payload: Any = None
    created_at: float
    synced: bool = False
    synced_at: float | None = None

    @model_validator(mode="after")
    def _synced_has_timestamp(self) -> "QueuedMutation":
        if self.synced and self.synced_at is None:
            raise ValueError("synced record requires synced_at")
        return self

    def mark_synced(self, now: float) -> "QueuedMutation":
        if self.synced:
            return self
        return self.model_copy(update={"synced": True, "synced_at": now})


# Diagnostics

@dataclass(frozen=True)
class ErrorRecord:
    """One entry of the error audit trail."""
    timestamp: float
    category: ErrorCategory
    message: str
    context: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data


__all__ = [
    "CacheEntry",
    "ErrorCategory",
    "ErrorRecord",
    "MutationKind",
    "QueuedMutation",
    "new_mutation_id",
]
