"""Pydantic models and schemas."""

from glucose_sync.models.readings import (
    Reading,
    ReadingCreate,
    ReadingSource,
    ReadingUpdate,
)
from glucose_sync.models.sync import (
    SyncRequest,
    SyncState,
    SyncStats,
    SyncStatus,
    SyncTrigger,
)
from glucose_sync.models.tokens import TokenRecord

__all__ = [
    # Reading models
    "Reading",
    "ReadingCreate",
    "ReadingSource",
    "ReadingUpdate",

    # Sync models
    "SyncRequest",
    "SyncState",
    "SyncStats",
    "SyncStatus",
    "SyncTrigger",

    # Token models
    "TokenRecord",
]
