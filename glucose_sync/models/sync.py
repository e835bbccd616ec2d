"""Models for synchronization requests and the persisted sync state."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncStatus(str, Enum):
    """Outcome of a sync run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    NOT_CONNECTED = "not_connected"


class SyncTrigger(str, Enum):
    """What asked for a sync."""

    CALLBACK = "callback"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class SyncRequest(BaseModel):
    """Job descriptor handed from request handlers to the sync worker."""

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique identifier for the request")
    trigger: SyncTrigger = Field(SyncTrigger.MANUAL, description="What asked for the sync")
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SyncStats(BaseModel):
    """Statistics recorded for one sync run."""

    model_config = ConfigDict(populate_by_name=True)

    valid_range: bool = Field(False, alias="validRange", description="Whether the provider reported a usable data range")
    count: int = Field(0, description="Glucose values returned by the provider")
    latest: Optional[str] = Field(None, description="Newest glucose value timestamp seen")
    carb_events: int = Field(0, description="Stored carb event rows")
    insulin_events: int = Field(0, description="Stored insulin event rows")
    last_carb: Optional[str] = Field(None, description="Timestamp of the most recent carb row")
    last_insulin: Optional[str] = Field(None, description="Timestamp of the most recent insulin row")
    carb_gap_hours: Optional[float] = Field(None, description="Hours since the most recent carb row")
    event_summary: Dict[str, int] = Field(default_factory=dict, description="type|subtype|unit frequency map")
    mode: Optional[str] = Field(None, description="Strategy used: sandbox or production")
    chunks_ok: int = Field(0, description="Windows fetched and stored")
    chunks_failed: int = Field(0, description="Windows that failed and were skipped")
    carb_gap_alert: bool = Field(False, description="Carb gap over threshold or no carb event at all")

    def status(self) -> SyncStatus:
        """Summarize the run as a SyncStatus."""
        if self.chunks_failed and self.chunks_ok:
            return SyncStatus.PARTIAL
        if self.chunks_ok:
            return SyncStatus.SUCCESS
        return SyncStatus.FAILED


class SyncState(BaseModel):
    """The persisted outcome of the last sync run."""

    last_sync_at: Optional[str] = Field(None, description="When the last sync attempt finished")
    stats: SyncStats = Field(default_factory=SyncStats)

    def to_state(self) -> dict:
        """Convert to the JSON shape of the sync state file."""
        return {
            "last_sync_at": self.last_sync_at,
            "stats": self.stats.model_dump(by_alias=True),
        }

    @classmethod
    def from_state(cls, data: dict) -> "SyncState":
        """Create a SyncState from the sync state file's JSON shape."""
        return cls(
            last_sync_at=data.get("last_sync_at"),
            stats=SyncStats.model_validate(data.get("stats") or {}),
        )

    def hours_since_sync(self, now: Optional[datetime] = None) -> Optional[float]:
        """Hours elapsed since last_sync_at, or None if never synced."""
        if not self.last_sync_at:
            return None
        try:
            last = datetime.fromisoformat(self.last_sync_at.replace("Z", "+00:00"))
        except ValueError:
            return None
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return (now - last).total_seconds() / 3600
