"""Fetch-window strategies for sandbox and production Dexcom accounts."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from glucose_sync.models.readings import ReadingSource
from glucose_sync.utils.normalization import parse_dexcom_time

Window = Tuple[datetime, datetime]


class SyncStrategy(BaseModel):
    """
    How a sync picks its fetch windows.

    The anchor is read from the provider's dataRange (egvs.start or
    egvs.end). Windows of ``window_size`` are laid out forward or backward
    from it; the first window's end is pushed out by ``lead_padding``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    anchor: Literal["start", "end"]
    direction: Literal["forward", "backward"]
    window_count: int
    window_size: timedelta
    lead_padding: timedelta = timedelta(0)
    api_version: Literal["v2", "v3"]
    source: str = ReadingSource.DEXCOM_API.value
    note: str
    # Anchor used when dataRange has none; the sync is still reported as having no valid range
    fallback_anchor: Optional[str] = None

    def anchor_time(self, data_range: Optional[Dict[str, Any]]) -> Optional[datetime]:
        """Read this strategy's anchor from a dataRange payload."""
        egvs = (data_range or {}).get("egvs") or {}
        point = egvs.get(self.anchor) or {}
        return parse_dexcom_time(point.get("systemTime"))

    def windows(self, anchor: datetime) -> List[Window]:
        """The (start, end) windows to fetch, in fetch order."""
        result = []
        for i in range(self.window_count):
            if self.direction == "backward":
                start = anchor - (i + 1) * self.window_size
                end = anchor - i * self.window_size
            else:
                start = anchor + i * self.window_size
                end = start + self.window_size
            if i == 0:
                end += self.lead_padding
            result.append((start, end))
        return result


SANDBOX = SyncStrategy(
    name="sandbox",
    anchor="start",
    direction="forward",
    window_count=1,
    window_size=timedelta(hours=48),
    api_version="v2",
    note="Dexcom API (Sandbox)",
    fallback_anchor="2020-01-01T00:00:00",
)

PRODUCTION = SyncStrategy(
    name="production",
    anchor="end",
    direction="backward",
    window_count=3,
    window_size=timedelta(days=30),
    lead_padding=timedelta(hours=1),
    api_version="v3",
    note="Dexcom API (Live Data)",
)

STRATEGIES = {s.name: s for s in (SANDBOX, PRODUCTION)}


def select_strategy(environment: str) -> SyncStrategy:
    """
    Pick the strategy for DEXCOM_ENVIRONMENT.

    Raises:
        ValueError: For an unknown environment name
    """
    try:
        return STRATEGIES[environment]
    except KeyError:
        raise ValueError(f"Unknown Dexcom environment '{environment}'")
