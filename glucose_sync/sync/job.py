"""
The Dexcom synchronization job.

One run reads the provider's dataRange, walks the strategy's windows,
stores glucose values and classified carb/insulin events, recomputes the
derived event statistics and persists the sync state. A run never raises:
window failures are skipped and a top-level failure ends the run with the
statistics gathered so far.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from glucose_sync.auth.dexcom_client import DexcomApiClient
from glucose_sync.auth.tokens import NotConnectedError, require_valid_token
from glucose_sync.data.glucose_repository import get_glucose_repository
from glucose_sync.data.sync_repository import SyncStateRepository, get_sync_state_repository
from glucose_sync.data.token_repository import TokenRepository
from glucose_sync.metrics import (
    carb_gap_hours as carb_gap_hours_gauge,
    readings_ingested_total,
    sync_chunk_failures_total,
    sync_job_completed_total,
    sync_job_duration_seconds,
)
from glucose_sync.models.sync import SyncRequest, SyncState, SyncStats, SyncStatus
from glucose_sync.sync.classification import ClassifiedEvent, classify_event, summarize_events
from glucose_sync.sync.strategy import SyncStrategy, Window, select_strategy
from glucose_sync.utils.config import Settings, get_settings
from glucose_sync.utils.normalization import normalize_dexcom_time, parse_dexcom_time, parse_finite_number

logger = logging.getLogger(__name__)

EVENT_NOTES_SEPARATOR = "; "


class ReadingStore(Protocol):
    """The slice of the readings repository the job writes through."""

    async def insert_egvs(self, rows: Sequence[Dict[str, Any]], batch_size: int = 500) -> int:
        ...

    async def upsert_events(self, rows: Sequence[Dict[str, Any]], batch_size: int = 500) -> int:
        ...

    async def event_stats(self) -> Dict[str, Any]:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 in UTC with a Z suffix."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def build_egv_rows(egvs: Iterable[Dict[str, Any]], source: str, note: str) -> List[Dict[str, Any]]:
    """Rows for glucose values that carry a positive numeric value and a timestamp."""
    rows = []
    for record in egvs:
        value = parse_finite_number(record.get("value"))
        measured_at = parse_dexcom_time(record.get("systemTime"))
        if value is None or value <= 0 or measured_at is None:
            continue
        rows.append({
            "glucose_mgdl": value,
            "measured_at": measured_at,
            "source": source,
            "notes": note,
        })
    return rows


def aggregate_events(events: Iterable[ClassifiedEvent], source: str) -> List[Dict[str, Any]]:
    """
    Merge classified events landing on the same instant into one row.

    Carb and insulin values are summed and notes joined with "; ", so a
    batch never holds two rows for the same (measured_at, source).
    Unclassified events and events without a usable timestamp are dropped.
    """
    merged: Dict[datetime, Dict[str, Any]] = {}
    notes: Dict[datetime, List[str]] = {}
    for event in events:
        if event.kind is None:
            continue
        measured_at = parse_dexcom_time(event.measured_at)
        if measured_at is None:
            continue
        row = merged.get(measured_at)
        if row is None:
            row = merged[measured_at] = {
                "glucose_mgdl": None,
                "measured_at": measured_at,
                "source": source,
                "carbs_grams": None,
                "insulin_units": None,
                "notes": None,
            }
            notes[measured_at] = []
        if event.carbs_grams is not None:
            row["carbs_grams"] = (row["carbs_grams"] or 0) + event.carbs_grams
        if event.insulin_units is not None:
            row["insulin_units"] = (row["insulin_units"] or 0) + event.insulin_units
        notes[measured_at].append(event.note)
    for measured_at, row in merged.items():
        row["notes"] = EVENT_NOTES_SEPARATOR.join(notes[measured_at])
    return sorted(merged.values(), key=lambda r: r["measured_at"])


def compute_carb_gap(last_carb: Optional[datetime], now: datetime) -> Optional[float]:
    """Hours since the last carb row, rounded to one decimal; None without one."""
    if last_carb is None:
        return None
    if last_carb.tzinfo is None:
        last_carb = last_carb.replace(tzinfo=timezone.utc)
    return round((now - last_carb).total_seconds() / 3600, 1)


def is_carb_gap_alert(gap_hours: Optional[float], threshold_hours: float = 24.0) -> bool:
    """Alert when no carb row exists or the last one is older than the threshold."""
    return gap_hours is None or gap_hours > threshold_hours


class SyncJob:
    """Runs one synchronization against Dexcom with a fixed strategy."""

    def __init__(
        self,
        client: DexcomApiClient,
        readings: ReadingStore,
        sync_state: SyncStateRepository,
        strategy: SyncStrategy,
        batch_size: int = 500,
        carb_gap_alert_hours: float = 24.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.readings = readings
        self.sync_state = sync_state
        self.strategy = strategy
        self.batch_size = batch_size
        self.carb_gap_alert_hours = carb_gap_alert_hours
        self.clock = clock

    async def sync_data(self, access_token: str) -> SyncStats:
        """
        Run the sync and persist its outcome.

        Args:
            access_token: A valid Dexcom access token

        Returns:
            SyncStats: Statistics of this run, partial when it aborted
        """
        strategy = self.strategy
        stats = SyncStats(mode=strategy.name)
        raw_events: List[Dict[str, Any]] = []
        started = time.monotonic()
        logger.info("Dexcom sync started", extra={"log_type": "sync_start", "mode": strategy.name})

        try:
            data_range = await self.client.get_data_range(access_token)
            anchor = strategy.anchor_time(data_range)
            if anchor is not None:
                stats.valid_range = True
            elif strategy.fallback_anchor:
                anchor = parse_dexcom_time(strategy.fallback_anchor)
                logger.info(
                    "No range data found, using fallback anchor",
                    extra={"log_type": "sync_anchor", "anchor": strategy.fallback_anchor},
                )

            if anchor is None:
                logger.info("No range data found. Skipping sync.", extra={"log_type": "sync_anchor"})
            else:
                windows = strategy.windows(anchor)
                for index, window in enumerate(windows, start=1):
                    try:
                        await self._sync_window(access_token, window, stats, raw_events)
                        stats.chunks_ok += 1
                    except Exception as e:
                        stats.chunks_failed += 1
                        sync_chunk_failures_total.labels(mode=strategy.name).inc()
                        logger.error(
                            f"Sync chunk {index}/{len(windows)} failed: {e}",
                            extra={
                                "log_type": "sync_chunk_failed",
                                "chunk": index,
                                "window_start": to_iso(window[0]),
                                "window_end": to_iso(window[1]),
                            },
                            exc_info=True,
                        )

            await self._apply_event_stats(stats)
        except Exception as e:
            logger.error(f"Dexcom sync failed: {e}", extra={"log_type": "sync_failure"}, exc_info=True)

        stats.event_summary = summarize_events(raw_events)
        self._save_state(stats)

        status = stats.status()
        sync_job_completed_total.labels(status=status.value).inc()
        sync_job_duration_seconds.labels(mode=strategy.name).observe(time.monotonic() - started)
        logger.info(
            "Dexcom sync finished",
            extra={"log_type": "sync_complete", "status": status.value, "stats": stats.model_dump(by_alias=True)},
        )
        return stats

    async def _sync_window(
        self,
        access_token: str,
        window: Window,
        stats: SyncStats,
        raw_events: List[Dict[str, Any]],
    ) -> None:
        strategy = self.strategy
        start, end = window
        fetches = [
            asyncio.ensure_future(self.client.get_egvs(access_token, start, end, api_version=strategy.api_version)),
            asyncio.ensure_future(self.client.get_events(access_token, start, end, api_version=strategy.api_version)),
        ]
        try:
            egvs, events = await asyncio.gather(*fetches)
        except Exception:
            # A failed fetch must not leave its sibling running into the next window
            for task in fetches:
                task.cancel()
            await asyncio.gather(*fetches, return_exceptions=True)
            raise
        logger.info(
            f"Chunk {to_iso(start)} to {to_iso(end)} returned {len(egvs)} EGVs and {len(events)} events",
            extra={"log_type": "sync_chunk", "egvs": len(egvs), "events": len(events)},
        )
        stats.count += len(egvs)
        raw_events.extend(events)
        self._update_latest(stats, egvs)

        egv_rows = build_egv_rows(egvs, strategy.source, strategy.note)
        event_rows = aggregate_events((classify_event(e) for e in events), strategy.source)

        if egv_rows:
            await self.readings.insert_egvs(egv_rows, batch_size=self.batch_size)
            readings_ingested_total.labels(kind="egv").inc(len(egv_rows))
        if event_rows:
            await self.readings.upsert_events(event_rows, batch_size=self.batch_size)
            readings_ingested_total.labels(kind="event").inc(len(event_rows))

    @staticmethod
    def _update_latest(stats: SyncStats, egvs: Iterable[Dict[str, Any]]) -> None:
        latest = parse_dexcom_time(stats.latest)
        for record in egvs:
            normalized = normalize_dexcom_time(record.get("systemTime"))
            measured_at = parse_dexcom_time(normalized)
            if measured_at is not None and (latest is None or measured_at > latest):
                latest = measured_at
                stats.latest = normalized

    async def _apply_event_stats(self, stats: SyncStats) -> None:
        derived = await self.readings.event_stats()
        stats.carb_events = derived["carb_events"]
        stats.insulin_events = derived["insulin_events"]
        stats.last_carb = to_iso(derived["last_carb"])
        stats.last_insulin = to_iso(derived["last_insulin"])
        stats.carb_gap_hours = compute_carb_gap(derived["last_carb"], self.clock())
        stats.carb_gap_alert = is_carb_gap_alert(stats.carb_gap_hours, self.carb_gap_alert_hours)

        if stats.carb_gap_hours is not None:
            carb_gap_hours_gauge.set(stats.carb_gap_hours)
        if stats.carb_gap_alert:
            logger.warning(
                "CARB_GAP_ALERT: no recent carb events",
                extra={
                    "log_type": "CARB_GAP_ALERT",
                    "carb_gap_hours": stats.carb_gap_hours,
                    "last_carb": stats.last_carb,
                    "threshold_hours": self.carb_gap_alert_hours,
                },
            )

    def _save_state(self, stats: SyncStats) -> None:
        state = SyncState(last_sync_at=to_iso(self.clock()), stats=stats)
        try:
            self.sync_state.save(state)
        except Exception as e:
            logger.error(f"Failed to save sync state: {e}", extra={"log_type": "sync_state_write_error"})


async def run_sync_request(
    request: SyncRequest,
    settings: Optional[Settings] = None,
    token_repo: Optional[TokenRepository] = None,
    sync_state_repo: Optional[SyncStateRepository] = None,
    readings: Optional[ReadingStore] = None,
) -> Optional[SyncStats]:
    """
    Run one queued sync request end to end.

    Gets a valid access token (refreshing it once if needed), builds the
    client and the configured strategy, and runs the job.

    Returns:
        Optional[SyncStats]: The run's statistics, or None when not connected
    """
    settings = settings or get_settings()
    try:
        access_token = await require_valid_token(token_repo)
    except NotConnectedError as e:
        logger.warning(
            f"Sync skipped, Dexcom not connected: {e}",
            extra={"log_type": "sync_not_connected", "request_id": request.request_id, "trigger": request.trigger.value},
        )
        sync_job_completed_total.labels(status=SyncStatus.NOT_CONNECTED.value).inc()
        return None

    strategy = select_strategy(settings.dexcom_environment)
    async with DexcomApiClient(
        base_url=settings.dexcom_base_url,
        max_retries=settings.max_retries,
        base_delay_ms=settings.retry_base_delay_ms,
        timeout_seconds=settings.request_timeout_seconds,
    ) as client:
        job = SyncJob(
            client=client,
            readings=readings or get_glucose_repository(),
            sync_state=sync_state_repo or get_sync_state_repository(),
            strategy=strategy,
            batch_size=settings.insert_batch_size,
            carb_gap_alert_hours=settings.carb_gap_alert_hours,
        )
        return await job.sync_data(access_token)
