"""Repository for glucose readings and carb/insulin events in Postgres."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from glucose_sync.data.database import get_engine, glucose_readings
from glucose_sync.models.readings import Reading, ReadingCreate, ReadingUpdate

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 1000
MAX_LIST_LIMIT = 50000

# Long windows are thinned to every Nth row once they exceed the threshold
SAMPLING_MIN_HOURS = 720
SAMPLING_MIN_ROWS = 2000
SAMPLING_STRIDE = 12

CONFLICT_COLUMNS = ["measured_at", "source"]
NOTES_SEPARATOR = " | "


def clamp_limit(limit: Optional[int]) -> int:
    """Apply the default and the upper bound to a list limit."""
    if limit is None or limit <= 0:
        return DEFAULT_LIST_LIMIT
    return min(limit, MAX_LIST_LIMIT)


def sample_rows(rows: Sequence[Any], hours: Optional[float]) -> List[Any]:
    """
    Thin a newest-first result for long windows.

    When the window is at least 30 days and more than 2000 rows matched,
    every 12th row is kept, starting with the newest.
    """
    if hours is not None and hours >= SAMPLING_MIN_HOURS and len(rows) > SAMPLING_MIN_ROWS:
        return list(rows[::SAMPLING_STRIDE])
    return list(rows)


def chunked(rows: Sequence[Dict[str, Any]], size: int) -> Iterator[Sequence[Dict[str, Any]]]:
    """Yield consecutive slices of *rows* of at most *size* items."""
    size = max(1, size)
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def build_egv_insert(rows: Sequence[Dict[str, Any]]):
    """
    Multi-row insert of glucose values.

    A conflicting row only takes the new glucose value when it has none yet,
    which is the case for an event stored before its glucose value arrived.
    Rows that already hold a value are left alone.
    """
    stmt = pg_insert(glucose_readings).values(list(rows))
    existing = glucose_readings.c
    return stmt.on_conflict_do_update(
        index_elements=CONFLICT_COLUMNS,
        set_={"glucose_mgdl": stmt.excluded.glucose_mgdl, "updated_at": func.now()},
        where=existing.glucose_mgdl.is_(None),
    )


def build_event_upsert(rows: Sequence[Dict[str, Any]]):
    """
    Multi-row insert of carb/insulin events.

    On conflict the stored carb and insulin values win over the new ones and
    the new note is appended to the stored note.
    """
    stmt = pg_insert(glucose_readings).values(list(rows))
    excluded = stmt.excluded
    existing = glucose_readings.c
    return stmt.on_conflict_do_update(
        index_elements=CONFLICT_COLUMNS,
        set_={
            "carbs_grams": func.coalesce(existing.carbs_grams, excluded.carbs_grams),
            "insulin_units": func.coalesce(existing.insulin_units, excluded.insulin_units),
            "notes": func.coalesce(existing.notes + NOTES_SEPARATOR + excluded.notes, excluded.notes),
            "updated_at": func.now(),
        },
    )


def event_filter():
    """Rows carrying a carb or insulin value."""
    return or_(glucose_readings.c.carbs_grams.isnot(None), glucose_readings.c.insulin_units.isnot(None))


def build_event_stats_query():
    """Counts and latest timestamps of stored carb and insulin rows."""
    c = glucose_readings.c
    carb = and_(c.carbs_grams.isnot(None), c.carbs_grams > 0)
    insulin = and_(c.insulin_units.isnot(None), c.insulin_units > 0)
    return select(
        func.count().filter(carb).label("carb_events"),
        func.count().filter(insulin).label("insulin_events"),
        func.max(c.measured_at).filter(carb).label("last_carb"),
        func.max(c.measured_at).filter(insulin).label("last_insulin"),
    )


class GlucoseRepository:
    """Repository for the glucose_readings table."""

    def __init__(self, engine: Optional[AsyncEngine] = None):
        """
        Initialize the repository.

        Args:
            engine: Async engine; the shared engine is used when omitted
        """
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    async def insert_reading(self, reading: ReadingCreate) -> Optional[Reading]:
        """
        Insert a manually logged reading.

        Args:
            reading: The reading to insert

        Returns:
            Optional[Reading]: The stored row, or None when (measured_at, source) already exists
        """
        stmt = (
            pg_insert(glucose_readings)
            .values(
                glucose_mgdl=reading.glucose_mgdl,
                measured_at=reading.resolved_measured_at(),
                source=reading.source,
                notes=reading.notes,
                meal_tag=reading.meal_tag,
                carbs_grams=reading.carbs_grams,
                insulin_units=reading.insulin_units,
            )
            .on_conflict_do_nothing(index_elements=CONFLICT_COLUMNS)
            .returning(*glucose_readings.c)
        )
        try:
            async with self.engine.begin() as conn:
                row = (await conn.execute(stmt)).mappings().first()
        except SQLAlchemyError as e:
            logger.error(f"Error inserting reading: {e}")
            raise
        return Reading.from_row(row) if row else None

    async def list_readings(self, limit: Optional[int] = None, hours: Optional[float] = None) -> List[Reading]:
        """
        List readings newest first.

        Args:
            limit: Maximum rows to fetch (default 1000, max 50000)
            hours: Only rows measured within the last N hours

        Returns:
            List[Reading]: The rows, thinned for long windows
        """
        stmt = select(glucose_readings)
        if hours:
            since = datetime.now(timezone.utc) - timedelta(hours=hours)
            stmt = stmt.where(glucose_readings.c.measured_at > since)
        stmt = stmt.order_by(glucose_readings.c.measured_at.desc()).limit(clamp_limit(limit))
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [Reading.from_row(row) for row in sample_rows(rows, hours)]

    async def update_reading(self, reading_id: int, reading: ReadingUpdate) -> Optional[Reading]:
        """
        Replace the editable fields of a reading.

        Returns:
            Optional[Reading]: The updated row, or None if not found
        """
        stmt = (
            update(glucose_readings)
            .where(glucose_readings.c.id == reading_id)
            .values(
                glucose_mgdl=reading.glucose_mgdl,
                notes=reading.notes,
                meal_tag=reading.meal_tag,
                carbs_grams=reading.carbs_grams,
                insulin_units=reading.insulin_units,
                updated_at=func.now(),
            )
            .returning(*glucose_readings.c)
        )
        async with self.engine.begin() as conn:
            row = (await conn.execute(stmt)).mappings().first()
        return Reading.from_row(row) if row else None

    async def delete_reading(self, reading_id: int) -> Optional[int]:
        """
        Delete a reading.

        Returns:
            Optional[int]: The deleted id, or None if not found
        """
        stmt = delete(glucose_readings).where(glucose_readings.c.id == reading_id).returning(glucose_readings.c.id)
        async with self.engine.begin() as conn:
            deleted = (await conn.execute(stmt)).scalar_one_or_none()
        return deleted

    async def insert_egvs(self, rows: Sequence[Dict[str, Any]], batch_size: int = 500) -> int:
        """
        Insert glucose values in batches, skipping rows that already have one.

        Each batch commits on its own.

        Returns:
            int: Rows inserted or filled in
        """
        inserted = 0
        for batch in chunked(rows, batch_size):
            async with self.engine.begin() as conn:
                result = await conn.execute(build_egv_insert(batch))
            inserted += max(result.rowcount or 0, 0)
        return inserted

    async def upsert_events(self, rows: Sequence[Dict[str, Any]], batch_size: int = 500) -> int:
        """
        Insert or merge carb/insulin event rows in batches.

        Rows must have unique measured_at values within a call.

        Returns:
            int: Rows inserted or updated
        """
        written = 0
        for batch in chunked(rows, batch_size):
            async with self.engine.begin() as conn:
                result = await conn.execute(build_event_upsert(batch))
            written += max(result.rowcount or 0, 0)
        return written

    async def event_stats(self) -> Dict[str, Any]:
        """
        Counts and latest timestamps of stored carb and insulin rows.

        Returns:
            Dict: carb_events, insulin_events, last_carb, last_insulin
        """
        async with self.engine.connect() as conn:
            row = (await conn.execute(build_event_stats_query())).mappings().one()
        return {
            "carb_events": int(row["carb_events"] or 0),
            "insulin_events": int(row["insulin_events"] or 0),
            "last_carb": row["last_carb"],
            "last_insulin": row["last_insulin"],
        }

    async def list_events(self, limit: int = 100) -> List[Reading]:
        """Stored rows with a carb or insulin value, newest first."""
        stmt = (
            select(glucose_readings)
            .where(event_filter())
            .order_by(glucose_readings.c.measured_at.desc())
            .limit(clamp_limit(limit))
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [Reading.from_row(row) for row in rows]

    async def glucose_values_since(self, since: datetime, limit: int) -> List[Dict[str, Any]]:
        """Up to *limit* glucose values measured after *since*, newest first."""
        c = glucose_readings.c
        stmt = (
            select(c.glucose_mgdl, c.measured_at)
            .where(c.measured_at > since, c.glucose_mgdl.isnot(None))
            .order_by(c.measured_at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [{"glucose_mgdl": float(r["glucose_mgdl"]), "measured_at": r["measured_at"]} for r in rows]

    async def weekly_aggregates(self, since: datetime) -> List[Dict[str, Any]]:
        """Per-week count, average, standard deviation, minimum and maximum glucose since *since*."""
        c = glucose_readings.c
        week = func.date_trunc("week", c.measured_at).label("week")
        stmt = (
            select(
                week,
                func.count(c.glucose_mgdl).label("count"),
                func.avg(c.glucose_mgdl).label("avg"),
                func.stddev(c.glucose_mgdl).label("stddev"),
                func.min(c.glucose_mgdl).label("min"),
                func.max(c.glucose_mgdl).label("max"),
            )
            .where(c.measured_at > since, c.glucose_mgdl.isnot(None))
            .group_by(week)
            .order_by(week.asc())
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            {
                "week": r["week"],
                "count": int(r["count"]),
                "avg": float(r["avg"]) if r["avg"] is not None else None,
                "stddev": float(r["stddev"]) if r["stddev"] is not None else None,
                "min": float(r["min"]) if r["min"] is not None else None,
                "max": float(r["max"]) if r["max"] is not None else None,
            }
            for r in rows
        ]


# Singleton instance for reuse
_glucose_repository: Optional[GlucoseRepository] = None


def get_glucose_repository() -> GlucoseRepository:
    """
    Get a singleton instance of the glucose repository.

    Returns:
        GlucoseRepository: Glucose repository
    """
    global _glucose_repository
    if _glucose_repository is None:
        _glucose_repository = GlucoseRepository()
    return _glucose_repository
