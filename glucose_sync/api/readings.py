"""API endpoints for logging, listing, editing and deleting glucose readings."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from starlette.status import HTTP_201_CREATED, HTTP_404_NOT_FOUND, HTTP_409_CONFLICT

from glucose_sync.data.glucose_repository import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    GlucoseRepository,
    get_glucose_repository,
)
from glucose_sync.models.readings import Reading, ReadingCreate, ReadingUpdate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["glucose"])


@router.get("/ping")
async def ping() -> Dict[str, Any]:
    """Reachability check without database access."""
    return {"message": "API Pong", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post("/glucose", status_code=HTTP_201_CREATED, response_model=Reading)
async def create_reading(
    reading: ReadingCreate,
    repo: GlucoseRepository = Depends(get_glucose_repository),
) -> Reading:
    """
    Log a reading or a carb/insulin entry.

    Returns:
        Reading: The stored row; 409 when (measured_at, source) already exists
    """
    stored = await repo.insert_reading(reading)
    if stored is None:
        raise HTTPException(
            status_code=HTTP_409_CONFLICT,
            detail="A reading with this measured_at and source already exists",
        )
    logger.info("Reading created", extra={"log_type": "reading_created", "reading_id": stored.id})
    return stored


@router.get("/glucose", response_model=List[Reading])
async def list_readings(
    limit: int = Query(DEFAULT_LIST_LIMIT, ge=1, description=f"Maximum rows, capped at {MAX_LIST_LIMIT}"),
    hours: Optional[float] = Query(None, gt=0, description="Only rows from the last N hours"),
    repo: GlucoseRepository = Depends(get_glucose_repository),
) -> List[Reading]:
    """
    List readings newest first.

    Windows of 720 hours or more return every 12th row when over 2000 rows
    come back. Sampling runs on the limited result, so long windows need a
    limit above 2000 (the dashboard asks for 10000 or 50000) to be thinned.
    """
    return await repo.list_readings(limit=min(limit, MAX_LIST_LIMIT), hours=hours)


@router.put("/glucose/{reading_id}", response_model=Reading)
async def update_reading(
    reading_id: int,
    reading: ReadingUpdate,
    repo: GlucoseRepository = Depends(get_glucose_repository),
) -> Reading:
    """Replace the editable fields of a reading."""
    updated = await repo.update_reading(reading_id, reading)
    if updated is None:
        raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Not found")
    return updated


@router.delete("/glucose/{reading_id}")
async def delete_reading(
    reading_id: int,
    repo: GlucoseRepository = Depends(get_glucose_repository),
) -> Dict[str, int]:
    """Delete a reading."""
    deleted = await repo.delete_reading(reading_id)
    if deleted is None:
        raise HTTPException(status_code=HTTP_404_NOT_FOUND, detail="Not found")
    return {"deleted": deleted}
