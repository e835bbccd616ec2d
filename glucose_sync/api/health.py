"""Service banner, liveness and database health endpoints."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from glucose_sync.data.database import ping_database
from glucose_sync.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/")
async def banner(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    """Service banner."""
    return {"message": "Glucose Sync API is running", "env": settings.service_env}


@router.get("/status")
async def status(settings: Settings = Depends(get_settings)) -> Dict[str, Any]:
    """Liveness check that does not touch the database."""
    return {
        "status": "alive",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings)):
    """
    Health check endpoint.

    Returns:
        dict: Database status; 503 when the database is unreachable
    """
    try:
        await ping_database()
    except Exception as e:
        logger.error(f"Health check DB error: {e}", extra={"log_type": "db_health"})
        return JSONResponse(
            status_code=503,
            content={"ok": False, "db": "error", "message": str(e), "version": settings.app_version},
        )
    return {"ok": True, "db": "connected", "version": settings.app_version}
