"""Dexcom connection endpoints: OAuth login/callback, status, sync trigger and events."""

import logging
import secrets
import urllib.parse
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.status import (
    HTTP_202_ACCEPTED,
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
)

from glucose_sync.auth.dexcom_client import DexcomApiClient, DexcomAPIError, DexcomAuthError
from glucose_sync.auth.oauth import TokenError, build_dexcom_auth_url
from glucose_sync.auth.tokens import exchange_code_and_store, get_valid_token
from glucose_sync.data.glucose_repository import GlucoseRepository, get_glucose_repository
from glucose_sync.data.sync_repository import SyncStateRepository, get_sync_state_repository
from glucose_sync.data.token_repository import TokenRepository, get_token_repository
from glucose_sync.models.readings import Reading
from glucose_sync.models.sync import SyncTrigger
from glucose_sync.sync.classification import classify_event, summarize_events
from glucose_sync.sync.strategy import select_strategy
from glucose_sync.sync.worker import SyncWorker
from glucose_sync.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dexcom"])

# A connection whose last sync is older than this is reported as stale
STALE_AFTER_HOURS = 24
MAX_LIVE_HOURS = 720


def get_sync_worker(request: Request) -> SyncWorker:
    """The application's sync worker, created in the lifespan."""
    return request.app.state.sync_worker


async def get_dexcom_client(settings: Settings = Depends(get_settings)) -> AsyncIterator[DexcomApiClient]:
    """A Dexcom client for the duration of one request."""
    async with DexcomApiClient(
        base_url=settings.dexcom_base_url,
        max_retries=settings.max_retries,
        base_delay_ms=settings.retry_base_delay_ms,
        timeout_seconds=settings.request_timeout_seconds,
    ) as client:
        yield client


def _frontend_redirect(settings: Settings, **params: str) -> RedirectResponse:
    url = f"{settings.frontend_url}?{urllib.parse.urlencode(params)}"
    return RedirectResponse(url, status_code=302)


@router.get("/login")
async def login(settings: Settings = Depends(get_settings)):
    """Redirect the browser to the Dexcom consent page."""
    if not settings.dexcom_client_id or not settings.dexcom_redirect_uri:
        logger.error("Dexcom login attempted without client configuration", extra={"log_type": "config_missing"})
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Missing DEXCOM_CLIENT_ID or DEXCOM_REDIRECT_URI in env"},
        )
    url = build_dexcom_auth_url(
        client_id=settings.dexcom_client_id,
        redirect_uri=settings.dexcom_redirect_uri,
        state=secrets.token_urlsafe(16),
        scope=settings.dexcom_scope,
        base_url=settings.dexcom_base_url,
    )
    logger.info("Dexcom login redirect created", extra={"log_type": "oauth_redirect", "redirect_uri": settings.dexcom_redirect_uri})
    return RedirectResponse(url, status_code=302)


@router.get("/callback")
async def callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    token_repo: TokenRepository = Depends(get_token_repository),
    worker: SyncWorker = Depends(get_sync_worker),
):
    """
    OAuth callback: exchange the code, store the token, queue a sync and
    redirect to the frontend without waiting for the sync.
    """
    if error:
        logger.warning("Dexcom authorization denied", extra={"log_type": "oauth_callback_error", "error": error})
        return _frontend_redirect(settings, dexcom_error=error)
    if not code:
        raise HTTPException(status_code=HTTP_400_BAD_REQUEST, detail="No code returned")

    try:
        await exchange_code_and_store(code, repo=token_repo)
    except TokenError as e:
        logger.error(
            f"Dexcom code exchange failed: {e}",
            extra={"log_type": "oauth_callback_error", "status_code": e.status_code},
        )
        return _frontend_redirect(settings, dexcom_error="AUTH_FAILED")

    worker.submit(SyncTrigger.CALLBACK)
    return _frontend_redirect(settings, dexcom="connected")


@router.get("/status")
async def connection_status(
    settings: Settings = Depends(get_settings),
    token_repo: TokenRepository = Depends(get_token_repository),
    sync_repo: SyncStateRepository = Depends(get_sync_state_repository),
    worker: SyncWorker = Depends(get_sync_worker),
) -> Dict[str, Any]:
    """Connection and last-sync status; degraded states are reported, not raised."""
    try:
        token = token_repo.get()
    except Exception as e:
        logger.error(f"Could not read token record: {e}", extra={"log_type": "token_read_error"})
        token = None
    try:
        state = sync_repo.get()
    except Exception as e:
        logger.error(f"Could not read sync state: {e}", extra={"log_type": "sync_state_read_error"})
        state = None

    hours_since_sync = state.hours_since_sync() if state else None
    connected = token is not None
    return {
        "connected": connected,
        "environment": settings.dexcom_environment,
        "expires_at": token.expires_at_datetime.isoformat() if token else None,
        "expires_in_seconds": token.expires_in_ms() // 1000 if token else None,
        "last_sync_at": state.last_sync_at if state else None,
        "stale": connected and (hours_since_sync is None or hours_since_sync > STALE_AFTER_HOURS),
        "stats": state.stats.model_dump(by_alias=True) if state else None,
        "sync_pending": worker.pending or worker.running,
    }


@router.get("/sync", status_code=HTTP_202_ACCEPTED)
async def trigger_sync(
    token_repo: TokenRepository = Depends(get_token_repository),
    worker: SyncWorker = Depends(get_sync_worker),
):
    """Queue a manual sync."""
    try:
        token = token_repo.get()
    except Exception as e:
        logger.error(f"Could not read token record: {e}", extra={"log_type": "token_read_error"})
        token = None
    if token is None:
        return JSONResponse(status_code=HTTP_401_UNAUTHORIZED, content={"status": "not_connected"})
    queued = worker.submit(SyncTrigger.MANUAL)
    return {"status": "queued" if queued else "already_queued"}


@router.get("/events", response_model=List[Reading])
async def stored_events(
    limit: int = Query(100, ge=1, le=5000),
    repo: GlucoseRepository = Depends(get_glucose_repository),
) -> List[Reading]:
    """Stored carb/insulin rows, newest first."""
    return await repo.list_events(limit=limit)


@router.get("/events/raw")
async def raw_event_summary(sync_repo: SyncStateRepository = Depends(get_sync_state_repository)) -> Dict[str, Any]:
    """Event frequency map and counts recorded by the last sync."""
    state = sync_repo.get()
    if state is None:
        return {"last_sync_at": None, "event_summary": {}, "carb_events": 0, "insulin_events": 0}
    return {
        "last_sync_at": state.last_sync_at,
        "event_summary": state.stats.event_summary,
        "carb_events": state.stats.carb_events,
        "insulin_events": state.stats.insulin_events,
        "last_carb": state.stats.last_carb,
        "last_insulin": state.stats.last_insulin,
    }


async def _fetch_live_events(
    hours: int,
    settings: Settings,
    token_repo: TokenRepository,
    client: DexcomApiClient,
) -> Dict[str, Any]:
    try:
        access_token = await get_valid_token(repo=token_repo)
    except TokenError as e:
        logger.warning(f"Live events unavailable: {e}", extra={"log_type": "token_refresh_error"})
        access_token = None
    if access_token is None:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="not_connected")

    end = datetime.now(timezone.utc)
    start = end - timedelta(hours=hours)
    strategy = select_strategy(settings.dexcom_environment)
    try:
        events = await client.get_events(access_token, start, end, api_version=strategy.api_version)
    except DexcomAuthError:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="not_connected")
    except DexcomAPIError as e:
        raise HTTPException(status_code=HTTP_502_BAD_GATEWAY, detail=f"Dexcom API error: {e}")
    return {"start": start, "end": end, "events": events}


@router.get("/events/live")
async def live_events(
    hours: int = Query(24, ge=1, le=MAX_LIVE_HOURS),
    settings: Settings = Depends(get_settings),
    token_repo: TokenRepository = Depends(get_token_repository),
    client: DexcomApiClient = Depends(get_dexcom_client),
) -> Dict[str, Any]:
    """Provider events of the last N hours with their classification."""
    live = await _fetch_live_events(hours, settings, token_repo, client)
    events = []
    for raw in live["events"]:
        classified = classify_event(raw)
        events.append({
            **classified.model_dump(),
            "carbs_grams": classified.carbs_grams,
            "insulin_units": classified.insulin_units,
        })
    return {
        "hours": hours,
        "start": live["start"].isoformat(),
        "end": live["end"].isoformat(),
        "count": len(events),
        "events": events,
    }


@router.get("/events/live/summary")
async def live_event_summary(
    hours: int = Query(24, ge=1, le=MAX_LIVE_HOURS),
    settings: Settings = Depends(get_settings),
    token_repo: TokenRepository = Depends(get_token_repository),
    client: DexcomApiClient = Depends(get_dexcom_client),
) -> Dict[str, Any]:
    """Frequency map and carb/insulin counts over the live window."""
    live = await _fetch_live_events(hours, settings, token_repo, client)
    kinds = [classify_event(raw).kind for raw in live["events"]]
    return {
        "hours": hours,
        "total": len(kinds),
        "carb_events": kinds.count("carb"),
        "insulin_events": kinds.count("insulin"),
        "unclassified": kinds.count(None),
        "event_summary": summarize_events(live["events"]),
    }
