"""Main entry point for the Glucose Sync Service."""

import logging
import traceback
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from glucose_sync.api.dexcom import router as dexcom_router
from glucose_sync.api.health import router as health_router
from glucose_sync.api.insights import router as insights_router
from glucose_sync.api.middleware import MetricsAuthMiddleware, RequestIDMiddleware, RequestLoggingMiddleware
from glucose_sync.api.readings import router as readings_router
from glucose_sync.data.database import close_database, create_schema
from glucose_sync.sync.job import run_sync_request
from glucose_sync.sync.worker import SyncWorker
from glucose_sync.utils.config import Settings, get_settings, report_missing_settings
from glucose_sync.utils.logging_utils import redact_sensitive_data, setup_json_logging

settings = get_settings()
setup_json_logging(settings.log_level, settings.log_output, settings.log_file_path)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """
    Application startup and shutdown events.

    Args:
        app: The FastAPI application instance

    Yields:
        None
    """
    app_settings: Settings = app.state.settings
    logger.info("Starting Glucose Sync Service...")
    report_missing_settings(app_settings)

    # Create the readings table if it doesn't exist (outside production)
    if app_settings.database_url and not app_settings.is_production:
        try:
            await create_schema()
        except Exception as e:
            logger.error(f"Error creating database schema: {e}", extra={"log_type": "db_schema"})

    worker = SyncWorker(
        runner=partial(run_sync_request, settings=app_settings),
        poll_interval_seconds=app_settings.poll_interval_seconds,
    )
    app.state.sync_worker = worker
    await worker.start()

    yield

    logger.info("Shutting down Glucose Sync Service...")
    await worker.stop()
    await close_database()


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured FastAPI application
    """
    app_settings = app_settings or settings
    app = FastAPI(
        title="Glucose Sync Service",
        description="Glucose readings API with Dexcom CGM synchronization",
        version=app_settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    # Added last so it runs first and the logging middleware sees the ID
    app.add_middleware(RequestIDMiddleware)

    app.include_router(health_router)
    app.include_router(readings_router, prefix="/api")
    app.include_router(insights_router, prefix="/api/insights")
    app.include_router(dexcom_router, prefix="/api/dexcom")

    # Prometheus metrics, behind basic auth when METRICS_USER is set
    metrics_pass = app_settings.metrics_pass.get_secret_value() if app_settings.metrics_pass else None
    app.mount("/metrics", MetricsAuthMiddleware(make_asgi_app(), app_settings.metrics_user, metrics_pass))

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"404 {request.method} {request.url.path}", extra={"log_type": "not_found"})
        return JSONResponse(
            status_code=404,
            content={
                "error": "Not Found",
                "detail": exc.detail,
                "path": request.url.path,
                "method": request.method,
            },
        )

    # Global exception handler; stack traces only outside production
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled error: {exc}",
            extra={"log_type": "unhandled_error", "path": request.url.path},
            exc_info=exc,
        )
        content = {"error": "Server Error", "message": str(exc) or "An unknown error occurred"}
        if not app_settings.is_production:
            content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=redact_sensitive_data(content))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "glucose_sync.main:app",
        host="0.0.0.0",
        port=4000,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
    )
