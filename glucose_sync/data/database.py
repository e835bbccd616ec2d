"""Postgres connection management and the readings table definition.

The engine is created lazily so it is bound to the running event loop.
"""

import logging
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from glucose_sync.utils.config import get_settings

logger = logging.getLogger(__name__)

metadata = MetaData()

glucose_readings = Table(
    "glucose_readings",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("glucose_mgdl", Numeric, nullable=True),
    Column("measured_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("source", String(64), nullable=False, server_default="manual"),
    Column("external_id", String(255), nullable=True),
    Column("notes", Text, nullable=True),
    Column("meal_tag", String(64), nullable=True),
    Column("carbs_grams", Numeric, nullable=True),
    Column("insulin_units", Numeric, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    UniqueConstraint("measured_at", "source", name="uq_glucose_readings_measured_at_source"),
)

_engine: Optional[AsyncEngine] = None


class DatabaseNotConfiguredError(RuntimeError):
    """Raised when a query is attempted without DATABASE_URL."""


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: Engine bound to the asyncpg driver

    Raises:
        DatabaseNotConfiguredError: If DATABASE_URL is not set
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        url = settings.async_database_url
        if not url:
            raise DatabaseNotConfiguredError("DATABASE_URL is not set")
        _engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _engine


async def create_schema() -> None:
    """Create the readings table and its unique constraint if absent."""
    async with get_engine().begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Database schema ensured", extra={"log_type": "db_schema"})


async def ping_database() -> None:
    """Run SELECT 1; any failure propagates."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_database() -> None:
    """Close the database engine and all connections."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
