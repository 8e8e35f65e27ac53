"""
Database session management for ClawChat.

Provides async database sessions using SQLAlchemy 2.0 async features.
"""

import ssl
from collections.abc import AsyncGenerator
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from clawchat.core.config import settings
from clawchat.core.logging import get_logger

logger = get_logger(__name__)

# libpq parameters that asyncpg rejects as query arguments
_LIBPQ_PARAMS = {
    "sslmode",
    "channel_binding",
    "sslcert",
    "sslkey",
    "sslrootcert",
    "target_session_attrs",
    "application_name",
}

def _prepare_asyncpg_url(database_url: str) -> tuple[str, dict[str, Any]]:
    """Strip libpq-only query parameters, turning ``sslmode`` into connect_args."""
    parsed = urlparse(database_url)
    query_params = parse_qs(parsed.query)
    connect_args: dict[str, Any] = {}

    sslmode = query_params.get("sslmode", [None])[0]
    for param in _LIBPQ_PARAMS:
        query_params.pop(param, None)

    if sslmode in ("require", "verify-ca", "verify-full"):
        ssl_context = ssl.create_default_context()
        if sslmode == "require":
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context

    clean_url = urlunparse(parsed._replace(query=urlencode(query_params, doseq=True)))
    return clean_url, connect_args

def create_engine() -> AsyncEngine:
    """
    Create async database engine.

    Uses connection pooling outside tests and NullPool for the test environment.
    """
    database_url, connect_args = _prepare_asyncpg_url(settings.database_url)

    engine_kwargs: dict[str, Any] = {
        "echo": settings.debug and settings.environment == "development",
    }
    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    if settings.environment == "test":
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_size"] = settings.db_pool_size
        engine_kwargs["max_overflow"] = settings.db_max_overflow
        engine_kwargs["pool_timeout"] = settings.db_pool_timeout
        engine_kwargs["pool_pre_ping"] = True

    return create_async_engine(database_url, **engine_kwargs)

engine = create_engine()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Verify database connectivity at startup."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection established")
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        raise

async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
    logger.info("Database connections closed")
