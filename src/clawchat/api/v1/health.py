"""
Health check endpoints.

Provides endpoints for monitoring application health and readiness.
"""

import redis.asyncio as redis
from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from clawchat.api.deps import DbSession, Hub
from clawchat.core.config import settings
from clawchat.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    environment: str
    version: str


class LivenessResponse(BaseModel):
    """Liveness check response model."""

    status: str


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    status: str
    database: str
    redis: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.

    Returns application status without checking dependencies.
    """
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        version=settings.app_version,
    )


@router.get("/live", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    """Liveness probe: the process is serving requests."""
    return LivenessResponse(status="alive")


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(db: DbSession) -> ReadinessResponse:
    """
    Readiness check endpoint.

    Checks that the database and Redis are reachable. Redis only backs the
    token blacklist, so it is not checked when the blacklist is disabled.
    """
    try:
        await db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Database readiness check failed: {e}")
        return ReadinessResponse(status="unhealthy", database=f"error: {e}", redis="unknown")

    if not settings.token_blacklist_enabled:
        return ReadinessResponse(status="ready", database=db_status, redis="disabled")

    try:
        redis_client = redis.from_url(
            settings.redis_url,
            max_connections=1,
            decode_responses=True,
        )
        await redis_client.ping()
        await redis_client.aclose()
        redis_status = "connected"
    except Exception as e:
        logger.warning(f"Redis readiness check failed: {e}")
        return ReadinessResponse(status="unhealthy", database=db_status, redis=f"error: {e}")

    return ReadinessResponse(status="ready", database=db_status, redis=redis_status)


@router.get("/info")
async def app_info(hub: Hub) -> dict:
    """
    Application information endpoint.

    Returns non-sensitive configuration information.
    """
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "features": {
            "websockets_enabled": settings.enable_websockets,
            "token_blacklist_enabled": settings.token_blacklist_enabled,
            "metrics_enabled": settings.prometheus_enabled,
        },
        "bot_mention_handles": list(hub.broadcaster.mention_handles),
    }
