"""API v1 routes."""

from fastapi import APIRouter

from clawchat.api.v1 import health, metrics, realtime

router = APIRouter()

router.include_router(health.router, tags=["health"])
router.include_router(metrics.router, tags=["metrics"])
router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])
