"""Health check endpoint - public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import asyncpg
from fastapi import APIRouter

from nutrisync.config import get_settings
from nutrisync.services.supabase import ping

router = APIRouter(tags=["system"])
logger = logging.getLogger("nutrisync.health")


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    With the postgres backend it also performs a lightweight DB check.
    """
    settings = get_settings()
    if settings.persistence_backend != "postgres":
        database = "not_used"
    else:
        try:
            database = "connected" if await ping() else "unreachable"
        except (RuntimeError, OSError, asyncpg.PostgresError) as exc:
            logger.warning("Health check DB probe failed: %s", exc)
            database = "unreachable"

    return {
        "status": "degraded" if database == "unreachable" else "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "persistence": settings.persistence_backend,
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
