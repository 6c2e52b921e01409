"""NutriSync Sync API - FastAPI application entry point.

Run locally:
    uvicorn nutrisync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nutrisync.config import get_settings
from nutrisync.routers import health, wearables, webhooks
from nutrisync.services.supabase import close_pool, init_pool
from nutrisync.services.sync_engine import build_sync_engine

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("nutrisync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting NutriSync Sync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    if settings.persistence_backend == "postgres":
        await init_pool(settings)

    engine = build_sync_engine(settings)
    app.state.sync_engine = engine
    if settings.background_sync_enabled:
        engine.scheduler.start()

    yield

    await engine.close()
    await close_pool()
    logger.info("NutriSync Sync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="NutriSync Sync API",
        description=(
            "Wearable health-data synchronization - OAuth token lifecycle, "
            "daily activity snapshots, exercise session classification."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix - always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(wearables.router, prefix=v1_prefix)

    return app


app = create_app()
