"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from nutrisync.config import Settings, get_settings
from nutrisync.services.sync_engine import SyncEngine


async def require_internal_key(
    x_internal_key: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject calls that don't carry the shared internal API key.

    The sync API is called by NutriSync's own backend, never by browsers.
    """
    if not x_internal_key or not hmac.compare_digest(
        x_internal_key.encode(), settings.internal_api_key.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid or missing X-Internal-Key")


def get_engine(request: Request) -> SyncEngine:
    """Return the process-wide sync engine built in the app lifespan."""
    engine: SyncEngine | None = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not ready")
    return engine


# Annotated shortcuts for route signatures
Engine = Annotated[SyncEngine, Depends(get_engine)]
AppSettings = Annotated[Settings, Depends(get_settings)]
