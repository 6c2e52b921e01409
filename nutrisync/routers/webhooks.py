"""Database change webhook.

Supabase posts a row-change event whenever an upstream activity table is
written outside of a sync (manual edits, other services).  The affected
user's downstream recomputes are scheduled through the debounced trigger
path so a burst of writes produces one recompute.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import date

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import ValidationError

from nutrisync.config import get_settings
from nutrisync.dependencies import Engine
from nutrisync.models.wearables import UpstreamChangeEvent

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("nutrisync.webhooks")


def _verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Check a hex HMAC-SHA256 of the raw body, optionally ``sha256=``-prefixed."""
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.removeprefix("sha256="))


def _affected(event: UpstreamChangeEvent) -> tuple[uuid.UUID | None, date | None]:
    """Pull user_id (and date, when the row has one) from the changed row."""
    row = event.record or event.old_record or {}
    try:
        user_id = uuid.UUID(str(row["user_id"]))
    except (KeyError, ValueError):
        return None, None
    day = None
    if row.get("date"):
        try:
            day = date.fromisoformat(str(row["date"])[:10])
        except ValueError:
            logger.debug("Ignoring unparseable date %r on %s", row["date"], event.table)
    return user_id, day


@router.post("/upstream-change", status_code=202)
async def upstream_change(
    request: Request,
    engine: Engine,
    x_webhook_signature: str = Header(..., alias="x-webhook-signature"),
) -> dict:
    """Handle an upstream row change.

    Events without a user_id are acknowledged and ignored.
    """
    settings = get_settings()
    body = await request.body()

    if not _verify_signature(body, x_webhook_signature, settings.webhook_secret):
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        event = UpstreamChangeEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=422, detail=f"Malformed event: {exc}") from exc

    user_id, day = _affected(event)
    logger.info("Upstream change: %s on %s (user=%s)", event.type, event.table, user_id)
    if user_id is None:
        return {"status": "ignored"}

    engine.triggers.on_upstream_change(user_id, day)
    return {"status": "scheduled"}
