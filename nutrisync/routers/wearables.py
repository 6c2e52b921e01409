"""Wearable sync endpoints: run a sync, report client events, accept device data."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from nutrisync.config import get_settings
from nutrisync.dependencies import Engine, require_internal_key
from nutrisync.models.base import StatusResponse
from nutrisync.models.wearables import (
    BackfillRequest,
    BackfillResponse,
    ConnectionRead,
    CredentialGrantCreate,
    DailySnapshotRead,
    HealthStorePayloadCreate,
    LifecycleEventCreate,
    LifecycleEventResponse,
    SyncRequest,
    SyncResponse,
    SyncStateRead,
    UploadedTotalsCreate,
)
from nutrisync.wearables.base import SyncSource, TokenGrant, from_epoch_ms
from nutrisync.wearables.errors import InvalidUploadFile

router = APIRouter(
    prefix="/wearables",
    tags=["wearables"],
    dependencies=[Depends(require_internal_key)],
)

_PRIMARY = SyncSource.PRIMARY_PROVIDER.value


# ---------- Sync ----------

@router.post("/{user_id}/sync", response_model=SyncResponse)
async def sync_now(user_id: uuid.UUID, engine: Engine, body: SyncRequest | None = None) -> Any:
    engine.scheduler.register(user_id)
    snapshot = await engine.orchestrator.sync_now(user_id, body.date if body else None)
    return SyncResponse(
        snapshot=DailySnapshotRead.from_snapshot(snapshot) if snapshot else None,
        state=SyncStateRead.from_state(engine.orchestrator.status(user_id)),
    )


@router.get("/{user_id}/sync", response_model=SyncStateRead)
async def sync_status(user_id: uuid.UUID, engine: Engine) -> Any:
    return SyncStateRead.from_state(engine.orchestrator.status(user_id))


@router.post("/{user_id}/backfill", response_model=BackfillResponse)
async def backfill(user_id: uuid.UUID, engine: Engine, body: BackfillRequest) -> Any:
    snapshots = await engine.orchestrator.sync_range(user_id, body.days_back)
    return BackfillResponse(
        days_synced=len(snapshots),
        snapshots=[DailySnapshotRead.from_snapshot(s) for s in snapshots],
    )


@router.get("/{user_id}/snapshots/{day}", response_model=DailySnapshotRead)
async def get_snapshot(user_id: uuid.UUID, day: date, engine: Engine) -> Any:
    snapshot = await engine.repository.get_snapshot(user_id, day)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No snapshot for this day")
    return DailySnapshotRead.from_snapshot(snapshot)


# ---------- Client lifecycle ----------

@router.post("/{user_id}/events", response_model=LifecycleEventResponse)
async def lifecycle_event(user_id: uuid.UUID, engine: Engine, body: LifecycleEventCreate) -> Any:
    synced = await engine.scheduler.handle_event(user_id, body.event)
    return LifecycleEventResponse(event=body.event, synced=synced)


@router.post("/{user_id}/signout", response_model=StatusResponse)
async def signout(user_id: uuid.UUID, engine: Engine) -> Any:
    engine.scheduler.unregister(user_id)
    return StatusResponse()


# ---------- Device data ----------

@router.post("/{user_id}/health-store", response_model=StatusResponse, status_code=202)
async def push_health_store(
    user_id: uuid.UUID, engine: Engine, body: HealthStorePayloadCreate
) -> Any:
    payload = body.model_dump(mode="json", exclude={"date"})
    await engine.repository.save_health_store_payload(user_id, body.date, payload)
    return StatusResponse(status="accepted")


@router.post("/{user_id}/uploads", response_model=DailySnapshotRead, status_code=201)
async def upload_totals(user_id: uuid.UUID, engine: Engine, body: UploadedTotalsCreate) -> Any:
    totals = body.model_dump(mode="json", exclude={"date"})
    snapshot = await engine.uploaded_file.ingest(user_id, body.date, totals)
    engine.triggers.on_sync_success(user_id, body.date)
    return DailySnapshotRead.from_snapshot(snapshot)


@router.post("/{user_id}/uploads/fit", response_model=DailySnapshotRead, status_code=201)
async def upload_fit_file(
    user_id: uuid.UUID,
    engine: Engine,
    file: UploadFile = File(...),
) -> Any:
    """Store a device ``.fit`` activity file as the day's snapshot.

    The day is taken from the first session in the file, in the user's
    timezone.  Max file size: ``max_upload_size_bytes`` (10 MB by default).
    """
    settings = get_settings()

    filename = file.filename or "upload"
    if not filename.lower().endswith(".fit"):
        raise HTTPException(status_code=400, detail="Only .fit files are accepted")

    file_data = await file.read()
    if len(file_data) > settings.max_upload_size_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Max size: {settings.max_upload_size_bytes // (1024*1024)} MB",
        )

    try:
        snapshot = await engine.uploaded_file.ingest_fit(
            user_id, file_data, engine.orchestrator.timezone(user_id)
        )
    except InvalidUploadFile as exc:
        raise HTTPException(status_code=400, detail=exc.reason) from exc

    engine.triggers.on_sync_success(user_id, snapshot.date)
    return DailySnapshotRead.from_snapshot(snapshot)


# ---------- Provider connection ----------

@router.put("/{user_id}/connections/google-fit", response_model=ConnectionRead)
async def connect_google_fit(
    user_id: uuid.UUID, engine: Engine, body: CredentialGrantCreate
) -> Any:
    grant = TokenGrant(
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_in_s=body.expires_in,
    )
    credential = await engine.tokens.connect(user_id, _PRIMARY, grant)
    await engine.orchestrator.mark_connected(user_id, _PRIMARY)
    engine.scheduler.register(user_id)
    return ConnectionRead(
        provider=_PRIMARY,
        connected=True,
        expires_at=from_epoch_ms(credential.expires_at_ms) if credential.expires_at_ms else None,
    )


@router.get("/{user_id}/connections/google-fit", response_model=ConnectionRead)
async def google_fit_connection(user_id: uuid.UUID, engine: Engine) -> Any:
    credential = await engine.credentials.get(user_id, _PRIMARY)
    connected = await engine.repository.is_connected(user_id, _PRIMARY)
    return ConnectionRead(
        provider=_PRIMARY,
        connected=connected and credential is not None,
        expires_at=(
            from_epoch_ms(credential.expires_at_ms)
            if credential and credential.expires_at_ms
            else None
        ),
    )


@router.delete("/{user_id}/connections/google-fit", response_model=StatusResponse)
async def disconnect_google_fit(user_id: uuid.UUID, engine: Engine) -> Any:
    await engine.tokens.disconnect(user_id, _PRIMARY)
    await engine.repository.set_connected(user_id, _PRIMARY, False)
    return StatusResponse()
