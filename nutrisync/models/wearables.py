"""Pydantic models for the wearable sync API."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any

from pydantic import Field, ValidationInfo, field_validator

from nutrisync.models.base import NutriSyncBase
from nutrisync.wearables.base import DailySnapshot
from nutrisync.wearables.sync.scheduler import LifecycleEvent
from nutrisync.wearables.sync.state import SyncRunState


# ---------- Snapshots ----------

class SessionRef(NutriSyncBase):
    session_id: str
    activity_type: str
    name: str | None = None
    start_time: dt.datetime
    end_time: dt.datetime
    distance_m: float = Field(default=0.0, ge=0)


class DailySnapshotRead(NutriSyncBase):
    user_id: uuid.UUID
    date: dt.date
    sync_source: str
    steps: int
    calories_burned: float
    active_minutes: int
    distance_m: float
    heart_rate_avg: float | None = None
    sessions: list[SessionRef] = Field(default_factory=list)
    last_synced_at: dt.datetime

    @classmethod
    def from_snapshot(cls, snapshot: DailySnapshot) -> "DailySnapshotRead":
        return cls(
            user_id=snapshot.user_id,
            date=snapshot.date,
            sync_source=snapshot.sync_source.value,
            steps=snapshot.steps,
            calories_burned=snapshot.calories_burned,
            active_minutes=snapshot.active_minutes,
            distance_m=snapshot.distance_m,
            heart_rate_avg=snapshot.heart_rate_avg,
            sessions=[SessionRef(**s) for s in snapshot.sessions],
            last_synced_at=snapshot.last_synced_at,
        )


# ---------- Sync state ----------

class SyncStateRead(NutriSyncBase):
    is_syncing: bool
    last_sync: dt.datetime | None = None
    status: str
    consecutive_errors: int
    last_error_time: dt.datetime | None = None
    last_error: str | None = None
    reconnect_required: bool = False
    phase: str

    @classmethod
    def from_state(cls, state: SyncRunState) -> "SyncStateRead":
        return cls(**state.as_dict())


class SyncResponse(NutriSyncBase):
    snapshot: DailySnapshotRead | None = None
    state: SyncStateRead


class SyncRequest(NutriSyncBase):
    date: dt.date | None = None


class BackfillRequest(NutriSyncBase):
    days_back: int = Field(default=7, ge=0, le=30)


class BackfillResponse(NutriSyncBase):
    days_synced: int
    snapshots: list[DailySnapshotRead]


# ---------- Client events ----------

class LifecycleEventCreate(NutriSyncBase):
    event: LifecycleEvent


class LifecycleEventResponse(NutriSyncBase):
    event: LifecycleEvent
    synced: bool


# ---------- Device-pushed data ----------

class HealthStoreSession(NutriSyncBase):
    id: str = Field(min_length=1)
    activity_type: str = ""
    name: str | None = None
    description: str | None = None
    start_time: dt.datetime
    end_time: dt.datetime
    distance_m: float = Field(default=0.0, ge=0)

    @field_validator("end_time")
    @classmethod
    def _end_after_start(cls, v: dt.datetime, info: ValidationInfo) -> dt.datetime:
        start = info.data.get("start_time")
        if start is not None and v < start:
            raise ValueError("end_time must not be before start_time")
        return v


class HealthStorePayloadCreate(NutriSyncBase):
    date: dt.date
    steps: int = Field(default=0, ge=0, le=200000)
    calories_burned: float = Field(default=0.0, ge=0)
    active_minutes: int = Field(default=0, ge=0, le=1440)
    heart_rate_avg: float | None = Field(default=None, ge=20, le=300)
    sessions: list[HealthStoreSession] = Field(default_factory=list)


class UploadedTotalsCreate(NutriSyncBase):
    date: dt.date
    steps: int = Field(default=0, ge=0, le=200000)
    calories_burned: float = Field(default=0.0, ge=0)
    active_minutes: int = Field(default=0, ge=0, le=1440)
    distance_m: float = Field(default=0.0, ge=0)
    heart_rate_avg: float | None = Field(default=None, ge=20, le=300)
    sessions: list[SessionRef] = Field(default_factory=list)


# ---------- Credentials ----------

class CredentialGrantCreate(NutriSyncBase):
    """Tokens from a completed OAuth authorization."""

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int | None = Field(default=None, gt=0)


class ConnectionRead(NutriSyncBase):
    provider: str
    connected: bool
    expires_at: dt.datetime | None = None


# ---------- Webhooks ----------

class UpstreamChangeEvent(NutriSyncBase):
    """Supabase database webhook body."""

    type: str
    table: str
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None
