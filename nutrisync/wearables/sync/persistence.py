"""Persistence layer for synced activity data and provider credentials.

Two backends share one interface:

    PostgresSyncRepository  - asyncpg against the Supabase database
    InMemorySyncRepository  - process-local dicts (development, tests)

Writes are idempotent upserts keyed on the table's UNIQUE constraint (see
``dedup``).  Sessions are written in batches; a failed batch is logged and
later batches still run, so a partial failure leaves earlier batches
committed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Callable, Protocol
from uuid import UUID

import asyncpg

from nutrisync.services.supabase import get_connection
from nutrisync.wearables.base import (
    ActivitySession,
    Credential,
    DailySnapshot,
    SyncSource,
    from_epoch_ms,
    to_epoch_ms,
)
from nutrisync.wearables.config_loader import get_sync_config
from nutrisync.wearables.errors import PersistenceConflict
from nutrisync.wearables.sync.dedup import (
    build_upsert_query,
    chunked,
    dedupe_sessions,
    session_key,
    snapshot_key,
)

logger = logging.getLogger("nutrisync.wearables.sync.persistence")

SNAPSHOT_TABLE = "google_fit_data"
SESSION_TABLE = "google_fit_sessions"
TOKEN_TABLE = "google_tokens"
HEALTH_STORE_TABLE = "health_store_payloads"
CONNECTION_TABLE = "wearable_connections"

_SNAPSHOT_COLUMNS = [
    "user_id", "date", "steps", "calories_burned", "active_minutes", "distance",
    "heart_rate_avg", "sessions", "last_synced_at", "sync_source",
]
_SESSION_COLUMNS = [
    "user_id", "session_id", "start_time", "end_time", "activity_type", "name",
    "description", "distance", "source", "raw_data",
]
_TOKEN_COLUMNS = ["user_id", "provider", "access_token", "refresh_token", "expires_at"]
_HEALTH_STORE_COLUMNS = ["user_id", "date", "payload"]
_CONNECTION_COLUMNS = ["user_id", "provider", "connected"]


@dataclass
class SessionUpsertResult:
    written: int = 0
    failed_batches: int = 0

    @property
    def ok(self) -> bool:
        return self.failed_batches == 0


class SyncRepository(Protocol):
    """Everything the sync engine reads and writes."""

    async def upsert_snapshot(self, snapshot: DailySnapshot) -> None: ...

    async def upsert_sessions(
        self, user_id: UUID, sessions: list[ActivitySession]
    ) -> SessionUpsertResult: ...

    async def get_snapshot(self, user_id: UUID, day: date) -> DailySnapshot | None: ...

    async def save_health_store_payload(self, user_id: UUID, day: date, payload: dict) -> None: ...

    async def get_health_store_payload(self, user_id: UUID, day: date) -> dict | None: ...

    async def load_credential(self, user_id: UUID, provider: str) -> Credential | None: ...

    async def save_credential(self, credential: Credential) -> None: ...

    async def delete_credential(self, user_id: UUID, provider: str) -> None: ...

    async def set_connected(self, user_id: UUID, provider: str, connected: bool) -> None: ...

    async def is_connected(self, user_id: UUID, provider: str) -> bool: ...


def _batch_size() -> int:
    return get_sync_config().persistence.session_batch_size


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------


class PostgresSyncRepository:
    """asyncpg-backed repository.

    Args:
        connect:    Async context manager factory yielding a connection; the
                    RLS-aware ``services.supabase.get_connection`` by default.
        batch_size: Sessions per upsert batch.
    """

    def __init__(
        self,
        connect: Callable[..., Any] = get_connection,
        batch_size: int | None = None,
    ) -> None:
        self._connect = connect
        self._batch_size = batch_size or _batch_size()
        self._snapshot_sql = build_upsert_query(SNAPSHOT_TABLE, _SNAPSHOT_COLUMNS, ["user_id", "date"])
        self._session_sql = build_upsert_query(
            SESSION_TABLE, _SESSION_COLUMNS, ["user_id", "session_id"]
        )
        self._token_sql = build_upsert_query(TOKEN_TABLE, _TOKEN_COLUMNS, ["user_id", "provider"])
        self._health_store_sql = build_upsert_query(
            HEALTH_STORE_TABLE, _HEALTH_STORE_COLUMNS, ["user_id", "date"]
        )
        self._connection_sql = build_upsert_query(
            CONNECTION_TABLE, _CONNECTION_COLUMNS, ["user_id", "provider"]
        )

    # ── Activity data ──

    async def upsert_snapshot(self, snapshot: DailySnapshot) -> None:
        """Insert or overwrite the (user_id, date) snapshot row.

        Raises:
            PersistenceConflict: If the write fails.
        """
        row = (
            snapshot.user_id,
            snapshot.date,
            snapshot.steps,
            snapshot.calories_burned,
            snapshot.active_minutes,
            snapshot.distance_m,
            snapshot.heart_rate_avg,
            json.dumps(snapshot.sessions, default=str),
            snapshot.last_synced_at,
            snapshot.sync_source.value,
        )
        try:
            async with self._connect(user_id=snapshot.user_id) as conn:
                await conn.execute(self._snapshot_sql, *row)
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceConflict(SNAPSHOT_TABLE, str(exc)) from exc
        logger.debug("Upserted snapshot %s", snapshot_key(snapshot.user_id, snapshot.date))

    async def upsert_sessions(
        self, user_id: UUID, sessions: list[ActivitySession]
    ) -> SessionUpsertResult:
        """Upsert sessions in batches; failed batches are logged and skipped."""
        result = SessionUpsertResult()
        unique = dedupe_sessions(sessions)
        for batch_no, batch in enumerate(chunked(unique, self._batch_size), start=1):
            rows = [
                (
                    user_id,
                    s.session_id,
                    s.start_time,
                    s.end_time,
                    s.activity_type,
                    s.name,
                    s.description,
                    s.distance_m,
                    s.source.value,
                    json.dumps(s.raw, default=str),
                )
                for s in batch
            ]
            try:
                async with self._connect(user_id=user_id) as conn:
                    await conn.executemany(self._session_sql, rows)
            except (asyncpg.PostgresError, OSError) as exc:
                result.failed_batches += 1
                logger.error(
                    "%s (batch %d, %d sessions)",
                    PersistenceConflict(SESSION_TABLE, str(exc)), batch_no, len(batch),
                )
                continue
            result.written += len(batch)
        return result

    async def get_snapshot(self, user_id: UUID, day: date) -> DailySnapshot | None:
        async with self._connect(user_id=user_id) as conn:
            row = await conn.fetchrow(
                f"SELECT {', '.join(_SNAPSHOT_COLUMNS)} FROM {SNAPSHOT_TABLE} "
                "WHERE user_id = $1 AND date = $2",
                user_id,
                day,
            )
        if row is None:
            return None
        sessions = row["sessions"]
        if isinstance(sessions, str):
            sessions = json.loads(sessions)
        return DailySnapshot(
            user_id=row["user_id"],
            date=row["date"],
            sync_source=SyncSource(row["sync_source"]),
            steps=row["steps"] or 0,
            calories_burned=float(row["calories_burned"] or 0.0),
            active_minutes=row["active_minutes"] or 0,
            distance_m=float(row["distance"] or 0.0),
            heart_rate_avg=row["heart_rate_avg"],
            sessions=sessions or [],
            last_synced_at=row["last_synced_at"],
        )

    # ── Native health store payloads ──

    async def save_health_store_payload(self, user_id: UUID, day: date, payload: dict) -> None:
        async with self._connect(user_id=user_id) as conn:
            await conn.execute(self._health_store_sql, user_id, day, json.dumps(payload, default=str))

    async def get_health_store_payload(self, user_id: UUID, day: date) -> dict | None:
        async with self._connect(user_id=user_id) as conn:
            value = await conn.fetchval(
                f"SELECT payload FROM {HEALTH_STORE_TABLE} WHERE user_id = $1 AND date = $2",
                user_id,
                day,
            )
        if value is None:
            return None
        return json.loads(value) if isinstance(value, str) else dict(value)

    # ── Credentials ──

    async def load_credential(self, user_id: UUID, provider: str) -> Credential | None:
        async with self._connect(user_id=user_id) as conn:
            row = await conn.fetchrow(
                f"SELECT access_token, refresh_token, expires_at FROM {TOKEN_TABLE} "
                "WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )
        if row is None:
            return None
        expires_at = row["expires_at"]
        access_token = row["access_token"]
        return Credential(
            user_id=user_id,
            provider=provider,
            access_token=access_token if expires_at is not None else None,
            refresh_token=row["refresh_token"],
            expires_at_ms=to_epoch_ms(expires_at) if expires_at is not None else None,
        )

    async def save_credential(self, credential: Credential) -> None:
        expires_at = (
            from_epoch_ms(credential.expires_at_ms) if credential.expires_at_ms is not None else None
        )
        async with self._connect(user_id=credential.user_id) as conn:
            await conn.execute(
                self._token_sql,
                credential.user_id,
                credential.provider,
                credential.access_token,
                credential.refresh_token,
                expires_at,
            )

    async def delete_credential(self, user_id: UUID, provider: str) -> None:
        async with self._connect(user_id=user_id) as conn:
            await conn.execute(
                f"DELETE FROM {TOKEN_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )

    # ── Connected-state flag ──

    async def set_connected(self, user_id: UUID, provider: str, connected: bool) -> None:
        async with self._connect(user_id=user_id) as conn:
            await conn.execute(self._connection_sql, user_id, provider, connected)

    async def is_connected(self, user_id: UUID, provider: str) -> bool:
        async with self._connect(user_id=user_id) as conn:
            value = await conn.fetchval(
                f"SELECT connected FROM {CONNECTION_TABLE} WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )
        return bool(value)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySyncRepository:
    """Dict-backed repository with the same upsert semantics as Postgres."""

    def __init__(self, batch_size: int | None = None) -> None:
        self._batch_size = batch_size or _batch_size()
        self.snapshots: dict[str, DailySnapshot] = {}
        self.sessions: dict[str, ActivitySession] = {}
        self.health_store: dict[str, dict] = {}
        self.credentials: dict[tuple[UUID, str], Credential] = {}
        self.connected: dict[tuple[UUID, str], bool] = {}
        #: Number of session batches written, for observing batching.
        self.session_batches = 0

    async def upsert_snapshot(self, snapshot: DailySnapshot) -> None:
        self.snapshots[snapshot_key(snapshot.user_id, snapshot.date)] = replace(
            snapshot, sessions=list(snapshot.sessions)
        )

    async def upsert_sessions(
        self, user_id: UUID, sessions: list[ActivitySession]
    ) -> SessionUpsertResult:
        result = SessionUpsertResult()
        for batch in chunked(dedupe_sessions(sessions), self._batch_size):
            for s in batch:
                self.sessions[session_key(user_id, s.session_id)] = replace(s)
            self.session_batches += 1
            result.written += len(batch)
        return result

    async def get_snapshot(self, user_id: UUID, day: date) -> DailySnapshot | None:
        snapshot = self.snapshots.get(snapshot_key(user_id, day))
        return replace(snapshot, sessions=list(snapshot.sessions)) if snapshot else None

    async def save_health_store_payload(self, user_id: UUID, day: date, payload: dict) -> None:
        self.health_store[snapshot_key(user_id, day)] = dict(payload)

    async def get_health_store_payload(self, user_id: UUID, day: date) -> dict | None:
        payload = self.health_store.get(snapshot_key(user_id, day))
        return dict(payload) if payload is not None else None

    async def load_credential(self, user_id: UUID, provider: str) -> Credential | None:
        cred = self.credentials.get((user_id, provider))
        return replace(cred) if cred else None

    async def save_credential(self, credential: Credential) -> None:
        self.credentials[(credential.user_id, credential.provider)] = replace(credential)

    async def delete_credential(self, user_id: UUID, provider: str) -> None:
        self.credentials.pop((user_id, provider), None)

    async def set_connected(self, user_id: UUID, provider: str, connected: bool) -> None:
        self.connected[(user_id, provider)] = connected

    async def is_connected(self, user_id: UUID, provider: str) -> bool:
        return self.connected.get((user_id, provider), False)

    def sessions_for(self, user_id: UUID) -> list[ActivitySession]:
        prefix = f"{user_id}:"
        return [s for k, s in self.sessions.items() if k.startswith(prefix)]


def build_repository(backend: str) -> SyncRepository:
    """Return the repository for a ``persistence_backend`` setting value."""
    if backend == "postgres":
        return PostgresSyncRepository()
    if backend == "memory":
        return InMemorySyncRepository()
    raise ValueError(f"Unknown persistence backend {backend!r} (expected 'postgres' or 'memory')")
