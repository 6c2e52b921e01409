"""Idempotent-write helpers for the sync persistence layer.

Re-running a sync for the same day must overwrite, never duplicate.

Dedup keys:
    - google_fit_data:     (user_id, date)        - UNIQUE constraint
    - google_fit_sessions: (user_id, session_id)  - UNIQUE constraint
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Iterator, TypeVar
from uuid import UUID

from nutrisync.wearables.base import ActivitySession

logger = logging.getLogger("nutrisync.wearables.sync.dedup")

T = TypeVar("T")


def snapshot_key(user_id: UUID, day: date) -> str:
    """Dedup key matching the UNIQUE (user_id, date) constraint on snapshots."""
    return f"{user_id}:{day.isoformat()}"


def session_key(user_id: UUID, session_id: str) -> str:
    """Dedup key matching the UNIQUE (user_id, session_id) constraint on sessions."""
    return f"{user_id}:{session_id}"


def dedupe_sessions(sessions: Iterable[ActivitySession]) -> list[ActivitySession]:
    """Collapse repeated session ids, last occurrence wins, first position kept."""
    by_id: dict[str, ActivitySession] = {}
    for session in sessions:
        if session.session_id in by_id:
            logger.debug("Duplicate session %s in batch; keeping latest", session.session_id)
        by_id[session.session_id] = session
    return list(by_id.values())


def chunked(items: list[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError("size must be >= 1")
    for i in range(0, len(items), size):
        yield items[i : i + size]


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes - safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in update_columns
        )
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
