"""Supabase Postgres access for the sync engine.

The service writes with the service role but still scopes every
transaction to one user: ``app.current_user_id`` is set transaction-locally
so Row-Level Security policies on the activity and token tables see the
user being synced.

Uses ``asyncpg`` directly - the Supabase Python client can't set
transaction-local settings.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from nutrisync.config import Settings, get_settings

logger = logging.getLogger("nutrisync.db")

# Module-level connection pool - initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    if not s.supabase_db_url:
        raise RuntimeError("SUPABASE_DB_URL is required for the postgres persistence backend")
    _pool = await asyncpg.create_pool(
        s.supabase_db_url,
        min_size=1,
        max_size=10,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=1, max=10)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized - call init_pool() first")
    return _pool


def pool_initialized() -> bool:
    return _pool is not None


@asynccontextmanager
async def get_connection(
    user_id: uuid.UUID | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection inside a transaction scoped to ``user_id``.

    Usage::

        async with get_connection(user_id=user_id) as conn:
            row = await conn.fetchrow("SELECT * FROM google_fit_data WHERE date = $1", today)

    The setting is transaction-local, so it disappears when the connection
    goes back to the pool.
    """
    pool = get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if user_id:
                await conn.execute(
                    "SELECT set_config('app.current_user_id', $1, true)", str(user_id)
                )
            yield conn


async def ping() -> bool:
    """Lightweight connectivity probe for the health check."""
    async with get_pool().acquire() as conn:
        return await conn.fetchval("SELECT 1") == 1
