"""Sync infrastructure for NutriSync.

Modules:
    orchestrator - sync_now(): breaker, source priority, auth retry, persist
    state        - Per-user SyncRunState table
    persistence  - Postgres / in-memory repositories (idempotent upserts)
    dedup        - Upsert query builder, dedup keys, batching
    triggers     - Fire-and-forget downstream recomputes (debounced)
    scheduler    - Interval sync, token revalidation, lifecycle events
    backfill     - Historical resync through the source priority
"""
