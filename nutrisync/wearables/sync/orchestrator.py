"""Sync orchestrator: one entry point that brings a user's day up to date.

Flow for one attempt (strictly sequential within a user):

    circuit breaker → pick source → token → fetch → classify → persist → trigger

Sources are tried in priority order:

    1. UPLOADED_FILE       - an uploaded snapshot for the day short-circuits
                             everything, no network calls.
    2. PRIMARY_PROVIDER    - Google Fit, when a credential is stored.
    3. SECONDARY_PROVIDER  - device health store payload, only when the
                             primary yields nothing.
    4. MANUAL              - never fetched; the attempt is a no-op.

A user has at most one attempt in flight.  A second ``sync_now`` while one
runs joins it and gets the same result instead of starting another fetch.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable
from uuid import UUID
from zoneinfo import ZoneInfo

from nutrisync.wearables.adapters.google_fit import GoogleFitAdapter
from nutrisync.wearables.adapters.health_store import HealthStoreAdapter
from nutrisync.wearables.adapters.uploaded_file import UploadedFileAdapter
from nutrisync.wearables.base import (
    ActivitySession,
    DailySnapshot,
    DayWindow,
    ProviderFetcher,
    SyncSource,
    utc_now,
)
from nutrisync.wearables.classifier import classify, display_name, session_distances
from nutrisync.wearables.config_loader import SyncConfig, get_sync_config
from nutrisync.wearables.errors import AuthExpired, PermanentAuthFailure, SyncError
from nutrisync.wearables.sync.persistence import SyncRepository
from nutrisync.wearables.sync.state import SyncPhase, SyncRunState, SyncStateTable, SyncStatus
from nutrisync.wearables.sync.triggers import TriggerDispatcher
from nutrisync.wearables.tokens import TokenLifecycleManager

logger = logging.getLogger("nutrisync.wearables.sync.orchestrator")

#: Selection order.  Every SyncSource member appears exactly once.
SOURCE_PRIORITY: tuple[SyncSource, ...] = (
    SyncSource.UPLOADED_FILE,
    SyncSource.PRIMARY_PROVIDER,
    SyncSource.SECONDARY_PROVIDER,
    SyncSource.MANUAL,
)


class SyncOrchestrator:
    """Runs sync attempts and owns every user's SyncRunState.

    Usage::

        orchestrator = SyncOrchestrator(tokens, repository, google_fit,
                                        health_store, uploaded_file, triggers)
        snapshot = await orchestrator.sync_now(user_id)
        state = orchestrator.status(user_id)
    """

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        repository: SyncRepository,
        primary: GoogleFitAdapter,
        secondary: HealthStoreAdapter,
        uploaded: UploadedFileAdapter,
        triggers: TriggerDispatcher | None = None,
        config: SyncConfig | None = None,
        states: SyncStateTable | None = None,
        clock: Callable[[], datetime] = utc_now,
        timezone_for: Callable[[UUID], tzinfo] | None = None,
    ) -> None:
        self._tokens = tokens
        self._repository = repository
        self._primary = primary
        self._secondary = secondary
        self._uploaded = uploaded
        self._triggers = triggers
        self._config = config or get_sync_config()
        self._states = states or SyncStateTable()
        self._clock = clock
        default_tz = ZoneInfo(self._config.sync.default_timezone)
        self._timezone_for = timezone_for or (lambda _user_id: default_tz)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def states(self) -> SyncStateTable:
        return self._states

    def status(self, user_id: UUID) -> SyncRunState:
        return self._states.get(user_id)

    def evict_user(self, user_id: UUID) -> None:
        """Forget a signed-out user's run state and cached credentials."""
        self._states.evict(user_id)
        self._tokens.store.evict_user(user_id)
        logger.info("Evicted sync state for user %s", user_id)

    def timezone(self, user_id: UUID) -> tzinfo:
        return self._timezone_for(user_id)

    def today(self, user_id: UUID) -> date:
        return self._clock().astimezone(self._timezone_for(user_id)).date()

    def circuit_open(self, state: SyncRunState) -> bool:
        """True while repeated failures keep the breaker open."""
        cb = self._config.circuit_breaker
        if state.consecutive_errors < cb.max_consecutive_errors or state.last_error_time is None:
            return False
        return self._clock() - state.last_error_time < timedelta(seconds=cb.cooldown_seconds)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def sync_now(self, user_id: UUID, day: date | None = None) -> DailySnapshot | None:
        """Bring today's (or ``day``'s) snapshot up to date.

        Returns the persisted snapshot, or None when the breaker is open, no
        source has data, or the attempt failed.  Failure details land on
        ``status(user_id)``.
        """
        state = self._states.get(user_id)

        if state.is_syncing and state.inflight is not None:
            logger.debug("Sync already running for user %s; joining it", user_id)
            return await asyncio.shield(state.inflight)

        if self.circuit_open(state):
            logger.info(
                "Circuit open for user %s (%d consecutive errors); skipping sync",
                user_id, state.consecutive_errors,
            )
            return None

        # Flag and task are set before the first suspension point.
        state.is_syncing = True
        state.phase = SyncPhase.FETCHING
        task = asyncio.ensure_future(self._run(user_id, state, day))
        state.inflight = task
        return await asyncio.shield(task)

    async def sync_range(self, user_id: UUID, days_back: int) -> list[DailySnapshot]:
        """Resync today and the previous ``days_back`` days, newest first.

        Runs through ``HistoryBackfill``, which holds the user's sync slot
        for the whole run.
        """
        from nutrisync.wearables.sync.backfill import HistoryBackfill

        snapshots: list[DailySnapshot] = []
        backfill = HistoryBackfill(self, self._config.sync.history_day_delay_ms / 1000.0)
        async for progress in backfill.run(user_id, days_back):
            if progress.snapshot is not None:
                snapshots.append(progress.snapshot)
        return snapshots

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    async def _run(self, user_id: UUID, state: SyncRunState, day: date | None) -> DailySnapshot | None:
        try:
            snapshot, fetched = await self._attempt(user_id, state, day or self.today(user_id))
        except SyncError as exc:
            await self._record_failure(user_id, state, exc)
            return None
        except Exception as exc:
            await self._record_failure(user_id, state, SyncError("sync", f"Unexpected error: {exc}"))
            raise
        else:
            if fetched:
                self._record_success(state)
            else:
                state.phase = SyncPhase.DONE
            return snapshot
        finally:
            state.is_syncing = False
            state.inflight = None

    async def resync_day(self, user_id: UUID, day: date) -> DailySnapshot | None:
        """Run one day of a historical resync.

        Uses the same source priority and outcome bookkeeping as ``sync_now``
        but none of its slot handling: the caller must already hold the
        user's slot (``is_syncing``).  A ``SyncError`` is recorded on the run
        state and then re-raised.
        """
        state = self._states.get(user_id)
        state.phase = SyncPhase.FETCHING
        try:
            snapshot, fetched = await self._attempt(user_id, state, day)
        except SyncError as exc:
            await self._record_failure(user_id, state, exc)
            raise
        except Exception as exc:
            await self._record_failure(user_id, state, SyncError("sync", f"Unexpected error: {exc}"))
            raise
        if fetched:
            self._record_success(state)
        else:
            state.phase = SyncPhase.DONE
        return snapshot

    async def _attempt(
        self, user_id: UUID, state: SyncRunState, day: date
    ) -> tuple[DailySnapshot | None, bool]:
        """Try each source in priority order.

        Returns (snapshot, fetched).  ``fetched`` is False when no source had
        anything to offer.
        """
        for source in SOURCE_PRIORITY:
            if source is SyncSource.UPLOADED_FILE:
                uploaded = await self._uploaded.existing_snapshot(user_id, day)
                if uploaded is not None:
                    logger.info("Using uploaded-file snapshot for user %s on %s", user_id, day)
                    return uploaded, True
            elif source is SyncSource.PRIMARY_PROVIDER:
                snapshot = await self.sync_primary_day(user_id, day, state)
                if snapshot is not None:
                    return snapshot, True
            elif source is SyncSource.SECONDARY_PROVIDER:
                snapshot = await self._sync_from(self._secondary, user_id, day, token=None)
                if snapshot is not None:
                    return snapshot, True
            elif source is SyncSource.MANUAL:
                logger.debug("No syncable source for user %s on %s", user_id, day)
            else:
                raise ValueError(f"Unhandled sync source {source!r}")
        return None, False

    async def sync_primary_day(
        self, user_id: UUID, day: date, state: SyncRunState | None = None
    ) -> DailySnapshot | None:
        """Fetch and persist one day from the primary provider.

        Returns None when no credential is stored.  An ``AuthExpired`` is
        answered with one forced refresh and one retry of the same fetch.
        """
        provider = self._primary.SOURCE.value
        if not await self._tokens.store.has_credential(user_id, provider):
            return None

        token = await self._tokens.get_access_token(user_id, provider)
        try:
            return await self._sync_from(self._primary, user_id, day, token)
        except AuthExpired:
            logger.info("%s rejected token for user %s; refreshing once", self._primary.DISPLAY_NAME, user_id)
            if state is not None:
                state.phase = SyncPhase.RETRYING
            token = await self._tokens.get_access_token(user_id, provider, force_refresh=True)
            return await self._sync_from(self._primary, user_id, day, token)

    async def _sync_from(
        self, fetcher: ProviderFetcher, user_id: UUID, day: date, token: str | None
    ) -> DailySnapshot | None:
        window = DayWindow.for_local_day(day, self._timezone_for(user_id))
        raw = await fetcher.fetch_day(user_id, window, token)
        if raw is None:
            return None

        kept = classify(raw.sessions, self._config.classifier)
        distances = await session_distances(
            kept,
            lambda s: fetcher.session_distance(s, token),
            delay_s=self._config.sync.session_distance_delay_ms / 1000.0,
        )
        sessions: list[ActivitySession] = []
        for raw_session, distance in zip(kept, distances):
            session = fetcher.normalize_session(raw_session, distance)
            if session is None:
                continue
            session.name = display_name(raw_session, self._config.classifier)
            sessions.append(session)

        snapshot = DailySnapshot(
            user_id=user_id,
            date=day,
            sync_source=fetcher.SOURCE,
            steps=raw.steps,
            calories_burned=raw.calories_burned,
            active_minutes=raw.active_minutes,
            distance_m=sum(s.distance_m for s in sessions),
            heart_rate_avg=raw.heart_rate_avg,
            sessions=[s.to_ref() for s in sessions],
            last_synced_at=self._clock(),
        )
        await self._persist(snapshot, sessions)
        logger.info(
            "Synced %s for user %s on %s: %d steps, %d exercise sessions (%d raw), %.0f m",
            fetcher.DISPLAY_NAME, user_id, day, snapshot.steps, len(sessions),
            len(raw.sessions), snapshot.distance_m,
        )
        return snapshot

    async def _persist(self, snapshot: DailySnapshot, sessions: list[ActivitySession]) -> None:
        await self._repository.upsert_snapshot(snapshot)
        if sessions:
            result = await self._repository.upsert_sessions(snapshot.user_id, sessions)
            if not result.ok:
                logger.warning(
                    "Stored %d sessions for user %s; %d batch(es) failed",
                    result.written, snapshot.user_id, result.failed_batches,
                )
        if self._triggers is not None:
            self._triggers.on_sync_success(snapshot.user_id, snapshot.date)

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def _record_success(self, state: SyncRunState) -> None:
        state.consecutive_errors = 0
        state.last_error_time = None
        state.last_error = None
        state.reconnect_required = False
        state.last_sync = self._clock()
        state.status = SyncStatus.SUCCESS
        state.phase = SyncPhase.DONE

    async def _record_failure(self, user_id: UUID, state: SyncRunState, exc: SyncError) -> None:
        state.consecutive_errors += 1
        state.last_error_time = self._clock()
        state.last_error = exc.reason
        state.status = SyncStatus.ERROR
        state.phase = SyncPhase.FAILED
        logger.warning(
            "Sync failed for user %s (%s, %d consecutive): %s",
            user_id, exc.kind, state.consecutive_errors, exc,
        )
        if isinstance(exc, PermanentAuthFailure):
            await self.mark_disconnected(user_id, exc.provider)

    async def mark_disconnected(self, user_id: UUID, provider: str) -> None:
        """Clear the connected-state flag after a permanent auth failure."""
        self._states.get(user_id).reconnect_required = True
        await self._repository.set_connected(user_id, provider, False)
        logger.info("Marked %s disconnected for user %s", provider, user_id)

    async def mark_connected(self, user_id: UUID, provider: str) -> None:
        """Record a fresh authorization for the provider."""
        self._states.get(user_id).reconnect_required = False
        await self._repository.set_connected(user_id, provider, True)
