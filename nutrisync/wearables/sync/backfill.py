"""Historical resync.

Walks backwards from today one user-local day at a time, re-fetching and
re-persisting each day through the orchestrator's source priority, so a day
with an uploaded-file snapshot keeps it.  Designed to:
- Hold the user's sync slot for the whole run: a ``sync_now`` issued
  meanwhile joins the run and receives today's result
- Run days strictly in sequence with a short delay between them (provider
  rate limits)
- Record every day's outcome on the run state and stop once the circuit
  breaker opens
- Log and skip a day that fails, except for a permanent auth failure, which
  ends the run
- Report progress as it goes

Usage::

    backfill = HistoryBackfill(orchestrator)
    async for progress in backfill.run(user_id, days_back=7):
        logger.info("Backfill progress: %s%%", progress.pct_complete)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING, AsyncIterator
from uuid import UUID

from nutrisync.wearables.base import DailySnapshot
from nutrisync.wearables.config_loader import get_sync_config
from nutrisync.wearables.errors import PermanentAuthFailure, SyncError

if TYPE_CHECKING:
    from nutrisync.wearables.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("nutrisync.wearables.sync.backfill")


@dataclass
class BackfillProgress:
    """Progress update emitted after each day.

    Attributes:
        user_id:        Internal NutriSync user UUID.
        current_date:   Day just processed.
        processed_days: Days processed so far.
        total_days:     Days in the run.
        snapshot:       The day's snapshot, None if it failed or had no data.
        errors:         Error messages accumulated so far.
        is_complete:    True on the last update.
    """

    user_id: UUID
    current_date: date
    processed_days: int
    total_days: int
    snapshot: DailySnapshot | None = None
    errors: list[str] = field(default_factory=list)
    is_complete: bool = False

    @property
    def pct_complete(self) -> float:
        if self.total_days == 0:
            return 100.0
        return round(self.processed_days / self.total_days * 100, 1)


class HistoryBackfill:
    """Re-sync the last N days for one user."""

    def __init__(self, orchestrator: "SyncOrchestrator", day_delay_s: float | None = None) -> None:
        self._orchestrator = orchestrator
        if day_delay_s is None:
            day_delay_s = get_sync_config().sync.history_day_delay_ms / 1000.0
        self._day_delay_s = day_delay_s

    async def run(self, user_id: UUID, days_back: int) -> AsyncIterator[BackfillProgress]:
        """Process today and the ``days_back`` days before it, newest first.

        Yields nothing when a sync is already running for the user or the
        circuit breaker is open.
        """
        if days_back < 0:
            raise ValueError("days_back must be >= 0")
        state = self._orchestrator.status(user_id)
        if state.is_syncing:
            logger.info("Skipping backfill for user %s: a sync is already running", user_id)
            return
        if self._orchestrator.circuit_open(state):
            logger.info(
                "Skipping backfill for user %s: circuit open (%d consecutive errors)",
                user_id, state.consecutive_errors,
            )
            return

        # Claim the slot before the first suspension point.  Joiners get
        # today's snapshot once the first day is done.
        state.is_syncing = True
        today_result: asyncio.Future[DailySnapshot | None] = asyncio.get_running_loop().create_future()
        state.inflight = today_result
        try:
            async for progress in self._walk(user_id, days_back, today_result):
                yield progress
        finally:
            if not today_result.done():
                today_result.set_result(None)
            state.is_syncing = False
            state.inflight = None

    async def _walk(
        self,
        user_id: UUID,
        days_back: int,
        today_result: asyncio.Future[DailySnapshot | None],
    ) -> AsyncIterator[BackfillProgress]:
        state = self._orchestrator.status(user_id)
        today = self._orchestrator.today(user_id)
        days = [today - timedelta(days=offset) for offset in range(days_back + 1)]
        errors: list[str] = []
        logger.info("Backfill for user %s: %s → %s (%d days)", user_id, days[-1], today, len(days))

        for i, day in enumerate(days):
            if i:
                await asyncio.sleep(self._day_delay_s)

            snapshot: DailySnapshot | None = None
            stop = False
            try:
                snapshot = await self._orchestrator.resync_day(user_id, day)
            except PermanentAuthFailure as exc:
                errors.append(f"{day}: {exc.reason}")
                logger.warning("Backfill for user %s stopped at %s: %s", user_id, day, exc)
                stop = True
            except SyncError as exc:
                errors.append(f"{day}: {exc.reason}")
                logger.warning("Backfill for user %s skipped %s: %s", user_id, day, exc)
                if self._orchestrator.circuit_open(state):
                    logger.warning(
                        "Backfill for user %s stopped at %s: circuit open after %d errors",
                        user_id, day, state.consecutive_errors,
                    )
                    stop = True

            if day == today and not today_result.done():
                today_result.set_result(snapshot)

            done = stop or i == len(days) - 1
            yield BackfillProgress(
                user_id=user_id,
                current_date=day,
                processed_days=i + 1,
                total_days=len(days),
                snapshot=snapshot,
                errors=list(errors),
                is_complete=done,
            )
            if stop:
                return

        logger.info(
            "Backfill complete for user %s: %d days, %d errors", user_id, len(days), len(errors)
        )
