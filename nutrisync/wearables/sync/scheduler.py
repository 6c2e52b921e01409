"""Background sync scheduler.

Replaces "sync when the screen mounts" with explicit scheduled work owned by
the service:

1. Interval sync: every ``sync.interval_minutes`` (15) for each active user.
   A tick for a user whose previous attempt is still running is a no-op.
2. Token revalidation: every ``tokens.revalidate_interval_seconds`` (300)
   across all cached credentials.
3. Lifecycle events reported by the client:
       foreground - revalidate the user's tokens, then sync
       focus      - revalidate the user's tokens
       online     - revalidate the user's tokens, then sync
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from nutrisync.wearables.base import utc_now
from nutrisync.wearables.config_loader import SyncConfig, get_sync_config
from nutrisync.wearables.sync.orchestrator import SyncOrchestrator
from nutrisync.wearables.tokens import TokenLifecycleManager

logger = logging.getLogger("nutrisync.wearables.sync.scheduler")


class LifecycleEvent(str, Enum):
    FOREGROUND = "foreground"
    FOCUS = "focus"
    ONLINE = "online"


#: Events that should also kick off a sync after token revalidation.
_SYNCING_EVENTS = frozenset({LifecycleEvent.FOREGROUND, LifecycleEvent.ONLINE})


@dataclass
class TickResult:
    """Outcome of one interval tick.

    Attributes:
        started:  Users whose sync ran in this tick.
        skipped:  Users skipped because an attempt was already in flight.
        synced:   Users whose sync returned a snapshot.
        at:       UTC tick time.
    """

    started: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)
    synced: list[UUID] = field(default_factory=list)
    at: datetime = field(default_factory=utc_now)


class BackgroundSyncScheduler:
    """Owns the periodic sync and revalidation loops.

    Usage::

        scheduler = BackgroundSyncScheduler(orchestrator, token_manager)
        scheduler.register(user_id)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        tokens: TokenLifecycleManager,
        config: SyncConfig | None = None,
        max_concurrent: int = 5,
    ) -> None:
        """Initialize the scheduler.

        Args:
            orchestrator:   Runs the per-user sync attempts.
            tokens:         Token manager used for revalidation.
            config:         Timing config (defaults to the global sync config).
            max_concurrent: Maximum simultaneous user syncs per tick.
        """
        self._orchestrator = orchestrator
        self._tokens = tokens
        self._config = config or get_sync_config()
        self._max_concurrent = max_concurrent
        self._users: set[UUID] = set()
        self._loops: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register(self, user_id: UUID) -> None:
        """Include a user in interval syncs."""
        if user_id not in self._users:
            self._users.add(user_id)
            logger.debug("Registered user %s for background sync", user_id)

    def unregister(self, user_id: UUID) -> None:
        """Sign-out: stop syncing the user and drop their per-user state."""
        self._users.discard(user_id)
        self._orchestrator.evict_user(user_id)

    @property
    def users(self) -> list[UUID]:
        return sorted(self._users, key=str)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._loops)

    # ------------------------------------------------------------------
    # Work units
    # ------------------------------------------------------------------

    async def tick(self) -> TickResult:
        """Run one interval sync across registered users."""
        result = TickResult()
        due: list[UUID] = []
        for user_id in self.users:
            if self._orchestrator.status(user_id).is_syncing:
                result.skipped.append(user_id)
            else:
                due.append(user_id)

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _one(user_id: UUID):
            async with semaphore:
                return await self._orchestrator.sync_now(user_id)

        outcomes = await asyncio.gather(*(_one(u) for u in due), return_exceptions=True)
        for user_id, outcome in zip(due, outcomes):
            result.started.append(user_id)
            if isinstance(outcome, Exception):
                logger.error("Background sync crashed for user %s: %s", user_id, outcome)
            elif outcome is not None:
                result.synced.append(user_id)

        logger.info(
            "Sync tick: %d started, %d synced, %d skipped (in flight)",
            len(result.started), len(result.synced), len(result.skipped),
        )
        return result

    async def revalidate(self) -> int:
        return await self._tokens.revalidate()

    async def handle_event(self, user_id: UUID, event: LifecycleEvent | str) -> bool:
        """React to a client lifecycle event.

        Returns True when the event also ran a sync that produced a snapshot.
        """
        event = LifecycleEvent(event)
        self.register(user_id)
        await self._tokens.revalidate(user_id)
        if event not in _SYNCING_EVENTS:
            return False
        snapshot = await self._orchestrator.sync_now(user_id)
        return snapshot is not None

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the interval and revalidation loops on the running event loop."""
        if self.running:
            return
        self._loops = [
            asyncio.ensure_future(
                self._every(self._config.sync.interval_minutes * 60, self.tick, "sync")
            ),
            asyncio.ensure_future(
                self._every(self._config.tokens.revalidate_interval_seconds, self.revalidate, "revalidate")
            ),
        ]
        logger.info(
            "Background scheduler started (sync every %.0f min, revalidate every %.0f s)",
            self._config.sync.interval_minutes, self._config.tokens.revalidate_interval_seconds,
        )

    async def stop(self) -> None:
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        logger.info("Background scheduler stopped")

    async def _every(self, interval_s: float, job, name: str) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await job()
            except Exception:
                logger.exception("Scheduled %s job failed", name)
