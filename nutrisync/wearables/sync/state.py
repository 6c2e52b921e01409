"""Per-user sync run state.

Lives for the process lifetime only: entries are created on first sync and
dropped on sign-out.  Exactly one orchestrator owns writes to a user's entry.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from nutrisync.wearables.base import DailySnapshot


class SyncStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class SyncPhase(str, Enum):
    """Where the current (or last) attempt is.

    Idle → Fetching → (Retrying →) Done | Failed
    """

    IDLE = "idle"
    FETCHING = "fetching"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncRunState:
    """Sync bookkeeping for one user.

    Attributes:
        is_syncing:         True while an attempt is in flight.  Always cleared
                            when the attempt ends, however it ends.
        last_sync:          Completion time of the last successful sync.
        status:             Outcome of the last attempt.
        consecutive_errors: Failed attempts since the last success.
        last_error_time:    When the most recent failure happened.
        last_error:         Human-readable reason for the most recent failure.
        reconnect_required: A permanent auth failure needs user re-authorization.
        phase:              Current attempt phase.
    """

    is_syncing: bool = False
    last_sync: datetime | None = None
    status: SyncStatus = SyncStatus.PENDING
    consecutive_errors: int = 0
    last_error_time: datetime | None = None
    last_error: str | None = None
    reconnect_required: bool = False
    phase: SyncPhase = SyncPhase.IDLE
    inflight: asyncio.Future[DailySnapshot | None] | None = field(default=None, repr=False)

    def as_dict(self) -> dict:
        return {
            "is_syncing": self.is_syncing,
            "last_sync": self.last_sync,
            "status": self.status.value,
            "consecutive_errors": self.consecutive_errors,
            "last_error_time": self.last_error_time,
            "last_error": self.last_error,
            "reconnect_required": self.reconnect_required,
            "phase": self.phase.value,
        }


class SyncStateTable:
    """SyncRunState per user, created on first access."""

    def __init__(self) -> None:
        self._states: dict[UUID, SyncRunState] = {}

    def get(self, user_id: UUID) -> SyncRunState:
        state = self._states.get(user_id)
        if state is None:
            state = self._states[user_id] = SyncRunState()
        return state

    def peek(self, user_id: UUID) -> SyncRunState | None:
        return self._states.get(user_id)

    def evict(self, user_id: UUID) -> None:
        self._states.pop(user_id, None)

    def users(self) -> list[UUID]:
        return list(self._states)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._states

    def __len__(self) -> int:
        return len(self._states)
