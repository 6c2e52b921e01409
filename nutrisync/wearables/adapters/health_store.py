"""Native device health store adapter (secondary provider).

The phone reads the platform health store (HealthKit / Health Connect) and
pushes one payload per day to ``POST /api/v1/wearables/{user_id}/health-store``.
There is no server-side API and no OAuth flow: this adapter reads the
latest pushed payload back from the repository.

Payload shape::

    {
      "steps": 8421,
      "calories_burned": 2210.5,
      "active_minutes": 47,
      "heart_rate_avg": 71.2,            # optional
      "sessions": [
        {"id": "...", "activity_type": "running", "name": "Evening run",
         "start_time": "2024-03-04T18:00:00Z", "end_time": "2024-03-04T18:40:00Z",
         "distance_m": 6120.0}
      ]
    }
"""

from __future__ import annotations

import logging
from uuid import UUID

from nutrisync.wearables.base import DayWindow, ProviderFetcher, RawDay, SyncSource
from nutrisync.wearables.sync.persistence import SyncRepository

logger = logging.getLogger("nutrisync.wearables.health_store")


class HealthStoreAdapter(ProviderFetcher):
    """Reads device-pushed health store payloads.

    Session distance is measured on the device and travels inside the
    payload, so no per-session query is needed.
    """

    SOURCE = SyncSource.SECONDARY_PROVIDER
    DISPLAY_NAME = "Device Health Store"
    REQUIRES_TOKEN = False

    def __init__(self, repository: SyncRepository) -> None:
        self._repository = repository

    async def fetch_day(
        self, user_id: UUID, window: DayWindow, access_token: str | None = None
    ) -> RawDay | None:
        payload = await self._repository.get_health_store_payload(user_id, window.day)
        if not payload:
            logger.debug("No health store payload for user %s on %s", user_id, window.day)
            return None

        sessions = [s for s in payload.get("sessions") or [] if isinstance(s, dict)]
        return RawDay(
            steps=self._safe_int(payload.get("steps")) or 0,
            calories_burned=self._safe_float(payload.get("calories_burned")) or 0.0,
            active_minutes=self._safe_int(payload.get("active_minutes")) or 0,
            heart_rate_avg=self._safe_float(payload.get("heart_rate_avg")),
            sessions=sessions,
        )

    async def session_distance(self, session: dict, access_token: str | None = None) -> float:
        distance = self._safe_float(session.get("distance_m", session.get("distance")))
        return max(distance or 0.0, 0.0)

