"""Base classes and canonical data models for the NutriSync wearable sync engine.

Every provider fetcher must subclass ProviderFetcher and return a RawDay that
the orchestrator classifies and turns into a DailySnapshot.  These types are
the single source of truth consumed by the orchestrator, the persistence
layer, and the API layer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID

logger = logging.getLogger("nutrisync.wearables")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware (or naive UTC) datetime to epoch milliseconds."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | str) -> datetime:
    """Convert epoch milliseconds (int or numeric string) to an aware UTC datetime."""
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class SyncSource(str, Enum):
    """Where a day's activity data came from.

    The orchestrator handles every member explicitly when it selects a
    provider, so adding a member means revisiting that selection step.
    """

    UPLOADED_FILE = "uploaded_file"
    PRIMARY_PROVIDER = "google_fit"
    SECONDARY_PROVIDER = "health_store"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# OAuth credentials
# ---------------------------------------------------------------------------


@dataclass
class Credential:
    """OAuth credential held for one user + provider.

    Attributes:
        user_id:       Internal NutriSync user UUID.
        provider:      Provider slug (e.g. 'google_fit').
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at_ms: Epoch milliseconds when the access_token expires.
                       Always set when access_token is set.
    """

    user_id: UUID
    provider: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at_ms: int | None = None

    def __post_init__(self) -> None:
        if self.access_token and self.expires_at_ms is None:
            raise ValueError("expires_at_ms is required when access_token is set")

    def time_until_expiry_ms(self, now_ms: int) -> int | None:
        if self.expires_at_ms is None:
            return None
        return self.expires_at_ms - now_ms

    def is_valid(self, now_ms: int) -> bool:
        """Return True if there is an access token that has not yet expired."""
        remaining = self.time_until_expiry_ms(now_ms)
        return bool(self.access_token) and remaining is not None and remaining > 0


@dataclass
class TokenGrant:
    """A successful token-endpoint (or token broker) response.

    ``refresh_token`` is None when the provider did not rotate it.
    """

    access_token: str
    expires_in_s: int | None = None
    expires_at_ms: int | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"

    def resolve_expiry_ms(self, now_ms: int, default_ttl_s: int) -> int:
        if self.expires_at_ms is not None:
            return self.expires_at_ms
        ttl = self.expires_in_s if self.expires_in_s is not None else default_ttl_s
        return now_ms + ttl * 1000


# ---------------------------------------------------------------------------
# Canonical activity models
# ---------------------------------------------------------------------------


@dataclass
class ActivitySession:
    """Canonical exercise session.

    Attributes:
        session_id:    Provider session ID, unique per user.
        start_time:    UTC start timestamp.
        end_time:      UTC end timestamp.
        activity_type: Provider activity type as a string (may be a numeric code).
        name:          Human-readable name (normalized from the activity code
                       when the provider gives none).
        description:   Provider description.
        source:        SyncSource the session came from.
        distance_m:    Distance covered inside the session window.
        raw:           Original provider payload.
    """

    session_id: str
    start_time: datetime
    end_time: datetime
    activity_type: str
    source: SyncSource
    name: str | None = None
    description: str | None = None
    distance_m: float = 0.0
    raw: dict = field(default_factory=dict)

    def to_ref(self) -> dict[str, Any]:
        """The session summary embedded in the daily snapshot."""
        return {
            "session_id": self.session_id,
            "activity_type": self.activity_type,
            "name": self.name,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "distance_m": self.distance_m,
        }


@dataclass
class DailySnapshot:
    """One user's activity totals for one user-local calendar day.

    Exactly one snapshot exists per (user_id, date); every sync overwrites it.
    """

    user_id: UUID
    date: date
    sync_source: SyncSource
    steps: int = 0
    calories_burned: float = 0.0
    active_minutes: int = 0
    distance_m: float = 0.0
    heart_rate_avg: float | None = None
    sessions: list[dict] = field(default_factory=list)
    last_synced_at: datetime = field(default_factory=utc_now)


@dataclass
class RawDay:
    """Un-classified provider data for one day.

    Attributes:
        steps, calories_burned, active_minutes, heart_rate_avg:
            First aggregate point per metric; missing metrics are 0 / None.
        sessions: Raw provider session dicts, not yet classified.
    """

    steps: int = 0
    calories_burned: float = 0.0
    active_minutes: int = 0
    heart_rate_avg: float | None = None
    sessions: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class DayWindow:
    """A user-local calendar day expressed as a UTC interval."""

    day: date
    start: datetime
    end: datetime

    @classmethod
    def for_local_day(cls, day: date, tz: Any) -> "DayWindow":
        start = datetime(day.year, day.month, day.day, tzinfo=tz)
        end = start + timedelta(days=1)
        return cls(day=day, start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc))

    @property
    def start_ms(self) -> int:
        return to_epoch_ms(self.start)

    @property
    def end_ms(self) -> int:
        return to_epoch_ms(self.end)


# ---------------------------------------------------------------------------
# Abstract base fetcher
# ---------------------------------------------------------------------------


class ProviderFetcher(ABC):
    """Abstract base class for all activity data providers.

    Each provider implements this interface to give the orchestrator a
    uniform "get today's activity" surface.

    Subclasses must implement:
        - fetch_day()
        - session_distance()
    """

    #: Which SyncSource this fetcher produces.
    SOURCE: SyncSource = SyncSource.MANUAL

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Provider"

    #: True when fetch_day() needs an OAuth access token.
    REQUIRES_TOKEN: bool = False

    @abstractmethod
    async def fetch_day(
        self, user_id: UUID, window: DayWindow, access_token: str | None = None
    ) -> RawDay | None:
        """Fetch the day's metrics and raw sessions.

        Args:
            user_id:      Internal NutriSync user UUID.
            window:       The user-local day to fetch.
            access_token: OAuth access token when REQUIRES_TOKEN is set.

        Returns:
            RawDay, or None when the provider has nothing for this day.
        """

    @abstractmethod
    async def session_distance(
        self, session: dict, access_token: str | None = None
    ) -> float:
        """Return the distance in meters covered inside one session's window."""

    def normalize_session(self, raw: dict, distance_m: float = 0.0) -> ActivitySession | None:
        """Turn one kept raw session into an ActivitySession.

        Accepts both epoch-millisecond (``startTimeMillis``) and ISO
        (``start_time``) timestamps.  Returns None when the session has no
        usable time window.
        """
        start = self._session_time(raw, "startTimeMillis", "start_time")
        end = self._session_time(raw, "endTimeMillis", "end_time")
        if start is None or end is None or end < start:
            logger.warning("%s: dropping session %r with bad window", self.DISPLAY_NAME, raw.get("id"))
            return None

        # Sessions without an id are keyed by source and start time.
        session_id = raw.get("id") or raw.get("session_id") or f"{self.SOURCE.value}-{to_epoch_ms(start)}"

        activity = raw.get("activityType", raw.get("activity_type", ""))
        return ActivitySession(
            session_id=str(session_id),
            start_time=start,
            end_time=end,
            activity_type=str(activity) if activity is not None else "",
            source=self.SOURCE,
            name=raw.get("name") or None,
            description=raw.get("description") or None,
            distance_m=distance_m,
            raw=raw,
        )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @classmethod
    def _session_time(cls, raw: dict, millis_key: str, iso_key: str) -> datetime | None:
        millis = cls._safe_int(raw.get(millis_key))
        if millis is not None:
            return from_epoch_ms(millis)
        return cls._parse_iso_datetime(raw.get(iso_key))

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 datetime string to an aware UTC datetime.

        Naive strings are assumed to be UTC.  Returns None if the value is
        None or unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
