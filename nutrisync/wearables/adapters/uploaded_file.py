"""Uploaded activity file adapter (highest-priority source).

The user uploads either a device ``.fit`` file or totals exported from
another app.  Either way the day's sessions go through the exercise
classifier, the kept ones are stored, and the totals are persisted as that
day's snapshot with ``sync_source = uploaded_file``.  While such a snapshot
exists, the orchestrator returns it as-is and makes no provider calls for
that day.

FIT files are decoded with ``fitparse``.  Messages used:
    session    - start_time, total_elapsed_time, sport, sub_sport,
                 total_distance, total_calories, avg_heart_rate
    record     - timestamp, heart_rate
    monitoring - steps (cumulative daily count)
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from uuid import UUID

from fitparse import FitFile, FitParseError

from nutrisync.wearables.base import (
    ActivitySession,
    DailySnapshot,
    DayWindow,
    ProviderFetcher,
    RawDay,
    SyncSource,
    utc_now,
)
from nutrisync.wearables.classifier import classify, display_name
from nutrisync.wearables.config_loader import ClassifierConfig, get_sync_config
from nutrisync.wearables.errors import InvalidUploadFile
from nutrisync.wearables.sync.persistence import SyncRepository

logger = logging.getLogger("nutrisync.wearables.uploaded_file")

# 12-byte minimal FIT header plus a 2-byte CRC.
_MIN_FIT_SIZE = 14


@dataclass
class FitDay:
    """One day of activity read from a FIT file.

    Attributes:
        day:          User-local day of the first session (or record).
        raw:          Totals and raw session dicts, not yet classified.
        record_count: Number of ``record`` messages in the file.
    """

    day: date
    raw: RawDay
    record_count: int = 0


def _as_utc(value: object) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _positive(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


def _fit_session(values: dict) -> dict | None:
    start = _as_utc(values.get("start_time"))
    elapsed = _positive(values.get("total_elapsed_time")) or _positive(values.get("total_timer_time"))
    if start is None or elapsed is None:
        return None
    sport = str(values.get("sport") or "").strip()
    sub_sport = str(values.get("sub_sport") or "").strip()
    return {
        "activity_type": sport,
        "name": sport.replace("_", " ").title() or None,
        "description": sub_sport if sub_sport and sub_sport != "generic" else None,
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(seconds=elapsed)).isoformat(),
        "distance_m": _positive(values.get("total_distance")) or 0.0,
        "calories": _positive(values.get("total_calories")) or 0.0,
        "avg_heart_rate": _positive(values.get("avg_heart_rate")),
    }


def parse_fit_file(content: bytes, tz: tzinfo = timezone.utc) -> FitDay:
    """Decode a FIT file into one day of totals and raw sessions.

    Raises:
        InvalidUploadFile: The bytes are not a readable FIT file, or the file
            holds no sessions and no records.
    """
    if len(content) < _MIN_FIT_SIZE:
        raise InvalidUploadFile("FIT file too small")

    sessions: list[dict] = []
    heart_rates: list[float] = []
    first_record: datetime | None = None
    records = 0
    steps = 0
    try:
        fit = FitFile(io.BytesIO(content))
        for message in fit.get_messages():
            values = message.get_values()
            if message.name == "record":
                records += 1
                timestamp = _as_utc(values.get("timestamp"))
                if first_record is None and timestamp is not None:
                    first_record = timestamp
                heart_rate = _positive(values.get("heart_rate"))
                if heart_rate is not None:
                    heart_rates.append(heart_rate)
            elif message.name == "session":
                session = _fit_session(values)
                if session is not None:
                    sessions.append(session)
            elif message.name == "monitoring":
                steps = max(steps, int(_positive(values.get("steps")) or 0))
    except FitParseError as exc:
        raise InvalidUploadFile(f"Unreadable FIT file: {exc}") from exc

    if sessions:
        anchor = datetime.fromisoformat(sessions[0]["start_time"])
    elif first_record is not None:
        anchor = first_record
    else:
        raise InvalidUploadFile("FIT file has no sessions or records")

    if not heart_rates:
        heart_rates = [s["avg_heart_rate"] for s in sessions if s["avg_heart_rate"]]
    heart_rate_avg = round(sum(heart_rates) / len(heart_rates), 1) if heart_rates else None

    return FitDay(
        day=anchor.astimezone(tz).date(),
        raw=RawDay(
            steps=steps,
            calories_burned=sum(s["calories"] for s in sessions),
            active_minutes=0,
            heart_rate_avg=heart_rate_avg,
            sessions=sessions,
        ),
        record_count=records,
    )


class UploadedFileAdapter(ProviderFetcher):
    """Stores and serves snapshots that came from an uploaded file."""

    SOURCE = SyncSource.UPLOADED_FILE
    DISPLAY_NAME = "Uploaded File"
    REQUIRES_TOKEN = False

    def __init__(self, repository: SyncRepository, config: ClassifierConfig | None = None) -> None:
        self._repository = repository
        self._config = config

    async def existing_snapshot(self, user_id: UUID, day: date) -> DailySnapshot | None:
        """Return the persisted snapshot for the day if it came from an upload."""
        snapshot = await self._repository.get_snapshot(user_id, day)
        if snapshot is None or snapshot.sync_source != SyncSource.UPLOADED_FILE:
            return None
        return snapshot

    async def ingest(self, user_id: UUID, day: date, totals: dict) -> DailySnapshot:
        """Persist exported totals as the day's snapshot.

        ``totals`` carries steps, calories_burned, active_minutes, distance_m
        and optionally heart_rate_avg and a list of session summaries.  A
        zero distance or active-minute total is filled from the kept sessions.
        """
        raw = RawDay(
            steps=self._safe_int(totals.get("steps")) or 0,
            calories_burned=self._safe_float(totals.get("calories_burned")) or 0.0,
            active_minutes=self._safe_int(totals.get("active_minutes")) or 0,
            heart_rate_avg=self._safe_float(totals.get("heart_rate_avg")),
            sessions=[s for s in totals.get("sessions") or [] if isinstance(s, dict)],
        )
        return await self._store(user_id, day, raw, self._safe_float(totals.get("distance_m")) or 0.0)

    async def ingest_fit(
        self, user_id: UUID, content: bytes, tz: tzinfo = timezone.utc
    ) -> DailySnapshot:
        """Parse a device FIT file and persist it as the day's snapshot.

        Raises:
            InvalidUploadFile: The file could not be read.
        """
        parsed = parse_fit_file(content, tz)
        logger.info(
            "Parsed FIT file for user %s: %s, %d sessions, %d records",
            user_id, parsed.day, len(parsed.raw.sessions), parsed.record_count,
        )
        return await self._store(user_id, parsed.day, parsed.raw, 0.0)

    async def _store(
        self, user_id: UUID, day: date, raw: RawDay, distance_m: float
    ) -> DailySnapshot:
        cfg = self._config or get_sync_config().classifier
        sessions: list[ActivitySession] = []
        for raw_session in classify(raw.sessions, cfg):
            session = self.normalize_session(
                raw_session, self._safe_float(raw_session.get("distance_m")) or 0.0
            )
            if session is None:
                continue
            session.name = display_name(raw_session, cfg)
            sessions.append(session)

        active_minutes = raw.active_minutes or round(
            sum((s.end_time - s.start_time).total_seconds() for s in sessions) / 60
        )
        snapshot = DailySnapshot(
            user_id=user_id,
            date=day,
            sync_source=SyncSource.UPLOADED_FILE,
            steps=raw.steps,
            calories_burned=raw.calories_burned,
            active_minutes=active_minutes,
            distance_m=distance_m or sum(s.distance_m for s in sessions),
            heart_rate_avg=raw.heart_rate_avg,
            sessions=[s.to_ref() for s in sessions],
            last_synced_at=utc_now(),
        )
        await self._repository.upsert_snapshot(snapshot)
        if sessions:
            result = await self._repository.upsert_sessions(user_id, sessions)
            if not result.ok:
                logger.warning(
                    "Stored %d uploaded sessions for user %s; %d batch(es) failed",
                    result.written, user_id, result.failed_batches,
                )
        logger.info(
            "Stored uploaded-file snapshot for user %s on %s (%d of %d sessions kept)",
            user_id, day, len(sessions), len(raw.sessions),
        )
        return snapshot

    async def fetch_day(
        self, user_id: UUID, window: DayWindow, access_token: str | None = None
    ) -> RawDay | None:
        snapshot = await self.existing_snapshot(user_id, window.day)
        if snapshot is None:
            return None
        return RawDay(
            steps=snapshot.steps,
            calories_burned=snapshot.calories_burned,
            active_minutes=snapshot.active_minutes,
            heart_rate_avg=snapshot.heart_rate_avg,
            sessions=list(snapshot.sessions),
        )

    async def session_distance(self, session: dict, access_token: str | None = None) -> float:
        return self._safe_float(session.get("distance_m")) or 0.0
