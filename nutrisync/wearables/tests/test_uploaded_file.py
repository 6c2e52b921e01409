"""Tests for the uploaded-file adapter: FIT decoding and exported totals."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from nutrisync.wearables.adapters.uploaded_file import UploadedFileAdapter, parse_fit_file
from nutrisync.wearables.base import SyncSource
from nutrisync.wearables.config_loader import SyncConfig
from nutrisync.wearables.errors import InvalidUploadFile
from nutrisync.wearables.sync.persistence import InMemorySyncRepository
from nutrisync.wearables.tests.conftest import TEST_DATE, TEST_USER_ID, build_fit_file

MORNING_RUN = {
    "sport": "running",
    "start": datetime(2026, 2, 23, 7, 0, tzinfo=timezone.utc),
    "minutes": 30,
    "distance_m": 5000,
    "calories": 320,
}
EVENING_WALK = {
    "sport": "walking",
    "start": datetime(2026, 2, 23, 18, 0, tzinfo=timezone.utc),
    "minutes": 20,
    "distance_m": 1500,
    "calories": 80,
}


@pytest.fixture
def adapter(repository: InMemorySyncRepository, sync_config: SyncConfig) -> UploadedFileAdapter:
    return UploadedFileAdapter(repository, config=sync_config.classifier)


class TestParseFitFile:
    def test_sessions_and_heart_rate(self) -> None:
        parsed = parse_fit_file(build_fit_file([MORNING_RUN, EVENING_WALK], heart_rates=(140, 160)))

        assert parsed.day == TEST_DATE
        assert parsed.record_count == 2
        assert parsed.raw.heart_rate_avg == 150
        assert parsed.raw.calories_burned == 400
        assert [s["activity_type"] for s in parsed.raw.sessions] == ["running", "walking"]
        assert parsed.raw.sessions[0]["distance_m"] == 5000
        assert parsed.raw.sessions[0]["end_time"] == "2026-02-23T07:30:00+00:00"

    def test_day_follows_user_timezone(self) -> None:
        late_run = dict(MORNING_RUN, start=datetime(2026, 2, 24, 2, 0, tzinfo=timezone.utc))

        parsed = parse_fit_file(build_fit_file([late_run]), ZoneInfo("America/New_York"))

        assert parsed.day == TEST_DATE

    def test_garbage_rejected(self) -> None:
        with pytest.raises(InvalidUploadFile):
            parse_fit_file(b"this is not a fit file at all")

    def test_truncated_rejected(self) -> None:
        with pytest.raises(InvalidUploadFile):
            parse_fit_file(b"\x0e\x20")

    def test_bad_crc_rejected(self) -> None:
        content = bytearray(build_fit_file([MORNING_RUN]))
        content[-1] ^= 0xFF

        with pytest.raises(InvalidUploadFile):
            parse_fit_file(bytes(content))

    def test_file_without_activity_rejected(self) -> None:
        with pytest.raises(InvalidUploadFile, match="no sessions"):
            parse_fit_file(build_fit_file([]))


class TestIngestFit:
    @pytest.mark.asyncio
    async def test_snapshot_and_sessions_persisted(
        self, adapter: UploadedFileAdapter, repository: InMemorySyncRepository
    ) -> None:
        content = build_fit_file([MORNING_RUN, EVENING_WALK], heart_rates=(140, 160))

        snapshot = await adapter.ingest_fit(TEST_USER_ID, content)

        assert snapshot.date == TEST_DATE
        assert snapshot.sync_source == SyncSource.UPLOADED_FILE
        assert snapshot.calories_burned == 400
        assert snapshot.active_minutes == 30
        assert snapshot.distance_m == 5000
        assert snapshot.heart_rate_avg == 150
        assert [s["activity_type"] for s in snapshot.sessions] == ["running"]

        stored = repository.sessions_for(TEST_USER_ID)
        assert len(stored) == 1
        assert stored[0].source == SyncSource.UPLOADED_FILE
        assert stored[0].name == "Running"
        assert await adapter.existing_snapshot(TEST_USER_ID, TEST_DATE) == snapshot

    @pytest.mark.asyncio
    async def test_invalid_file_stores_nothing(
        self, adapter: UploadedFileAdapter, repository: InMemorySyncRepository
    ) -> None:
        with pytest.raises(InvalidUploadFile):
            await adapter.ingest_fit(TEST_USER_ID, b"\x00" * 64)

        assert await repository.get_snapshot(TEST_USER_ID, TEST_DATE) is None
        assert repository.sessions_for(TEST_USER_ID) == []


class TestIngestTotals:
    @pytest.mark.asyncio
    async def test_sessions_classified_and_persisted(
        self, adapter: UploadedFileAdapter, repository: InMemorySyncRepository
    ) -> None:
        totals = {
            "steps": 12000,
            "sessions": [
                {
                    "session_id": "strava-1",
                    "activity_type": "cycling",
                    "start_time": "2026-02-23T16:00:00Z",
                    "end_time": "2026-02-23T17:00:00Z",
                    "distance_m": 21000,
                },
                {
                    "session_id": "strava-2",
                    "activity_type": "walking",
                    "start_time": "2026-02-23T12:00:00Z",
                    "end_time": "2026-02-23T12:40:00Z",
                    "distance_m": 3000,
                },
            ],
        }

        snapshot = await adapter.ingest(TEST_USER_ID, TEST_DATE, totals)

        assert snapshot.steps == 12000
        assert snapshot.active_minutes == 60
        assert snapshot.distance_m == 21000
        assert [s["session_id"] for s in snapshot.sessions] == ["strava-1"]
        assert [s.session_id for s in repository.sessions_for(TEST_USER_ID)] == ["strava-1"]

    @pytest.mark.asyncio
    async def test_reported_totals_win_over_session_sums(self, adapter: UploadedFileAdapter) -> None:
        snapshot = await adapter.ingest(
            TEST_USER_ID,
            TEST_DATE,
            {"steps": 15000, "active_minutes": 45, "distance_m": 8200.0},
        )

        assert snapshot.active_minutes == 45
        assert snapshot.distance_m == 8200.0
        assert snapshot.sessions == []
