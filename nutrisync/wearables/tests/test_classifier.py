"""Tests for exercise session classification and distance aggregation."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from nutrisync.wearables.classifier import (
    activity_code,
    aggregate_distance,
    classify,
    display_name,
    is_exercise,
    session_distances,
)
from nutrisync.wearables.config_loader import ClassifierConfig, SyncConfig
from nutrisync.wearables.tests.conftest import raw_session

START = datetime(2026, 2, 23, 7, 0, tzinfo=timezone.utc)


@pytest.fixture
def rules(sync_config: SyncConfig) -> ClassifierConfig:
    return sync_config.classifier


class TestActivityCode:
    def test_prefers_activity_type(self) -> None:
        assert activity_code({"activityType": 8, "activity_type": "yoga"}) == "8"

    def test_falls_back_through_keys(self) -> None:
        assert activity_code({"activity": " Cycling "}) == "Cycling"
        assert activity_code({"activity_type": "swimming"}) == "swimming"

    def test_missing_is_empty(self) -> None:
        assert activity_code({"name": "Morning"}) == ""


class TestIsExercise:
    def test_running_code_kept(self, rules: ClassifierConfig) -> None:
        assert is_exercise({"activityType": 8}, rules)

    def test_running_keyword_kept(self, rules: ClassifierConfig) -> None:
        assert is_exercise({"activityType": "running"}, rules)

    def test_walking_code_excluded(self, rules: ClassifierConfig) -> None:
        assert not is_exercise({"activityType": 7}, rules)

    def test_nordic_walking_code_excluded(self, rules: ClassifierConfig) -> None:
        assert not is_exercise({"activityType": 108}, rules)

    def test_unknown_code_zero_excluded(self, rules: ClassifierConfig) -> None:
        assert not is_exercise({"activityType": 0}, rules)

    def test_deny_keyword_beats_allow_keyword(self, rules: ClassifierConfig) -> None:
        """A deny match excludes even when the code or another signal allows."""
        assert not is_exercise({"activityType": "power_walking"}, rules)
        assert not is_exercise({"activityType": 8, "name": "Power walking"}, rules)

    def test_deny_keyword_in_description(self, rules: ClassifierConfig) -> None:
        session = {"activityType": "cycling", "description": "Commuting to work"}
        assert not is_exercise(session, rules)

    def test_empty_activity_excluded(self, rules: ClassifierConfig) -> None:
        assert not is_exercise({"activityType": ""}, rules)
        assert not is_exercise({}, rules)

    def test_unrecognised_activity_excluded(self, rules: ClassifierConfig) -> None:
        assert not is_exercise({"activityType": "meditation"}, rules)

    def test_keyword_match_is_case_insensitive(self, rules: ClassifierConfig) -> None:
        assert is_exercise({"activityType": "Strength_Training"}, rules)

    def test_name_can_carry_allow_keyword(self, rules: ClassifierConfig) -> None:
        assert is_exercise({"activityType": "other", "name": "Evening yoga"}, rules)

    def test_uses_global_config_by_default(self) -> None:
        assert is_exercise({"activityType": 8})


class TestClassify:
    def test_keeps_exercise_in_order(self, rules: ClassifierConfig) -> None:
        sessions = [
            raw_session("run", 8, START),
            raw_session("walk", 7, START),
            raw_session("swim", 169, START),
            raw_session("drive", "in_vehicle", START),
        ]
        kept = classify(sessions, rules)
        assert [s["id"] for s in kept] == ["run", "swim"]

    def test_walking_only_day(self, rules: ClassifierConfig) -> None:
        sessions = [raw_session("w1", 7, START), raw_session("w2", "walking", START)]
        assert classify(sessions, rules) == []

    def test_empty_input(self, rules: ClassifierConfig) -> None:
        assert classify([], rules) == []


class TestDisplayName:
    def test_name_from_code(self, rules: ClassifierConfig) -> None:
        assert display_name({"activityType": 8}, rules) == "Running"

    def test_provider_name_wins(self, rules: ClassifierConfig) -> None:
        assert display_name({"activityType": 8, "name": "Tempo intervals"}, rules) == "Tempo intervals"

    def test_description_used_when_no_name(self, rules: ClassifierConfig) -> None:
        assert display_name({"activityType": 8, "description": "Park loop"}, rules) == "Park loop"

    def test_unknown_code_has_no_name(self, rules: ClassifierConfig) -> None:
        assert display_name({"activityType": 9999}, rules) is None

    def test_text_activity_has_no_name(self, rules: ClassifierConfig) -> None:
        assert display_name({"activityType": "running"}, rules) is None


class TestDistanceAggregation:
    @pytest.mark.asyncio
    async def test_sums_per_session_distance(self) -> None:
        sessions = [raw_session("a", 8, START), raw_session("b", 1, START)]
        query = AsyncMock(side_effect=[5000.0, 12000.5])
        total = await aggregate_distance(sessions, query)
        assert total == pytest.approx(17000.5)
        assert query.await_count == 2

    @pytest.mark.asyncio
    async def test_queries_each_session_window(self) -> None:
        sessions = [raw_session("a", 8, START), raw_session("b", 8, START)]
        query = AsyncMock(return_value=100.0)
        await session_distances(sessions, query)
        assert [call.args[0]["id"] for call in query.await_args_list] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_negative_and_missing_distance_clamped(self) -> None:
        sessions = [raw_session("a", 8, START), raw_session("b", 8, START)]
        query = AsyncMock(side_effect=[-3.0, None])
        assert await session_distances(sessions, query) == [0.0, 0.0]

    @pytest.mark.asyncio
    async def test_no_sessions_is_zero(self) -> None:
        query = AsyncMock()
        assert await aggregate_distance([], query) == 0.0
        query.assert_not_awaited()
