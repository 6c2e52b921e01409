"""Shared fixtures and fakes for wearable sync engine tests."""

from __future__ import annotations

import asyncio
import struct
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest

from nutrisync.wearables.base import (
    DayWindow,
    ProviderFetcher,
    RawDay,
    SyncSource,
    TokenGrant,
    to_epoch_ms,
)
from nutrisync.wearables.config_loader import SyncConfig, load_sync_config
from nutrisync.wearables.credentials import CredentialStore
from nutrisync.wearables.sync.persistence import InMemorySyncRepository
from nutrisync.wearables.tokens import TokenLifecycleManager

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_DATE = date(2026, 2, 23)

# Noon UTC on TEST_DATE
TEST_NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)

PROVIDER = SyncSource.PRIMARY_PROVIDER.value


def raw_session(
    session_id: str,
    activity_type: int | str,
    start: datetime,
    minutes: int = 30,
    name: str = "",
) -> dict:
    """A Google Fit shaped raw session."""
    return {
        "id": session_id,
        "name": name,
        "activityType": activity_type,
        "startTimeMillis": str(to_epoch_ms(start)),
        "endTimeMillis": str(to_epoch_ms(start + timedelta(minutes=minutes))),
    }


# ---------------------------------------------------------------------------
# FIT fixtures
# ---------------------------------------------------------------------------

FIT_EPOCH = datetime(1989, 12, 31, tzinfo=timezone.utc)
FIT_SPORTS = {"running": 1, "cycling": 2, "walking": 11}

_FIT_CRC_TABLE = (
    0x0000, 0xCC01, 0xD801, 0x1400, 0xF001, 0x3C00, 0x2800, 0xE401,
    0xA001, 0x6C00, 0x7800, 0xB401, 0x5000, 0x9C01, 0x8801, 0x4400,
)


def _fit_crc(data: bytes) -> int:
    crc = 0
    for byte in data:
        for nibble in (byte & 0x0F, byte >> 4):
            tmp = _FIT_CRC_TABLE[crc & 0x0F]
            crc = (crc >> 4) & 0x0FFF
            crc = crc ^ tmp ^ _FIT_CRC_TABLE[nibble]
    return crc


def _fit_time(value: datetime) -> int:
    return int((value - FIT_EPOCH).total_seconds())


def _fit_definition(local: int, global_num: int, fields: list[tuple[int, int, int]]) -> bytes:
    out = struct.pack("<BBBHB", 0x40 | local, 0, 0, global_num, len(fields))
    for number, size, base_type in fields:
        out += struct.pack("<BBB", number, size, base_type)
    return out


def build_fit_file(sessions: list[dict], heart_rates: tuple[int, ...] = ()) -> bytes:
    """Encode a minimal activity FIT file.

    ``sessions`` items carry ``sport``, ``start`` (aware datetime),
    ``minutes``, ``distance_m`` and ``calories``.  Heart-rate records are
    written one minute apart from the first session start (or TEST_NOW).
    """
    first = sessions[0]["start"] if sessions else TEST_NOW
    body = _fit_definition(0, 0, [(0, 1, 0x00), (1, 2, 0x84), (4, 4, 0x86)])
    body += struct.pack("<BBHI", 0, 4, 1, _fit_time(first))

    if heart_rates:
        body += _fit_definition(2, 20, [(253, 4, 0x86), (3, 1, 0x02)])
        for i, bpm in enumerate(heart_rates):
            body += struct.pack("<BIB", 2, _fit_time(first + timedelta(minutes=i)), bpm)

    if sessions:
        body += _fit_definition(1, 18, [
            (253, 4, 0x86), (2, 4, 0x86), (5, 1, 0x00), (6, 1, 0x00), (7, 4, 0x86),
            (8, 4, 0x86), (9, 4, 0x86), (11, 2, 0x84), (16, 1, 0x02),
        ])
        for s in sessions:
            elapsed_ms = int(s["minutes"] * 60 * 1000)
            end = s["start"] + timedelta(minutes=s["minutes"])
            body += struct.pack(
                "<BIIBBIIIHB",
                1,
                _fit_time(end),
                _fit_time(s["start"]),
                FIT_SPORTS[s["sport"]],
                0,
                elapsed_ms,
                elapsed_ms,
                int(s.get("distance_m", 0) * 100),
                int(s.get("calories", 0)),
                0xFF,
            )

    header = struct.pack("<BBHI4s", 14, 0x20, 2132, len(body), b".FIT")
    header += struct.pack("<H", _fit_crc(header))
    return header + body + struct.pack("<H", _fit_crc(header + body))


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = TEST_NOW) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def now_ms(self) -> int:
        return to_epoch_ms(self.current)

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """The real sync config, with inter-call delays zeroed for speed."""
    config = load_sync_config()
    config.sync.session_distance_delay_ms = 0
    config.sync.history_day_delay_ms = 0
    return config


# ---------------------------------------------------------------------------
# Storage and tokens
# ---------------------------------------------------------------------------


@pytest.fixture
def repository() -> InMemorySyncRepository:
    return InMemorySyncRepository(batch_size=50)


@pytest.fixture
def token_client() -> MagicMock:
    """Direct OAuth token client that always hands out 'fresh-token'."""
    client = MagicMock()
    client.refresh_access_token = AsyncMock(
        return_value=TokenGrant(access_token="fresh-token", expires_in_s=3600)
    )
    return client


@pytest.fixture
def token_manager(
    repository: InMemorySyncRepository,
    token_client: MagicMock,
    sync_config: SyncConfig,
    clock: FakeClock,
) -> TokenLifecycleManager:
    """Token manager with no broker, a fixed clock and no early-refresh rolls."""
    return TokenLifecycleManager(
        CredentialStore(backing=repository),
        token_clients={PROVIDER: token_client},
        config=sync_config.tokens,
        now_ms=clock.now_ms,
        rand=lambda: 0.99,
    )


async def connect_primary(
    tokens: TokenLifecycleManager,
    user_id: UUID = TEST_USER_ID,
    access_token: str = "stale-token",
    expires_in_s: int = 3600,
) -> None:
    await tokens.connect(
        user_id,
        PROVIDER,
        TokenGrant(access_token=access_token, expires_in_s=expires_in_s, refresh_token="refresh-1"),
    )


# ---------------------------------------------------------------------------
# Provider fakes
# ---------------------------------------------------------------------------


class ScriptedFetcher(ProviderFetcher):
    """Primary provider fetcher that replays scripted results.

    ``results`` holds one RawDay (or exception) per fetch call; the last
    entry repeats.  ``gate`` (when set) holds every fetch until released.
    """

    SOURCE = SyncSource.PRIMARY_PROVIDER
    DISPLAY_NAME = "Scripted Fit"
    REQUIRES_TOKEN = True

    def __init__(self, *results: RawDay | Exception, distances: dict[str, float] | None = None) -> None:
        self.results = list(results)
        self.distances = distances or {}
        self.fetch_tokens: list[str | None] = []
        self.fetch_days: list[date] = []
        self.distance_calls: list[str] = []
        self.gate: asyncio.Event | None = None

    @property
    def fetch_count(self) -> int:
        return len(self.fetch_tokens)

    async def fetch_day(
        self, user_id: UUID, window: DayWindow, access_token: str | None = None
    ) -> RawDay | None:
        self.fetch_tokens.append(access_token)
        self.fetch_days.append(window.day)
        if self.gate is not None:
            await self.gate.wait()
        if not self.results:
            return None
        result = self.results[min(self.fetch_count, len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result

    async def session_distance(self, session: dict, access_token: str | None = None) -> float:
        self.distance_calls.append(session["id"])
        return self.distances.get(session["id"], 0.0)
