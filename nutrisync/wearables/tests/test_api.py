"""Tests for the sync API routes (in-memory backend, no lifespan)."""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")
os.environ.setdefault("BACKGROUND_SYNC_ENABLED", "false")

from nutrisync.config import Settings, get_settings  # noqa: E402
from nutrisync.main import create_app  # noqa: E402
from nutrisync.services.sync_engine import SyncEngine, build_sync_engine  # noqa: E402
from nutrisync.wearables.config_loader import load_sync_config  # noqa: E402
from nutrisync.wearables.sync.persistence import InMemorySyncRepository  # noqa: E402
from nutrisync.wearables.tests.conftest import TEST_DATE, TEST_USER_ID, build_fit_file  # noqa: E402

BASE = f"/api/v1/wearables/{TEST_USER_ID}"


@pytest.fixture
def settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def engine(settings: Settings) -> SyncEngine:
    engine = build_sync_engine(
        settings, repository=InMemorySyncRepository(), config=load_sync_config()
    )
    engine.triggers = MagicMock()
    return engine


@pytest.fixture
def client(engine: SyncEngine) -> TestClient:
    app = create_app()
    app.state.sync_engine = engine
    return TestClient(app)


@pytest.fixture
def auth(settings: Settings) -> dict:
    return {"X-Internal-Key": settings.internal_api_key}


def _signed(body: dict, secret: str) -> tuple[bytes, dict]:
    raw = json.dumps(body).encode()
    signature = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return raw, {"x-webhook-signature": signature, "content-type": "application/json"}


class TestHealth:
    def test_health_without_database(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["persistence"] == "memory"
        assert body["database"] == "not_used"


class TestAuth:
    def test_missing_key_rejected(self, client: TestClient) -> None:
        assert client.get(f"{BASE}/sync").status_code == 401

    def test_wrong_key_rejected(self, client: TestClient) -> None:
        response = client.get(f"{BASE}/sync", headers={"X-Internal-Key": "nope"})
        assert response.status_code == 401


class TestSyncRoutes:
    def test_status_of_new_user(self, client: TestClient, auth: dict) -> None:
        response = client.get(f"{BASE}/sync", headers=auth)
        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["is_syncing"] is False

    def test_upload_then_sync_returns_uploaded_snapshot(
        self, client: TestClient, auth: dict, engine: SyncEngine
    ) -> None:
        upload = client.post(
            f"{BASE}/uploads",
            headers=auth,
            json={"date": TEST_DATE.isoformat(), "steps": 15000, "distance_m": 8200.0},
        )
        assert upload.status_code == 201
        engine.triggers.on_sync_success.assert_called_once_with(TEST_USER_ID, TEST_DATE)

        response = client.post(f"{BASE}/sync", headers=auth, json={"date": TEST_DATE.isoformat()})

        assert response.status_code == 200
        body = response.json()
        assert body["snapshot"]["steps"] == 15000
        assert body["snapshot"]["sync_source"] == "uploaded_file"
        assert body["state"]["status"] == "success"

    def test_fit_upload_stores_snapshot(
        self, client: TestClient, auth: dict, engine: SyncEngine
    ) -> None:
        content = build_fit_file(
            [{
                "sport": "running",
                "start": datetime(2026, 2, 23, 7, 0, tzinfo=timezone.utc),
                "minutes": 30,
                "distance_m": 5000,
                "calories": 320,
            }],
            heart_rates=(150,),
        )

        response = client.post(
            f"{BASE}/uploads/fit",
            headers=auth,
            files={"file": ("morning-run.fit", content, "application/octet-stream")},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["date"] == TEST_DATE.isoformat()
        assert body["sync_source"] == "uploaded_file"
        assert body["distance_m"] == 5000
        engine.triggers.on_sync_success.assert_called_once_with(TEST_USER_ID, TEST_DATE)

    def test_fit_upload_wrong_extension(self, client: TestClient, auth: dict) -> None:
        response = client.post(
            f"{BASE}/uploads/fit",
            headers=auth,
            files={"file": ("export.csv", b"steps,1000", "text/csv")},
        )
        assert response.status_code == 400

    def test_fit_upload_unreadable(self, client: TestClient, auth: dict, engine: SyncEngine) -> None:
        response = client.post(
            f"{BASE}/uploads/fit",
            headers=auth,
            files={"file": ("broken.fit", b"\x00" * 64, "application/octet-stream")},
        )
        assert response.status_code == 400
        engine.triggers.on_sync_success.assert_not_called()

    def test_sync_with_no_source(self, client: TestClient, auth: dict) -> None:
        response = client.post(f"{BASE}/sync", headers=auth, json={"date": "2026-02-20"})
        assert response.status_code == 200
        assert response.json()["snapshot"] is None
        assert response.json()["state"]["phase"] == "done"

    def test_snapshot_not_found(self, client: TestClient, auth: dict) -> None:
        assert client.get(f"{BASE}/snapshots/2026-02-23", headers=auth).status_code == 404

    def test_health_store_payload_feeds_sync(self, client: TestClient, auth: dict) -> None:
        payload = {
            "date": "2026-02-23",
            "steps": 7000,
            "active_minutes": 40,
            "sessions": [
                {
                    "id": "hk-run",
                    "activity_type": "running",
                    "start_time": "2026-02-23T06:00:00Z",
                    "end_time": "2026-02-23T06:30:00Z",
                    "distance_m": 5100,
                }
            ],
        }
        accepted = client.post(f"{BASE}/health-store", headers=auth, json=payload)
        assert accepted.status_code == 202

        body = client.post(f"{BASE}/sync", headers=auth, json={"date": "2026-02-23"}).json()
        assert body["snapshot"]["sync_source"] == "health_store"
        assert body["snapshot"]["distance_m"] == 5100
        assert body["snapshot"]["sessions"][0]["session_id"] == "hk-run"

        stored = client.get(f"{BASE}/snapshots/2026-02-23", headers=auth)
        assert stored.status_code == 200
        assert stored.json()["steps"] == 7000

    def test_health_store_inverted_session_rejected(self, client: TestClient, auth: dict) -> None:
        payload = {
            "date": "2026-02-23",
            "sessions": [
                {
                    "id": "bad",
                    "start_time": "2026-02-23T07:00:00Z",
                    "end_time": "2026-02-23T06:00:00Z",
                }
            ],
        }
        assert client.post(f"{BASE}/health-store", headers=auth, json=payload).status_code == 422

    def test_backfill_range_validated(self, client: TestClient, auth: dict) -> None:
        response = client.post(f"{BASE}/backfill", headers=auth, json={"days_back": 90})
        assert response.status_code == 422


class TestEventsAndConnections:
    def test_focus_event(self, client: TestClient, auth: dict, engine: SyncEngine) -> None:
        response = client.post(f"{BASE}/events", headers=auth, json={"event": "focus"})
        assert response.status_code == 200
        assert response.json() == {"event": "focus", "synced": False}
        assert TEST_USER_ID in engine.scheduler.users

    def test_connect_and_disconnect(self, client: TestClient, auth: dict, engine: SyncEngine) -> None:
        put = client.put(
            f"{BASE}/connections/google-fit",
            headers=auth,
            json={"access_token": "ya29.token", "refresh_token": "1//refresh", "expires_in": 3600},
        )
        assert put.status_code == 200
        assert put.json()["connected"] is True
        assert put.json()["expires_at"] is not None

        assert client.get(f"{BASE}/connections/google-fit", headers=auth).json()["connected"] is True

        assert client.delete(f"{BASE}/connections/google-fit", headers=auth).status_code == 200
        assert client.get(f"{BASE}/connections/google-fit", headers=auth).json()["connected"] is False

    def test_signout_evicts_state(self, client: TestClient, auth: dict, engine: SyncEngine) -> None:
        client.get(f"{BASE}/sync", headers=auth)
        assert TEST_USER_ID in engine.orchestrator.states

        assert client.post(f"{BASE}/signout", headers=auth).json() == {"status": "ok"}
        assert TEST_USER_ID not in engine.orchestrator.states


class TestUpstreamWebhook:
    def test_valid_signature_schedules_recompute(
        self, client: TestClient, settings: Settings, engine: SyncEngine
    ) -> None:
        event = {
            "type": "UPDATE",
            "table": "google_fit_data",
            "record": {"user_id": str(TEST_USER_ID), "date": "2026-02-23"},
        }
        raw, headers = _signed(event, settings.webhook_secret)

        response = client.post("/api/v1/webhooks/upstream-change", content=raw, headers=headers)

        assert response.status_code == 202
        assert response.json() == {"status": "scheduled"}
        engine.triggers.on_upstream_change.assert_called_once_with(TEST_USER_ID, date(2026, 2, 23))

    def test_delete_event_uses_old_record(
        self, client: TestClient, settings: Settings, engine: SyncEngine
    ) -> None:
        event = {"type": "DELETE", "table": "google_fit_sessions", "old_record": {"user_id": str(TEST_USER_ID)}}
        raw, headers = _signed(event, settings.webhook_secret)

        response = client.post("/api/v1/webhooks/upstream-change", content=raw, headers=headers)

        assert response.json() == {"status": "scheduled"}
        engine.triggers.on_upstream_change.assert_called_once_with(TEST_USER_ID, None)

    def test_bad_signature_rejected(self, client: TestClient, engine: SyncEngine) -> None:
        raw, headers = _signed({"type": "INSERT", "table": "t"}, "wrong-secret")
        response = client.post("/api/v1/webhooks/upstream-change", content=raw, headers=headers)
        assert response.status_code == 400
        engine.triggers.on_upstream_change.assert_not_called()

    def test_event_without_user_ignored(self, client: TestClient, settings: Settings) -> None:
        raw, headers = _signed({"type": "INSERT", "table": "t", "record": {}}, settings.webhook_secret)
        response = client.post("/api/v1/webhooks/upstream-change", content=raw, headers=headers)
        assert response.json() == {"status": "ignored"}
