"""Google Fit REST adapter (primary provider).

Environment variables:
    GOOGLE_CLIENT_ID      - OAuth2 client ID (direct refresh fallback)
    GOOGLE_CLIENT_SECRET  - OAuth2 client secret

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    POST /dataset:aggregate   - Daily step / calorie / active-minute / heart-rate
                                aggregates and per-session distance
    GET  /sessions            - Activity sessions in a time range
    POST oauth2.googleapis.com/token - Refresh-token grant
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from uuid import UUID

import httpx

from nutrisync.wearables.base import (
    DayWindow,
    ProviderFetcher,
    RawDay,
    SyncSource,
    TokenGrant,
)
from nutrisync.wearables.config_loader import get_sync_config
from nutrisync.wearables.errors import (
    AuthExpired,
    PartialDataUnavailable,
    ProviderRequestError,
    SyncError,
    TransientNetwork,
)
from nutrisync.wearables.tokens import parse_token_response, raise_for_token_response

logger = logging.getLogger("nutrisync.wearables.google_fit")

_FIT_API_BASE = "https://www.googleapis.com/fitness/v1/users/me"
_AGGREGATE_URL = f"{_FIT_API_BASE}/dataset:aggregate"
_SESSIONS_URL = f"{_FIT_API_BASE}/sessions"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

_DAY_MS = 86_400_000

# data type → (value key, RawDay field)
_DAILY_METRICS: dict[str, tuple[str, str]] = {
    "com.google.step_count.delta": ("intVal", "steps"),
    "com.google.calories.expended": ("fpVal", "calories_burned"),
    "com.google.active_minutes": ("intVal", "active_minutes"),
}
_HEART_RATE = "com.google.heart_rate.bpm"
_DISTANCE = "com.google.distance.delta"


class GoogleFitAdapter(ProviderFetcher):
    """Google Fit adapter.

    Daily totals come from the aggregate endpoint with a single 24 h bucket
    over the user-local day; sessions come from the sessions endpoint and
    are classified by the orchestrator.  Exercise distance is queried per
    session window so that walking outside workouts never counts.

    Also serves as the direct OAuth token client for the lifecycle manager.
    """

    SOURCE = SyncSource.PRIMARY_PROVIDER
    DISPLAY_NAME = "Google Fit"
    REQUIRES_TOKEN = True

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Google Fit adapter.

        Args:
            client_id:     OAuth2 client ID (GOOGLE_CLIENT_ID env var).
            client_secret: OAuth2 client secret (GOOGLE_CLIENT_SECRET env var).
            http_client:   Optional pre-configured httpx client (for testing).
        """
        self._client_id = client_id or os.environ.get("GOOGLE_CLIENT_ID", "")
        self._client_secret = client_secret or os.environ.get("GOOGLE_CLIENT_SECRET", "")
        self._http_client = http_client
        self._config = get_sync_config()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token at the Google token endpoint.

        Google rarely rotates refresh tokens; when the response carries none
        the caller keeps the one it has.
        """
        logger.info("Google Fit: refreshing access token directly")
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        timeout = httpx.Timeout(self._config.tokens.refresh_timeout_seconds)
        try:
            if self._http_client:
                response = await self._http_client.post(
                    _GOOGLE_TOKEN_URL, data=data, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(_GOOGLE_TOKEN_URL, data=data)
        except httpx.TimeoutException as exc:
            raise TransientNetwork(self.SOURCE.value, f"Token endpoint timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetwork(self.SOURCE.value, f"Token endpoint unreachable: {exc}") from exc

        raise_for_token_response(response, self.SOURCE.value)
        return parse_token_response(response.json(), self.SOURCE.value)

    # ------------------------------------------------------------------
    # ProviderFetcher interface
    # ------------------------------------------------------------------

    async def fetch_day(
        self, user_id: UUID, window: DayWindow, access_token: str | None = None
    ) -> RawDay | None:
        """Fetch the day's aggregates and raw sessions.

        Steps, calories and active minutes are required; heart rate is
        optional and degrades to None.  An ``AuthExpired`` from any call
        propagates so the orchestrator can refresh and retry.
        """
        if not access_token:
            raise AuthExpired(self.SOURCE.value, "No access token supplied")

        logger.debug("Google Fit: fetching %s for user %s", window.day, user_id)
        metric_names = list(_DAILY_METRICS)
        results = await asyncio.gather(
            *(self._aggregate_value(name, window.start_ms, window.end_ms, access_token)
              for name in metric_names),
            self._heart_rate(window, access_token),
            self.list_sessions(window.start, window.end, access_token),
        )

        raw = RawDay()
        for name, value in zip(metric_names, results[: len(metric_names)]):
            value_key, field_name = _DAILY_METRICS[name]
            if value_key == "intVal":
                setattr(raw, field_name, self._safe_int(value) or 0)
            else:
                setattr(raw, field_name, self._safe_float(value) or 0.0)
        raw.heart_rate_avg = results[-2]
        raw.sessions = results[-1]
        return raw

    async def session_distance(self, session: dict, access_token: str | None = None) -> float:
        """Distance in meters inside one session's window; 0.0 on failure."""
        start_ms = self._safe_int(session.get("startTimeMillis"))
        end_ms = self._safe_int(session.get("endTimeMillis"))
        if start_ms is None or end_ms is None or end_ms <= start_ms or not access_token:
            return 0.0
        try:
            value = await self._aggregate_value(
                _DISTANCE, start_ms, end_ms, access_token, bucket_ms=end_ms - start_ms
            )
        except AuthExpired:
            raise
        except SyncError as exc:
            logger.warning("Google Fit: distance for session %s failed: %s", session.get("id"), exc)
            return 0.0
        return self._safe_float(value) or 0.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(
        self, start: datetime, end: datetime, access_token: str
    ) -> list[dict]:
        """Return raw sessions overlapping [start, end).

        A 401 propagates as ``AuthExpired``; anything else degrades to an
        empty list so the day's totals still sync.
        """
        params = {"startTime": _iso_z(start), "endTime": _iso_z(end)}
        try:
            data = await self._request("GET", _SESSIONS_URL, access_token, params=params)
        except AuthExpired:
            raise
        except SyncError as exc:
            logger.warning("Google Fit: session list unavailable: %s", exc)
            return []
        sessions = data.get("session") or []
        return [s for s in sessions if isinstance(s, dict)]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def _heart_rate(self, window: DayWindow, access_token: str) -> float | None:
        try:
            value = await self._aggregate_value(
                _HEART_RATE, window.start_ms, window.end_ms, access_token
            )
        except AuthExpired:
            raise
        except SyncError as exc:
            logger.info("%s (%s)", PartialDataUnavailable(self.SOURCE.value, "heart_rate"), exc.detail)
            return None
        return self._safe_float(value)

    async def _aggregate_value(
        self,
        data_type: str,
        start_ms: int,
        end_ms: int,
        access_token: str,
        bucket_ms: int = _DAY_MS,
    ) -> int | float | None:
        """Return the first point value of a single-bucket aggregate.

        The value key is whichever of ``intVal`` / ``fpVal`` is present.
        Returns None when the bucket has no points.
        """
        body = {
            "aggregateBy": [{"dataTypeName": data_type}],
            "bucketByTime": {"durationMillis": bucket_ms},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms,
        }
        data = await self._request("POST", _AGGREGATE_URL, access_token, json=body)
        try:
            value = data["bucket"][0]["dataset"][0]["point"][0]["value"][0]
        except (KeyError, IndexError, TypeError):
            return None
        if "intVal" in value:
            return value["intVal"]
        return value.get("fpVal")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        access_token: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> dict:
        """Make an authenticated request to the Fitness API.

        Raises:
            AuthExpired:          401.
            TransientNetwork:     Timeout, connection error, 429 or 5xx.
            ProviderRequestError: Any other non-2xx response.
        """
        provider = self.SOURCE.value
        headers = {"Authorization": f"Bearer {access_token}"}
        timeout = httpx.Timeout(self._config.sync.provider_fetch_timeout_seconds)
        try:
            if self._http_client:
                response = await self._http_client.request(
                    method, url, params=params, json=json, headers=headers, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(
                        method, url, params=params, json=json, headers=headers
                    )
        except httpx.TimeoutException as exc:
            raise TransientNetwork(provider, f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetwork(provider, f"{method} {url} failed: {exc}") from exc

        if response.status_code == 401:
            raise AuthExpired(provider)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetwork(provider, f"{method} {url} returned {response.status_code}")
        if not response.is_success:
            raise ProviderRequestError(
                provider, f"{method} {url} returned {response.status_code}: {response.text[:200]}"
            )
        return response.json()


def _iso_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
