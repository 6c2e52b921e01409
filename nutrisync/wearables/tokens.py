"""OAuth token lifecycle: when to refresh, how to refresh, what to do on failure.

Refresh is attempted when:
    - the caller forces it (e.g. after a 401),
    - no token or expiry is known,
    - the token expires within the refresh buffer (15 min), or
    - the token expires within the warning window (20 min) and a random
      early-refresh roll succeeds (p=0.3), which spreads refresh load across
      many idle clients instead of bunching it at the buffer edge.

The refresh itself goes through the server-side token broker first (keeps
the provider client secret off the caller) and falls back to the provider's
token endpoint with the stored refresh token.

Permanent failures (invalid/revoked grant, invalid/unauthorized client) clear
the stored credential.  Transient failures leave it alone so a cached,
possibly near-expired token can still be tried once.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from typing import Callable, Protocol
from uuid import UUID

import httpx

from nutrisync.wearables.base import Credential, TokenGrant, to_epoch_ms, utc_now
from nutrisync.wearables.config_loader import TokenConfig, get_sync_config
from nutrisync.wearables.credentials import CredentialStore
from nutrisync.wearables.errors import (
    CredentialMissing,
    PermanentAuthFailure,
    ProviderRequestError,
    SyncError,
    TransientNetwork,
    is_permanent_oauth_error,
)

logger = logging.getLogger("nutrisync.wearables.tokens")


class OAuthTokenClient(Protocol):
    """Direct refresh against a provider token endpoint."""

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant: ...


def _now_ms() -> int:
    return to_epoch_ms(utc_now())


# ---------------------------------------------------------------------------
# Response classification shared by the broker and provider token clients
# ---------------------------------------------------------------------------


def _error_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {"error_description": response.text[:200]}
    return body if isinstance(body, dict) else {}


def raise_for_token_response(response: httpx.Response, provider: str) -> None:
    """Map a failed token response onto the failure taxonomy.

    Raises:
        PermanentAuthFailure: invalid_grant / invalid_client / unauthorized_client,
                              or a broker response flagged ``needs_reauth``.
        TransientNetwork:     429 or 5xx.
        ProviderRequestError: Any other non-2xx response.
    """
    if response.is_success:
        return
    body = _error_body(response)
    error = body.get("error")
    code = error if isinstance(error, str) else None
    detail = str(body.get("error_description") or body.get("details") or code or response.status_code)

    if is_permanent_oauth_error(code) or body.get("needs_reauth") is True:
        raise PermanentAuthFailure(provider, f"{code or 'needs_reauth'}: {detail}")
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientNetwork(provider, f"Token endpoint returned {response.status_code}")
    raise ProviderRequestError(provider, f"Token refresh rejected ({response.status_code}): {detail}")


def parse_token_response(data: dict, provider: str) -> TokenGrant:
    """Build a TokenGrant from an OAuth (or broker) JSON response."""
    access_token = data.get("access_token")
    if not access_token:
        raise ProviderRequestError(provider, "Token response has no access_token")

    expires_at_ms: int | None = None
    expires_at = data.get("expires_at")
    if isinstance(expires_at, (int, float)):
        expires_at_ms = int(expires_at)
    elif isinstance(expires_at, str) and expires_at:
        try:
            expires_at_ms = to_epoch_ms(datetime.fromisoformat(expires_at.replace("Z", "+00:00")))
        except ValueError:
            logger.warning("Ignoring unparseable expires_at %r from %s", expires_at, provider)

    expires_in = data.get("expires_in")
    return TokenGrant(
        access_token=access_token,
        expires_in_s=int(expires_in) if expires_in is not None else None,
        expires_at_ms=expires_at_ms,
        refresh_token=data.get("refresh_token") or None,
        token_type=data.get("token_type", "Bearer"),
    )


# ---------------------------------------------------------------------------
# Server-mediated refresh
# ---------------------------------------------------------------------------


class TokenBrokerClient:
    """Refresh through the server-side token broker function.

    The broker holds the provider client secret and the durable token row;
    it answers with ``{access_token, expires_at, refresh_token?}`` or with
    ``{error, needs_reauth}``.
    """

    def __init__(
        self,
        broker_url: str,
        service_key: str,
        timeout_s: float = 45.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = broker_url
        self._service_key = service_key
        self._timeout = httpx.Timeout(timeout_s)
        self._http_client = http_client

    async def refresh(self, user_id: UUID, provider: str, force_refresh: bool = True) -> TokenGrant:
        payload = {"user_id": str(user_id), "provider": provider, "force_refresh": force_refresh}
        headers = {"Authorization": f"Bearer {self._service_key}"}
        try:
            if self._http_client:
                response = await self._http_client.post(
                    self._url, json=payload, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientNetwork(provider, f"Token broker timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetwork(provider, f"Token broker unreachable: {exc}") from exc

        raise_for_token_response(response, provider)
        return parse_token_response(response.json(), provider)


# ---------------------------------------------------------------------------
# Lifecycle manager
# ---------------------------------------------------------------------------


class TokenLifecycleManager:
    """Hand out valid access tokens, refreshing them when needed.

    Usage::

        manager = TokenLifecycleManager(store, {"google_fit": google_fit_adapter})
        token = await manager.get_access_token(user_id, "google_fit")
    """

    def __init__(
        self,
        store: CredentialStore,
        token_clients: dict[str, OAuthTokenClient] | None = None,
        broker: TokenBrokerClient | None = None,
        config: TokenConfig | None = None,
        now_ms: Callable[[], int] = _now_ms,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self._clients = token_clients or {}
        self._broker = broker
        self._config = config or get_sync_config().tokens
        self._now_ms = now_ms
        self._rand = rand
        self._inflight: dict[tuple[UUID, str], asyncio.Task[Credential]] = {}

    @property
    def store(self) -> CredentialStore:
        return self._store

    def needs_refresh(self, credential: Credential, force_refresh: bool = False) -> bool:
        """Return True if the credential should be refreshed now."""
        if force_refresh:
            return True
        remaining = credential.time_until_expiry_ms(self._now_ms())
        if not credential.access_token or remaining is None:
            return True
        if remaining <= self._config.refresh_buffer_ms:
            return True
        if remaining <= self._config.warning_window_ms:
            return self._rand() < self._config.early_refresh_probability
        return False

    async def get_access_token(
        self, user_id: UUID, provider: str, force_refresh: bool = False
    ) -> str:
        """Return a usable access token for the user + provider.

        Raises:
            CredentialMissing:    Nothing stored for this user + provider.
            PermanentAuthFailure: The refresh grant is gone; credential cleared.
            TransientNetwork:     Refresh failed transiently and no cached token
                                  is worth trying.
        """
        credential = await self._store.get(user_id, provider)
        if credential is None:
            raise CredentialMissing(provider, "Provider not connected")

        if not self.needs_refresh(credential, force_refresh):
            return credential.access_token  # type: ignore[return-value]

        try:
            fresh = await self._refresh_once(credential)
        except TransientNetwork as exc:
            if credential.access_token and not force_refresh:
                logger.warning(
                    "Token refresh for %s/%s failed transiently (%s); trying cached token",
                    user_id, provider, exc.detail,
                )
                return credential.access_token
            raise
        return fresh.access_token  # type: ignore[return-value]

    async def _refresh_once(self, credential: Credential) -> Credential:
        """Share one in-flight refresh between concurrent callers."""
        key = (credential.user_id, credential.provider)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self.refresh(credential))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def refresh(self, credential: Credential) -> Credential:
        """Refresh now via the broker, falling back to the direct token endpoint.

        On success the new token, rotated refresh token (if any) and expiry are
        written to the credential store.
        """
        user_id, provider = credential.user_id, credential.provider
        grant: TokenGrant | None = None
        broker_error: SyncError | None = None

        if self._broker is not None:
            try:
                grant = await self._broker.refresh(user_id, provider, force_refresh=True)
            except SyncError as exc:
                broker_error = exc
                logger.warning(
                    "Token broker refresh failed for %s/%s: %s. Falling back to direct refresh.",
                    user_id, provider, exc,
                )

        if grant is None:
            grant = await self._direct_refresh(credential, broker_error)

        now = self._now_ms()
        fresh = Credential(
            user_id=user_id,
            provider=provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at_ms=grant.resolve_expiry_ms(now, self._config.default_ttl_seconds),
        )
        await self._store.put(fresh)
        logger.info(
            "Refreshed %s token for user %s (expires in %ds)",
            provider, user_id, (fresh.expires_at_ms - now) // 1000,  # type: ignore[operator]
        )
        return fresh

    async def _direct_refresh(
        self, credential: Credential, broker_error: SyncError | None
    ) -> TokenGrant:
        user_id, provider = credential.user_id, credential.provider
        client = self._clients.get(provider)

        if client is None or not credential.refresh_token:
            error: SyncError = broker_error or CredentialMissing(
                provider, "No refresh token stored"
            )
            if isinstance(error, PermanentAuthFailure):
                await self._store.clear(user_id, provider)
            raise error

        try:
            return await client.refresh_access_token(credential.refresh_token)
        except PermanentAuthFailure:
            logger.warning("Refresh grant for %s/%s is no longer valid", user_id, provider)
            await self._store.clear(user_id, provider)
            raise

    async def connect(self, user_id: UUID, provider: str, grant: TokenGrant) -> Credential:
        """Store the grant from a completed OAuth authorization."""
        existing = await self._store.get(user_id, provider)
        credential = Credential(
            user_id=user_id,
            provider=provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or (existing.refresh_token if existing else None),
            expires_at_ms=grant.resolve_expiry_ms(self._now_ms(), self._config.default_ttl_seconds),
        )
        await self._store.put(credential)
        logger.info("Connected %s for user %s", provider, user_id)
        return credential

    async def disconnect(self, user_id: UUID, provider: str) -> None:
        await self._store.clear(user_id, provider)

    async def revalidate(self, user_id: UUID | None = None) -> int:
        """Run a non-forced token check for every cached credential.

        Lets a long-idle client resume with a fresh token instead of failing
        on first use.  Failures are logged; returns how many checks succeeded.
        """
        ok = 0
        for uid, provider in self._store.tracked():
            if user_id is not None and uid != user_id:
                continue
            try:
                await self.get_access_token(uid, provider)
                ok += 1
            except SyncError as exc:
                logger.warning("Token revalidation failed for %s/%s: %s", uid, provider, exc)
        return ok
