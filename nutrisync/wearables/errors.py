"""Failure taxonomy for the wearable sync engine.

Only ``AuthExpired`` is recovered locally (one forced refresh + retry).
Everything else reaches the caller as a failed sync with ``reason``.
"""

from __future__ import annotations


class SyncError(Exception):
    """Error communicating with a provider or storing its data."""

    #: Short machine-readable kind, stored on the run state.
    kind: str = "sync_error"

    def __init__(self, provider: str, detail: str, retriable: bool = False) -> None:
        self.provider = provider
        self.detail = detail
        self.retriable = retriable
        super().__init__(f"[{provider}] {detail}")

    @property
    def reason(self) -> str:
        """Human-readable reason for the UI."""
        return self.detail


class AuthExpired(SyncError):
    """The provider rejected the access token (HTTP 401)."""

    kind = "auth_expired"

    def __init__(self, provider: str, detail: str = "Access token rejected") -> None:
        super().__init__(provider, detail, retriable=True)


class PermanentAuthFailure(SyncError):
    """The grant is gone; the user has to reconnect the provider."""

    kind = "permanent_auth_failure"

    def __init__(self, provider: str, detail: str = "Reconnect required") -> None:
        super().__init__(provider, detail, retriable=False)

    @property
    def reason(self) -> str:
        return f"Reconnect required: {self.detail}"


class CredentialMissing(PermanentAuthFailure):
    """No credential (or no refresh token) is stored for this user + provider."""

    kind = "credential_missing"


class TransientNetwork(SyncError):
    """Timeout, connection failure, 429 or 5xx.  Credentials stay untouched."""

    kind = "transient_network"

    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(provider, detail, retriable=True)


class ProviderRequestError(SyncError):
    """A non-retriable provider response that is not an auth problem."""

    kind = "provider_request"


class PersistenceConflict(SyncError):
    """An upsert failed.  Earlier committed batches are kept."""

    kind = "persistence_conflict"

    def __init__(self, table: str, detail: str) -> None:
        super().__init__(table, detail, retriable=True)


class InvalidUploadFile(SyncError):
    """An uploaded device file could not be read."""

    kind = "invalid_upload"

    def __init__(self, detail: str) -> None:
        super().__init__("uploaded_file", detail, retriable=False)


class PartialDataUnavailable(SyncError):
    """An optional metric was missing; the field degrades to None."""

    kind = "partial_data"

    def __init__(self, provider: str, metric: str) -> None:
        self.metric = metric
        super().__init__(provider, f"{metric} unavailable", retriable=False)


# OAuth error codes that mean the grant can never be refreshed again.
PERMANENT_OAUTH_ERRORS = frozenset(
    {"invalid_grant", "invalid_client", "unauthorized_client"}
)


def is_permanent_oauth_error(code: str | None) -> bool:
    return bool(code) and code in PERMANENT_OAUTH_ERRORS
