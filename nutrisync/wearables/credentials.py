"""Process-wide credential table keyed by (user_id, provider).

Entries are created on first access (lazily loaded from the backing store
when one is configured) and evicted on sign-out.  Only the token lifecycle
manager writes to this store; everything else reads.

The backing store is any object with async ``load_credential``,
``save_credential`` and ``delete_credential`` methods - the Postgres and
in-memory sync repositories both qualify.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Protocol
from uuid import UUID

from nutrisync.wearables.base import Credential

logger = logging.getLogger("nutrisync.wearables.credentials")


class CredentialBacking(Protocol):
    async def load_credential(self, user_id: UUID, provider: str) -> Credential | None: ...

    async def save_credential(self, credential: Credential) -> None: ...

    async def delete_credential(self, user_id: UUID, provider: str) -> None: ...


class CredentialStore:
    """Current access/refresh token and expiry per user + provider."""

    def __init__(self, backing: CredentialBacking | None = None) -> None:
        self._backing = backing
        self._entries: dict[tuple[UUID, str], Credential] = {}
        self._loaded: set[tuple[UUID, str]] = set()

    async def get(self, user_id: UUID, provider: str) -> Credential | None:
        """Return a copy of the stored credential, loading it on first access."""
        key = (user_id, provider)
        if key not in self._loaded and key not in self._entries and self._backing:
            loaded = await self._backing.load_credential(user_id, provider)
            if loaded is not None and key not in self._entries:
                self._entries[key] = loaded
            self._loaded.add(key)
        cred = self._entries.get(key)
        return replace(cred) if cred else None

    async def has_credential(self, user_id: UUID, provider: str) -> bool:
        cred = await self.get(user_id, provider)
        return cred is not None and bool(cred.access_token or cred.refresh_token)

    async def put(self, credential: Credential) -> None:
        key = (credential.user_id, credential.provider)
        self._entries[key] = replace(credential)
        self._loaded.add(key)
        if self._backing:
            await self._backing.save_credential(credential)

    async def clear(self, user_id: UUID, provider: str) -> None:
        """Drop the credential entirely; the user must re-authorize."""
        key = (user_id, provider)
        self._entries.pop(key, None)
        self._loaded.add(key)
        if self._backing:
            await self._backing.delete_credential(user_id, provider)
        logger.info("Cleared %s credential for user %s", provider, user_id)

    def evict_user(self, user_id: UUID) -> None:
        """Forget every cached entry for a user (sign-out).  Durable rows stay."""
        for key in [k for k in self._entries if k[0] == user_id]:
            del self._entries[key]
        self._loaded = {k for k in self._loaded if k[0] != user_id}

    def tracked(self) -> list[tuple[UUID, str]]:
        """Keys currently cached in this process."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
