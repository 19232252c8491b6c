"""Store protocols consumed by the session services.

Implementations live in storage.memory (single process) and storage.sql
(PostgreSQL, shared across instances).
"""

import secrets
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sessionkeeper.storage.records import RenewalCredential, UserAccount

# 64 random bytes -> 512 bits of entropy, 86 url-safe characters
REFRESH_TOKEN_BYTES = 64


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


class CredentialStore(Protocol):
    async def create(
        self,
        user_id: UUID,
        *,
        device_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        created_by: UUID | None = None,
    ) -> RenewalCredential: ...

    async def find_by_token(self, token: str) -> RenewalCredential | None: ...

    async def list_active_for_user(self, user_id: UUID) -> list[RenewalCredential]:
        """Active credentials ordered by last use (falling back to issue time), newest first."""
        ...

    async def revoke(
        self, token: str, reason: str, revoked_by: UUID | None = None
    ) -> bool:
        """Revoke a credential. Already-revoked counts as success; unknown returns False."""
        ...

    async def revoke_if_active(
        self, token: str, reason: str, revoked_by: UUID | None = None
    ) -> bool:
        """Revoke only if currently active. True means this call performed the transition."""
        ...

    async def revoke_all(
        self, user_id: UUID, reason: str, revoked_by: UUID | None = None
    ) -> int: ...

    async def set_replaced_by(self, token: str, replacement: str) -> None: ...

    async def touch(self, token: str) -> None:
        """Record use of a credential (last_used_at = now)."""
        ...

    async def delete_expired(self) -> int: ...

    def user_lock(self, user_id: UUID) -> AbstractAsyncContextManager[None]:
        """Mutual exclusion for issuance and bulk revocation of one user's credentials."""
        ...


class BlacklistStore(Protocol):
    async def add(self, jti: str, expires_at: datetime) -> None: ...

    async def contains(self, jti: str, now: datetime) -> bool: ...

    async def purge_expired(self, now: datetime) -> int: ...


class AccountStore(Protocol):
    async def get_by_login_identifier(self, identifier: str) -> UserAccount | None: ...

    async def get_by_id(self, user_id: UUID) -> UserAccount | None: ...

    async def update_last_login(
        self, user_id: UUID, when: datetime, ip_address: str | None
    ) -> None: ...

    async def increment_failed_attempts(self, user_id: UUID) -> int: ...

    async def reset_failed_attempts(self, user_id: UUID) -> None: ...

    async def set_lock(self, user_id: UUID, until: datetime | None) -> None: ...

    async def clear_lock(self, user_id: UUID) -> None: ...

    def account_lock(self, user_id: UUID) -> AbstractAsyncContextManager[None]:
        """Mutual exclusion for the lock check, secret check and failure accounting of one user."""
        ...


class SecretVerifier(Protocol):
    def verify(self, stored_hash: str, secret: str) -> bool: ...

    def hash(self, secret: str) -> str: ...

    def burn(self, secret: str) -> None:
        """Do equivalent work to verify() when there is no account to check against."""
        ...
