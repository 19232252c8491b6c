"""In-memory stores for single-process deployments and tests.

All mutation happens under an asyncio.Lock and no lock is held across an
await of foreign code, so each method is atomic with respect to other
coroutines on the same event loop.
"""

import asyncio
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import replace
from datetime import datetime, timedelta
from uuid import UUID

from sessionkeeper.core.clock import Clock, SystemClock
from sessionkeeper.core.locks import KeyedLock
from sessionkeeper.storage.base import generate_refresh_token
from sessionkeeper.storage.records import RenewalCredential, UserAccount


class MemoryCredentialStore:
    """Renewal credentials held in a dict keyed by token value."""

    def __init__(
        self,
        *,
        refresh_token_ttl: timedelta,
        clock: Clock | None = None,
        token_factory: Callable[[], str] = generate_refresh_token,
    ) -> None:
        self._ttl = refresh_token_ttl
        self._clock = clock or SystemClock()
        self._token_factory = token_factory
        self._rows: dict[str, RenewalCredential] = {}
        # Insertion sequence breaks ties between credentials with equal timestamps
        self._sequence: dict[str, int] = {}
        self._next_seq = 0
        self._lock = asyncio.Lock()
        self._user_locks = KeyedLock()

    async def create(
        self,
        user_id: UUID,
        *,
        device_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        created_by: UUID | None = None,
    ) -> RenewalCredential:
        async with self._lock:
            token = self._token_factory()
            while token in self._rows:
                token = self._token_factory()
            now = self._clock.now()
            credential = RenewalCredential(
                id=uuid.uuid4(),
                token=token,
                user_id=user_id,
                issued_at=now,
                expires_at=now + self._ttl,
                device_id=device_id,
                ip_address=ip_address,
                user_agent=user_agent,
                created_by=created_by if created_by is not None else user_id,
            )
            self._rows[token] = credential
            self._sequence[token] = self._next_seq
            self._next_seq += 1
            return credential

    async def find_by_token(self, token: str) -> RenewalCredential | None:
        return self._rows.get(token)

    async def list_active_for_user(self, user_id: UUID) -> list[RenewalCredential]:
        now = self._clock.now()
        active = [
            row for row in self._rows.values() if row.user_id == user_id and row.is_active(now)
        ]
        active.sort(key=lambda row: (row.recency, self._sequence[row.token]), reverse=True)
        return active

    async def revoke(self, token: str, reason: str, revoked_by: UUID | None = None) -> bool:
        async with self._lock:
            row = self._rows.get(token)
            if row is None:
                return False
            if not row.is_revoked:
                self._rows[token] = self._revoked(row, reason, revoked_by)
            return True

    async def revoke_if_active(
        self, token: str, reason: str, revoked_by: UUID | None = None
    ) -> bool:
        async with self._lock:
            row = self._rows.get(token)
            if row is None or not row.is_active(self._clock.now()):
                return False
            self._rows[token] = self._revoked(row, reason, revoked_by)
            return True

    async def revoke_all(self, user_id: UUID, reason: str, revoked_by: UUID | None = None) -> int:
        async with self._lock:
            now = self._clock.now()
            count = 0
            for token, row in list(self._rows.items()):
                if row.user_id == user_id and row.is_active(now):
                    self._rows[token] = self._revoked(row, reason, revoked_by)
                    count += 1
            return count

    async def set_replaced_by(self, token: str, replacement: str) -> None:
        async with self._lock:
            row = self._rows.get(token)
            successor = self._rows.get(replacement)
            if row is None or successor is None:
                raise KeyError("Unknown refresh token")
            if row.user_id != successor.user_id:
                raise ValueError("Replacement token belongs to a different user")
            self._rows[token] = row.evolve(replaced_by_token=replacement)

    async def touch(self, token: str) -> None:
        async with self._lock:
            row = self._rows.get(token)
            if row is not None:
                self._rows[token] = row.evolve(last_used_at=self._clock.now())

    async def delete_expired(self) -> int:
        async with self._lock:
            now = self._clock.now()
            expired = [token for token, row in self._rows.items() if row.expires_at < now]
            for token in expired:
                del self._rows[token]
                del self._sequence[token]
            return len(expired)

    def user_lock(self, user_id: UUID) -> AbstractAsyncContextManager[None]:
        return self._user_locks.acquire(user_id)

    def _revoked(
        self, row: RenewalCredential, reason: str, revoked_by: UUID | None
    ) -> RenewalCredential:
        return row.evolve(
            is_revoked=True,
            revoked_at=self._clock.now(),
            revoke_reason=reason,
            revoked_by=revoked_by,
        )


class MemoryBlacklistStore:
    """JTI -> expiry map; expired entries are dropped lazily and by purge_expired()."""

    def __init__(self) -> None:
        self._entries: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def add(self, jti: str, expires_at: datetime) -> None:
        async with self._lock:
            current = self._entries.get(jti)
            if current is None or expires_at > current:
                self._entries[jti] = expires_at

    async def contains(self, jti: str, now: datetime) -> bool:
        async with self._lock:
            expires_at = self._entries.get(jti)
            if expires_at is None:
                return False
            if now >= expires_at:
                del self._entries[jti]
                return False
            return True

    async def purge_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [jti for jti, exp in self._entries.items() if now >= exp]
            for jti in expired:
                del self._entries[jti]
            return len(expired)


class MemoryAccountStore:
    """Account records keyed by id, with username/email lookup."""

    def __init__(self, users: list[UserAccount] | None = None) -> None:
        self._users: dict[UUID, UserAccount] = {}
        self._lock = asyncio.Lock()
        self._account_locks = KeyedLock()
        for user in users or []:
            self._users[user.id] = replace(user)

    def add(self, user: UserAccount) -> UserAccount:
        for existing in self._users.values():
            if existing.email.lower() == user.email.lower():
                raise ValueError(f"Email already registered: {user.email}")
            if user.username and existing.username == user.username:
                raise ValueError(f"Username already taken: {user.username}")
        self._users[user.id] = replace(user)
        return replace(user)

    async def get_by_login_identifier(self, identifier: str) -> UserAccount | None:
        lowered = identifier.lower()
        for user in self._users.values():
            if user.email.lower() == lowered:
                return replace(user)
        for user in self._users.values():
            if user.username is not None and user.username == identifier:
                return replace(user)
        return None

    async def get_by_id(self, user_id: UUID) -> UserAccount | None:
        user = self._users.get(user_id)
        return replace(user) if user is not None else None

    async def update_last_login(
        self, user_id: UUID, when: datetime, ip_address: str | None
    ) -> None:
        async with self._lock:
            user = self._require(user_id)
            user.last_login_at = when
            user.last_login_ip = ip_address
            user.login_count += 1

    async def increment_failed_attempts(self, user_id: UUID) -> int:
        async with self._lock:
            user = self._require(user_id)
            user.failed_login_attempts += 1
            return user.failed_login_attempts

    async def reset_failed_attempts(self, user_id: UUID) -> None:
        async with self._lock:
            self._require(user_id).failed_login_attempts = 0

    async def set_lock(self, user_id: UUID, until: datetime | None) -> None:
        async with self._lock:
            user = self._require(user_id)
            user.is_locked = True
            user.lock_expires_at = until

    async def clear_lock(self, user_id: UUID) -> None:
        async with self._lock:
            user = self._require(user_id)
            user.is_locked = False
            user.lock_expires_at = None

    def account_lock(self, user_id: UUID) -> AbstractAsyncContextManager[None]:
        return self._account_locks.acquire(user_id)

    def _require(self, user_id: UUID) -> UserAccount:
        user = self._users.get(user_id)
        if user is None:
            raise KeyError(f"Unknown user: {user_id}")
        return user
