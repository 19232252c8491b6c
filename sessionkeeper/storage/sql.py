"""PostgreSQL-backed stores (SQLAlchemy async).

Outside a per-user lock each method runs in its own short transaction.
Inside ``user_lock`` or ``account_lock`` every store built on the same
session factory runs on the session that holds the advisory lock, so a
locked section uses one pooled connection and commits or rolls back as a
unit. Races between service instances are decided in the database:
revocation uses conditional UPDATEs and per-user serialization uses
transaction-scoped advisory locks.
"""

import hashlib
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessionkeeper.core.clock import Clock, SystemClock
from sessionkeeper.core.locks import KeyedLock
from sessionkeeper.models.refresh_token import RefreshToken
from sessionkeeper.models.token_blacklist import TokenBlacklist
from sessionkeeper.models.user_account import UserAccount as UserAccountRow
from sessionkeeper.storage.base import generate_refresh_token
from sessionkeeper.storage.records import RenewalCredential, UserAccount

SESSIONS_LOCK_SCOPE = "sessions"
ACCOUNT_LOCK_SCOPE = "account"

# Session holding the current task's advisory lock, with the factory it came from
_locked_session: ContextVar[tuple[async_sessionmaker[AsyncSession], AsyncSession] | None] = (
    ContextVar("sessionkeeper_locked_session", default=None)
)


def advisory_lock_key(user_id: UUID, scope: str = SESSIONS_LOCK_SCOPE) -> int:
    """Map a user id onto the signed 64-bit keyspace of pg_advisory_xact_lock."""
    digest = hashlib.blake2b(
        user_id.bytes, digest_size=8, person=scope.encode("utf-8")[:16]
    ).digest()
    return int.from_bytes(digest, "big", signed=True)


def _to_credential(row: RefreshToken) -> RenewalCredential:
    return RenewalCredential(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        device_id=row.device_id,
        is_revoked=row.is_revoked,
        revoked_at=row.revoked_at,
        revoke_reason=row.revoke_reason,
        revoked_by=row.revoked_by,
        replaced_by_token=row.replaced_by_token,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        last_used_at=row.last_used_at,
        created_by=row.created_by,
    )


def _to_account(row: UserAccountRow) -> UserAccount:
    return UserAccount(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        username=row.username,
        secondary_id=row.secondary_id,
        display_name=row.display_name,
        is_active=row.is_active,
        failed_login_attempts=row.failed_login_attempts,
        is_locked=row.is_locked,
        lock_expires_at=row.lock_expires_at,
        last_login_at=row.last_login_at,
        last_login_ip=row.last_login_ip,
        login_count=row.login_count,
    )


class _SqlStore:
    """Session handling shared by the SQL stores."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker
        # Local waiters queue here instead of each holding a pooled connection
        self._local_locks = KeyedLock()

    def _bound_session(self) -> AsyncSession | None:
        bound = _locked_session.get()
        if bound is not None and bound[0] is self._session_maker:
            return bound[1]
        return None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Session for one store call: the locked section's, or a fresh transaction."""
        bound = self._bound_session()
        if bound is not None:
            yield bound
            return
        async with self._session_maker.begin() as session:
            yield session

    @asynccontextmanager
    async def _advisory_lock(self, user_id: UUID, scope: str) -> AsyncIterator[None]:
        key = advisory_lock_key(user_id, scope)
        async with self._local_locks.acquire((scope, user_id)):
            bound = self._bound_session()
            if bound is not None:
                await bound.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
                yield
                return

            # Transaction-scoped lock: released on commit/rollback even if the
            # holder is cancelled, so it can never leak onto a pooled connection.
            async with self._session_maker.begin() as session:
                await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
                token = _locked_session.set((self._session_maker, session))
                try:
                    yield
                finally:
                    _locked_session.reset(token)


class SqlCredentialStore(_SqlStore):
    """Renewal credentials in the refresh_tokens table."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        refresh_token_ttl: timedelta,
        clock: Clock | None = None,
        token_factory: Callable[[], str] = generate_refresh_token,
    ) -> None:
        super().__init__(session_maker)
        self._ttl = refresh_token_ttl
        self._clock = clock or SystemClock()
        self._token_factory = token_factory

    async def create(
        self,
        user_id: UUID,
        *,
        device_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        created_by: UUID | None = None,
    ) -> RenewalCredential:
        now = self._clock.now()
        row = RefreshToken(
            token=self._token_factory(),
            user_id=user_id,
            issued_at=now,
            expires_at=now + self._ttl,
            is_revoked=False,
            device_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_by=created_by if created_by is not None else user_id,
        )
        async with self._session() as session:
            session.add(row)
            await session.flush()
            return _to_credential(row)

    async def find_by_token(self, token: str) -> RenewalCredential | None:
        async with self._session() as session:
            row = await session.scalar(
                select(RefreshToken)
                .where(RefreshToken.token == token)
                .execution_options(populate_existing=True)
            )
            return _to_credential(row) if row is not None else None

    async def list_active_for_user(self, user_id: UUID) -> list[RenewalCredential]:
        now = self._clock.now()
        stmt = (
            select(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked.is_(False),
                RefreshToken.expires_at >= now,
            )
            .order_by(
                func.coalesce(RefreshToken.last_used_at, RefreshToken.issued_at).desc(),
                RefreshToken.issued_at.desc(),
            )
            .execution_options(populate_existing=True)
        )
        async with self._session() as session:
            rows = (await session.scalars(stmt)).all()
            return [_to_credential(row) for row in rows]

    async def revoke(self, token: str, reason: str, revoked_by: UUID | None = None) -> bool:
        async with self._session() as session:
            result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
                update(RefreshToken)
                .where(RefreshToken.token == token, RefreshToken.is_revoked.is_(False))
                .values(**self._revocation_values(reason, revoked_by))
            )
            if result.rowcount:
                return True
            existing = await session.scalar(
                select(RefreshToken.id).where(RefreshToken.token == token)
            )
            return existing is not None

    async def revoke_if_active(
        self, token: str, reason: str, revoked_by: UUID | None = None
    ) -> bool:
        now = self._clock.now()
        async with self._session() as session:
            result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
                update(RefreshToken)
                .where(
                    RefreshToken.token == token,
                    RefreshToken.is_revoked.is_(False),
                    RefreshToken.expires_at >= now,
                )
                .values(**self._revocation_values(reason, revoked_by))
            )
            return result.rowcount == 1

    async def revoke_all(self, user_id: UUID, reason: str, revoked_by: UUID | None = None) -> int:
        now = self._clock.now()
        async with self._session() as session:
            result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
                update(RefreshToken)
                .where(
                    RefreshToken.user_id == user_id,
                    RefreshToken.is_revoked.is_(False),
                    RefreshToken.expires_at >= now,
                )
                .values(**self._revocation_values(reason, revoked_by))
            )
            return result.rowcount

    async def set_replaced_by(self, token: str, replacement: str) -> None:
        async with self._session() as session:
            owners = dict(
                (
                    await session.execute(
                        select(RefreshToken.token, RefreshToken.user_id).where(
                            RefreshToken.token.in_([token, replacement])
                        )
                    )
                ).all()
            )
            if token not in owners or replacement not in owners:
                raise KeyError("Unknown refresh token")
            if owners[token] != owners[replacement]:
                raise ValueError("Replacement token belongs to a different user")
            await session.execute(
                update(RefreshToken)
                .where(RefreshToken.token == token)
                .values(replaced_by_token=replacement)
            )

    async def touch(self, token: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(RefreshToken)
                .where(RefreshToken.token == token)
                .values(last_used_at=self._clock.now())
            )

    async def delete_expired(self) -> int:
        now = self._clock.now()
        async with self._session() as session:
            result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
                delete(RefreshToken).where(RefreshToken.expires_at < now)
            )
            return result.rowcount

    def user_lock(self, user_id: UUID):
        return self._advisory_lock(user_id, SESSIONS_LOCK_SCOPE)

    def _revocation_values(self, reason: str, revoked_by: UUID | None) -> dict[str, Any]:
        return {
            "is_revoked": True,
            "revoked_at": self._clock.now(),
            "revoke_reason": reason,
            "revoked_by": revoked_by,
        }


class SqlBlacklistStore(_SqlStore):
    """Access-token denylist in the token_blacklist table."""

    async def add(self, jti: str, expires_at: datetime) -> None:
        stmt = pg_insert(TokenBlacklist).values(jti=jti, expires_at=expires_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=[TokenBlacklist.jti],
            set_={"expires_at": func.greatest(TokenBlacklist.expires_at, stmt.excluded.expires_at)},
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def contains(self, jti: str, now: datetime) -> bool:
        async with self._session() as session:
            found = await session.scalar(
                select(TokenBlacklist.jti).where(
                    TokenBlacklist.jti == jti, TokenBlacklist.expires_at > now
                )
            )
            return found is not None

    async def purge_expired(self, now: datetime) -> int:
        async with self._session() as session:
            result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
                delete(TokenBlacklist).where(TokenBlacklist.expires_at <= now)
            )
            return result.rowcount


class SqlAccountStore(_SqlStore):
    """Account lookups and lockout bookkeeping against user_accounts."""

    async def get_by_login_identifier(self, identifier: str) -> UserAccount | None:
        async with self._session() as session:
            row = await session.scalar(
                select(UserAccountRow)
                .where(func.lower(UserAccountRow.email) == identifier.lower())
                .execution_options(populate_existing=True)
            )
            if row is None:
                row = await session.scalar(
                    select(UserAccountRow)
                    .where(UserAccountRow.username == identifier)
                    .execution_options(populate_existing=True)
                )
            return _to_account(row) if row is not None else None

    async def get_by_id(self, user_id: UUID) -> UserAccount | None:
        async with self._session() as session:
            row = await session.get(UserAccountRow, user_id, populate_existing=True)
            return _to_account(row) if row is not None else None

    async def update_last_login(
        self, user_id: UUID, when: datetime, ip_address: str | None
    ) -> None:
        await self._update(
            user_id,
            last_login_at=when,
            last_login_ip=ip_address,
            login_count=UserAccountRow.login_count + 1,
        )

    async def increment_failed_attempts(self, user_id: UUID) -> int:
        async with self._session() as session:
            count = await session.scalar(
                update(UserAccountRow)
                .where(UserAccountRow.id == user_id)
                .values(failed_login_attempts=UserAccountRow.failed_login_attempts + 1)
                .returning(UserAccountRow.failed_login_attempts)
            )
            if count is None:
                raise KeyError(f"Unknown user: {user_id}")
            return count

    async def reset_failed_attempts(self, user_id: UUID) -> None:
        await self._update(user_id, failed_login_attempts=0)

    async def set_lock(self, user_id: UUID, until: datetime | None) -> None:
        await self._update(user_id, is_locked=True, lock_expires_at=until)

    async def clear_lock(self, user_id: UUID) -> None:
        await self._update(user_id, is_locked=False, lock_expires_at=None)

    def account_lock(self, user_id: UUID):
        return self._advisory_lock(user_id, ACCOUNT_LOCK_SCOPE)

    async def _update(self, user_id: UUID, **values: Any) -> None:
        async with self._session() as session:
            result: CursorResult[Any] = await session.execute(  # type: ignore[assignment]
                update(UserAccountRow).where(UserAccountRow.id == user_id).values(**values)
            )
            if result.rowcount == 0:
                raise KeyError(f"Unknown user: {user_id}")
