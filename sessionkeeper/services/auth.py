"""Authentication entry points: login, renew, logout, logout-all, authenticate.

Composes AccountGuard, SessionIssuer, RevocationRegistry and
SignedTokenCodec, and translates every failure into the AuthError
taxonomy. Anything else raised by a collaborator is logged with its
traceback and surfaced as InternalFailureError.
"""

import asyncio
from collections.abc import Awaitable
from datetime import timedelta
from typing import Protocol, TypeVar
from uuid import UUID

from sessionkeeper.core.clock import Clock, SystemClock
from sessionkeeper.core.config import Settings
from sessionkeeper.core.logging import get_logger, obfuscate_token
from sessionkeeper.services.account_guard import AccountGuard
from sessionkeeper.services.errors import (
    AccountLockedError,
    AuthError,
    InternalFailureError,
    InvalidCredentialsError,
    OperationTimeoutError,
    TokenRevokedError,
)
from sessionkeeper.services.passwords import Argon2SecretVerifier
from sessionkeeper.services.revocation import RevocationRegistry
from sessionkeeper.services.session_issuer import (
    REASON_LOGOUT,
    REASON_LOGOUT_ALL,
    IssuedSession,
    SessionIssuer,
)
from sessionkeeper.services.token_codec import AccessClaims, SignedTokenCodec
from sessionkeeper.storage.base import (
    AccountStore,
    BlacklistStore,
    CredentialStore,
    SecretVerifier,
)
from sessionkeeper.storage.memory import (
    MemoryAccountStore,
    MemoryBlacklistStore,
    MemoryCredentialStore,
)
from sessionkeeper.storage.records import DeviceContext, LoginSucceeded, RenewalCredential

logger = get_logger("auth")

T = TypeVar("T")


class LoginEventSink(Protocol):
    """Receives a typed event after every successful login."""

    async def login_succeeded(self, event: LoginSucceeded) -> None: ...


class AuthenticationFacade:
    """Service for authentication operations."""

    def __init__(
        self,
        *,
        accounts: AccountStore,
        credentials: CredentialStore,
        verifier: SecretVerifier,
        guard: AccountGuard,
        issuer: SessionIssuer,
        registry: RevocationRegistry,
        codec: SignedTokenCodec,
        event_sink: LoginEventSink | None = None,
        operation_timeout: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._accounts = accounts
        self._credentials = credentials
        self._verifier = verifier
        self._guard = guard
        self._issuer = issuer
        self._registry = registry
        self._codec = codec
        self._event_sink = event_sink
        self._timeout = operation_timeout
        self._clock = clock or SystemClock()

    @property
    def accounts(self) -> AccountStore:
        return self._accounts

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def registry(self) -> RevocationRegistry:
        return self._registry

    @property
    def access_token_ttl(self) -> timedelta:
        return self._issuer.access_token_ttl

    async def login(
        self,
        login_identifier: str,
        secret: str,
        context: DeviceContext,
        *,
        timeout: float | None = None,
    ) -> IssuedSession:
        """Authenticate by email or username and issue a session.

        Raises InvalidCredentialsError for "no such user", "inactive user"
        and "wrong password" alike to prevent account enumeration.
        """
        return await self._run("login", self._login(login_identifier, secret, context), timeout)

    async def renew(
        self, refresh_token: str, context: DeviceContext, *, timeout: float | None = None
    ) -> IssuedSession:
        return await self._run("renew", self._renew(refresh_token, context), timeout)

    async def logout(
        self,
        refresh_token: str,
        reason: str = REASON_LOGOUT,
        *,
        access_token: str | None = None,
        revoked_by: UUID | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Revoke one session. Returns False if the refresh token was never issued.

        When the caller's access token is given, its unique id is also
        blacklisted so it stops working before its natural expiry.
        """
        return await self._run(
            "logout", self._logout(refresh_token, reason, access_token, revoked_by), timeout
        )

    async def logout_all(
        self,
        user_id: UUID,
        reason: str = REASON_LOGOUT_ALL,
        *,
        access_token: str | None = None,
        timeout: float | None = None,
    ) -> int:
        return await self._run(
            "logout_all", self._logout_all(user_id, reason, access_token), timeout
        )

    async def authenticate(self, access_token: str, *, timeout: float | None = None) -> AccessClaims:
        """Verify an access token and check it against the blacklist."""
        return await self._run("authenticate", self._authenticate(access_token), timeout)

    async def list_sessions(
        self, user_id: UUID, *, timeout: float | None = None
    ) -> list[RenewalCredential]:
        return await self._run("list_sessions", self._issuer.list_sessions(user_id), timeout)

    async def _login(self, login_identifier: str, secret: str, context: DeviceContext) -> IssuedSession:
        user = await self._accounts.get_by_login_identifier(login_identifier.strip())
        if user is None or not user.is_active:
            # Perform a dummy verification to prevent timing attacks
            self._verifier.burn(secret)
            logger.warning(f"Login failed for '{login_identifier}': unknown or inactive account")
            raise InvalidCredentialsError("Unknown or inactive account")

        attempt = await self._guard.attempt(
            user.id, lambda current: self._verifier.verify(current.password_hash, secret)
        )
        if attempt.user is None:
            self._verifier.burn(secret)
            logger.warning(f"Login failed for user {user.id}: account deactivated during login")
            raise InvalidCredentialsError("Unknown or inactive account")
        if attempt.locked:
            logger.warning(f"Login rejected for locked user {user.id}")
            raise AccountLockedError(attempt.locked_until)
        if not attempt.accepted:
            logger.warning(
                f"Login failed for user {user.id}: wrong password "
                f"({attempt.failures}/{self._guard.threshold} attempts)"
            )
            raise InvalidCredentialsError("Wrong password")

        user = attempt.user
        issued = await self._issuer.issue_session(user, context)
        logger.info(
            f"User {user.id} logged in on device {issued.credential.device_id}",
            extra={"operation": "login", "user_id": user.id, "device_id": issued.credential.device_id},
        )

        await self._emit_login(
            LoginSucceeded(
                user_id=user.id,
                device_id=issued.credential.device_id,
                occurred_at=issued.credential.issued_at,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
        )
        return issued

    async def _renew(self, refresh_token: str, context: DeviceContext) -> IssuedSession:
        issued = await self._issuer.renew_session(refresh_token, context)
        logger.info(f"Session renewed for user {issued.user.id}")
        return issued

    async def _logout(
        self,
        refresh_token: str,
        reason: str,
        access_token: str | None,
        revoked_by: UUID | None,
    ) -> bool:
        if access_token:
            await self._blacklist_access_token(access_token)
        found = await self._issuer.terminate_session(refresh_token, reason, revoked_by)
        if found:
            logger.info(f"Logged out session {obfuscate_token(refresh_token)}")
        return found

    async def _logout_all(self, user_id: UUID, reason: str, access_token: str | None) -> int:
        if access_token:
            await self._blacklist_access_token(access_token)
        return await self._issuer.terminate_all_sessions(user_id, reason, revoked_by=user_id)

    async def _authenticate(self, access_token: str) -> AccessClaims:
        claims = self._codec.verify(access_token)
        if await self._registry.is_blacklisted(claims.jti):
            logger.warning(f"Rejected blacklisted access token for user {claims.user_id}")
            raise TokenRevokedError("Token has been revoked")
        return claims

    async def _blacklist_access_token(self, access_token: str) -> None:
        jti = self._codec.peek_unique_id(access_token)
        if not jti:
            logger.debug(f"No unique id in access token {obfuscate_token(access_token)}")
            return
        # The unverified expiry only bounds the entry; never keep it past one TTL
        ceiling = self._clock.now() + self.access_token_ttl
        expires_at = self._codec.peek_expiry(access_token)
        until = min(expires_at, ceiling) if expires_at else ceiling
        await self._registry.blacklist(jti, until)

    async def _emit_login(self, event: LoginSucceeded) -> None:
        if self._event_sink is None:
            return
        try:
            await self._event_sink.login_succeeded(event)
        except Exception:
            logger.exception(f"Login event sink failed for user {event.user_id}")

    async def _run(self, operation: str, work: Awaitable[T], timeout: float | None) -> T:
        deadline = timeout if timeout is not None else self._timeout
        try:
            if deadline is None:
                return await work
            return await asyncio.wait_for(work, deadline)
        except AuthError:
            raise
        except TimeoutError as e:
            logger.error(
                f"Operation {operation} timed out after {deadline}s", extra={"operation": operation}
            )
            raise OperationTimeoutError(f"{operation} timed out") from e
        except Exception as e:
            logger.exception(f"Internal failure during {operation}: {e}", extra={"operation": operation})
            raise InternalFailureError(f"{operation} failed") from e


def build_auth_facade(
    config: Settings,
    *,
    clock: Clock | None = None,
    accounts: AccountStore | None = None,
    event_sink: LoginEventSink | None = None,
) -> AuthenticationFacade:
    """Wire the facade over the configured storage backend."""
    clock = clock or SystemClock()
    credentials: CredentialStore
    blacklist: BlacklistStore

    if config.storage_backend == "memory":
        credentials = MemoryCredentialStore(refresh_token_ttl=config.refresh_token_ttl, clock=clock)
        blacklist = MemoryBlacklistStore()
        accounts = accounts or MemoryAccountStore()
    else:
        from sessionkeeper.core.database import async_session_maker
        from sessionkeeper.storage.sql import (
            SqlAccountStore,
            SqlBlacklistStore,
            SqlCredentialStore,
        )

        credentials = SqlCredentialStore(
            async_session_maker, refresh_token_ttl=config.refresh_token_ttl, clock=clock
        )
        blacklist = SqlBlacklistStore(async_session_maker)
        accounts = accounts or SqlAccountStore(async_session_maker)

    codec = SignedTokenCodec.from_settings(config, clock)
    return AuthenticationFacade(
        accounts=accounts,
        credentials=credentials,
        verifier=Argon2SecretVerifier(),
        guard=AccountGuard.from_settings(accounts, config, clock),
        issuer=SessionIssuer.from_settings(credentials, accounts, codec, config, clock),
        registry=RevocationRegistry(blacklist, enabled=config.token_blacklist_enabled, clock=clock),
        codec=codec,
        event_sink=event_sink,
        operation_timeout=config.auth_operation_timeout_seconds,
        clock=clock,
    )
