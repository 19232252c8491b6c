"""Issuance, rotation and teardown of access/refresh token pairs.

Issuance and bulk revocation for a user run under that user's lock
(CredentialStore.user_lock), so the device ceiling is never exceeded by
concurrent logins and a logout-all cannot miss a credential issued
concurrently. Rotation is decided by an atomic revoke-if-active, so a
replayed refresh token can succeed at most once.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import UUID

from sessionkeeper.core.clock import Clock, SystemClock
from sessionkeeper.core.config import Settings
from sessionkeeper.core.logging import get_logger, obfuscate_token
from sessionkeeper.services.errors import InvalidRenewalCredentialError
from sessionkeeper.services.token_codec import SignedTokenCodec, TokenSubject
from sessionkeeper.storage.base import AccountStore, CredentialStore
from sessionkeeper.storage.records import DeviceContext, RenewalCredential, UserAccount

logger = get_logger("session_issuer")

REASON_DEVICE_LIMIT = "device limit exceeded"
REASON_ROTATION = "rotation"
REASON_SUPERSEDED = "superseded by new login"
REASON_CASCADE = "ancestor revoked"
REASON_ISSUE_FAILED = "issuance failed"
REASON_LOGOUT = "user logout"
REASON_LOGOUT_ALL = "logout all devices"

DEFAULT_ACCESS_TOKEN_TTL = timedelta(minutes=15)
DEFAULT_MAX_ACTIVE_DEVICES = 3


@dataclass(frozen=True)
class IssuedSession:
    access_token: str
    access_expires_at: datetime
    credential: RenewalCredential
    user: UserAccount

    @property
    def refresh_token(self) -> str:
        return self.credential.token


def subject_for(user: UserAccount) -> TokenSubject:
    return TokenSubject(
        user_id=user.id,
        login_identifier=user.login_name,
        display_name=user.display_name,
        secondary_identifier=user.secondary_id,
    )


class SessionIssuer:
    """The session state machine over CredentialStore and SignedTokenCodec."""

    def __init__(
        self,
        credentials: CredentialStore,
        accounts: AccountStore,
        codec: SignedTokenCodec,
        *,
        access_token_ttl: timedelta = DEFAULT_ACCESS_TOKEN_TTL,
        max_active_devices: int = DEFAULT_MAX_ACTIVE_DEVICES,
        rotation_enabled: bool = True,
        revoke_descendants: bool = False,
        clock: Clock | None = None,
    ) -> None:
        if max_active_devices < 1:
            raise ValueError("max_active_devices must be at least 1")
        self._credentials = credentials
        self._accounts = accounts
        self._codec = codec
        self._access_ttl = access_token_ttl
        self._max_devices = max_active_devices
        self._rotation_enabled = rotation_enabled
        self._revoke_descendants = revoke_descendants
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls,
        credentials: CredentialStore,
        accounts: AccountStore,
        codec: SignedTokenCodec,
        config: Settings,
        clock: Clock | None = None,
    ) -> "SessionIssuer":
        return cls(
            credentials,
            accounts,
            codec,
            access_token_ttl=config.access_token_ttl,
            max_active_devices=config.max_active_devices,
            rotation_enabled=config.refresh_token_rotation,
            revoke_descendants=config.revoke_descendant_refresh_tokens,
            clock=clock,
        )

    @property
    def access_token_ttl(self) -> timedelta:
        return self._access_ttl

    async def issue_session(self, user: UserAccount, context: DeviceContext) -> IssuedSession:
        """Create a new access/refresh pair for ``user`` on the given device."""
        async with self._credentials.user_lock(user.id):
            return await self._issue_locked(user, context)

    async def renew_session(self, token: str, context: DeviceContext) -> IssuedSession:
        """Exchange a refresh token for a new access token (and, with rotation, a new refresh token).

        Raises InvalidRenewalCredentialError when the token is unknown,
        revoked or expired, without saying which.
        """
        credential = await self._credentials.find_by_token(token)
        if credential is None:
            logger.warning(f"Refresh token not found: {obfuscate_token(token)}")
            raise InvalidRenewalCredentialError("Refresh token not found")
        if not credential.is_active(self._clock.now()):
            logger.warning(
                f"Inactive refresh token presented for user {credential.user_id}: "
                f"{'revoked' if credential.is_revoked else 'expired'}"
            )
            raise InvalidRenewalCredentialError("Refresh token is no longer valid")

        user = await self._accounts.get_by_id(credential.user_id)
        if user is None or not user.is_active:
            logger.warning(f"Refresh token presented for missing or inactive user {credential.user_id}")
            raise InvalidRenewalCredentialError("Refresh token owner is not active")

        async with self._credentials.user_lock(user.id):
            if self._rotation_enabled:
                return await self._rotate_locked(credential, user, context)
            return await self._extend_locked(credential, user)

    async def terminate_session(
        self, token: str, reason: str = REASON_LOGOUT, revoked_by: UUID | None = None
    ) -> bool:
        """Revoke one refresh token. Idempotent; False only if the token was never issued."""
        found = await self._credentials.revoke(token, reason, revoked_by)
        if not found:
            logger.warning(f"Attempted to revoke unknown refresh token: {obfuscate_token(token)}")
            return False
        if self._revoke_descendants:
            revoked = await self._revoke_descendants_of(token, revoked_by)
            if revoked:
                logger.info(f"Cascading revocation revoked {revoked} descendant token(s)")
        return True

    async def terminate_all_sessions(
        self, user_id: UUID, reason: str = REASON_LOGOUT_ALL, revoked_by: UUID | None = None
    ) -> int:
        """Revoke every active refresh token of ``user_id``."""
        async with self._credentials.user_lock(user_id):
            count = await self._credentials.revoke_all(user_id, reason, revoked_by)
        logger.info(f"Revoked {count} session(s) for user {user_id}")
        return count

    async def list_sessions(self, user_id: UUID) -> list[RenewalCredential]:
        return await self._credentials.list_active_for_user(user_id)

    async def _issue_locked(self, user: UserAccount, context: DeviceContext) -> IssuedSession:
        device_id = context.resolved_device_id()
        await self._enforce_device_policy(user.id, device_id)

        # Persist first: a failure after this point leaves a revoked row (or, in a
        # SQL locked section, no row at all), never an access token without a
        # session behind it.
        credential = await self._credentials.create(
            user.id,
            device_id=device_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_by=user.id,
        )
        try:
            now = self._clock.now()
            access_token = self._codec.mint(subject_for(user), self._access_ttl)
            await self._accounts.update_last_login(user.id, now, context.ip_address)
        except Exception:
            logger.exception(f"Session issuance failed after persisting credential for user {user.id}")
            await self._credentials.revoke(credential.token, REASON_ISSUE_FAILED, user.id)
            raise

        logger.debug(f"Issued session for user {user.id} on device {device_id}")
        return IssuedSession(
            access_token=access_token,
            access_expires_at=now + self._access_ttl,
            credential=credential,
            user=user,
        )

    async def _enforce_device_policy(self, user_id: UUID, device_id: str) -> None:
        active = await self._credentials.list_active_for_user(user_id)

        # One active credential per (user, device)
        others = []
        for credential in active:
            if credential.device_id == device_id:
                await self._credentials.revoke(credential.token, REASON_SUPERSEDED, user_id)
            else:
                others.append(credential)

        # Make room for the new credential; the list is newest-first
        excess = len(others) - self._max_devices + 1
        if excess > 0:
            for credential in others[-excess:]:
                await self._credentials.revoke(credential.token, REASON_DEVICE_LIMIT, user_id)
            logger.info(
                f"Device limit reached for user {user_id}: revoked {excess} oldest session(s)"
            )

    async def _rotate_locked(
        self, credential: RenewalCredential, user: UserAccount, context: DeviceContext
    ) -> IssuedSession:
        won = await self._credentials.revoke_if_active(credential.token, REASON_ROTATION, user.id)
        if not won:
            logger.warning(
                f"Refresh token replay rejected for user {user.id}: {obfuscate_token(credential.token)}"
            )
            raise InvalidRenewalCredentialError("Refresh token is no longer valid")

        if not context.device_id:
            context = replace(context, device_id=credential.device_id)
        issued = await self._issue_locked(user, context)
        await self._credentials.set_replaced_by(credential.token, issued.credential.token)
        logger.info(f"Rotated refresh token for user {user.id}")
        return issued

    async def _extend_locked(self, credential: RenewalCredential, user: UserAccount) -> IssuedSession:
        current = await self._credentials.find_by_token(credential.token)
        now = self._clock.now()
        if current is None or not current.is_active(now):
            raise InvalidRenewalCredentialError("Refresh token is no longer valid")

        await self._credentials.touch(current.token)
        access_token = self._codec.mint(subject_for(user), self._access_ttl)
        return IssuedSession(
            access_token=access_token,
            access_expires_at=now + self._access_ttl,
            credential=current.evolve(last_used_at=now),
            user=user,
        )

    async def _revoke_descendants_of(self, token: str, revoked_by: UUID | None) -> int:
        seen = {token}
        count = 0
        current = await self._credentials.find_by_token(token)
        while current is not None and current.replaced_by_token:
            successor = current.replaced_by_token
            if successor in seen:
                break
            seen.add(successor)
            await self._credentials.revoke(successor, REASON_CASCADE, revoked_by)
            count += 1
            current = await self._credentials.find_by_token(successor)
        return count
