"""Failed-login counting and temporary lockout.

Per-user state machine::

    Unlocked --failure (< threshold)--> Unlocked
    Unlocked --failure (== threshold)--> Locked
    Locked   --lock_expires_at passes--> Unlocked   (lazily, on next check)
    any      --success--------------------> Unlocked (counter reset)
"""

from collections.abc import Callable
from datetime import timedelta
from uuid import UUID

from sessionkeeper.core.clock import Clock, SystemClock
from sessionkeeper.core.config import Settings
from sessionkeeper.core.logging import get_logger
from sessionkeeper.storage.base import AccountStore
from sessionkeeper.storage.records import LockStatus, LoginAttempt, UserAccount

logger = get_logger("account_guard")

DEFAULT_LOCKOUT_THRESHOLD = 5
DEFAULT_LOCKOUT_DURATION = timedelta(hours=1)


class AccountGuard:
    """Applies the lockout policy against the external account store."""

    def __init__(
        self,
        accounts: AccountStore,
        *,
        threshold: int = DEFAULT_LOCKOUT_THRESHOLD,
        lock_duration: timedelta | None = DEFAULT_LOCKOUT_DURATION,
        clock: Clock | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("Lockout threshold must be at least 1")
        self._accounts = accounts
        self._threshold = threshold
        self._lock_duration = lock_duration
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls, accounts: AccountStore, config: Settings, clock: Clock | None = None
    ) -> "AccountGuard":
        return cls(
            accounts,
            threshold=config.lockout_threshold,
            lock_duration=config.lockout_duration,
            clock=clock,
        )

    @property
    def threshold(self) -> int:
        return self._threshold

    async def check_lock(self, user: UserAccount) -> LockStatus:
        """Report lock state, clearing an expired lock as a side effect."""
        if not user.is_locked:
            return LockStatus(locked=False)

        until = user.lock_expires_at
        if until is None:
            return LockStatus(locked=True)
        if until > self._clock.now():
            return LockStatus(locked=True, until=until)

        await self._accounts.clear_lock(user.id)
        await self._accounts.reset_failed_attempts(user.id)
        user.is_locked = False
        user.lock_expires_at = None
        user.failed_login_attempts = 0
        logger.info(f"Lockout expired for user {user.id}")
        return LockStatus(locked=False)

    async def record_failure(self, user: UserAccount) -> int:
        """Count a failed attempt; lock the account once the threshold is reached."""
        count = await self._accounts.increment_failed_attempts(user.id)
        user.failed_login_attempts = count
        if count >= self._threshold:
            until = self._clock.now() + self._lock_duration if self._lock_duration else None
            await self._accounts.set_lock(user.id, until)
            user.is_locked = True
            user.lock_expires_at = until
            logger.warning(
                f"User {user.id} locked after {count} failed attempts"
                + (f" until {until.isoformat()}" if until else " indefinitely")
            )
        return count

    async def record_success(self, user: UserAccount) -> None:
        await self._accounts.reset_failed_attempts(user.id)
        await self._accounts.clear_lock(user.id)
        user.failed_login_attempts = 0
        user.is_locked = False
        user.lock_expires_at = None

    async def attempt(
        self, user_id: UUID, check_secret: Callable[[UserAccount], bool]
    ) -> LoginAttempt:
        """Run one login attempt for ``user_id`` under the account lock.

        Lock state is re-read inside the lock, so concurrent attempts for one
        user are counted one after another and no secret is checked once the
        threshold has locked the account. Outcomes are returned, not raised,
        so the bookkeeping commits together with the lock.
        """
        async with self._accounts.account_lock(user_id):
            user = await self._accounts.get_by_id(user_id)
            if user is None or not user.is_active:
                return LoginAttempt(user=None)

            status = await self.check_lock(user)
            if status.locked:
                return LoginAttempt(user=user, locked=True, locked_until=status.until)

            if not check_secret(user):
                failures = await self.record_failure(user)
                return LoginAttempt(user=user, failures=failures)

            await self.record_success(user)
            return LoginAttempt(user=user, accepted=True)
