"""Time-bounded denylist of access token ids."""

from datetime import datetime

from sessionkeeper.core.clock import Clock, SystemClock
from sessionkeeper.core.logging import get_logger
from sessionkeeper.storage.base import BlacklistStore

logger = get_logger("revocation")


class RevocationRegistry:
    """Blacklist of JTIs, each kept only for the remaining life of its token.

    Absence of an entry means "not blacklisted". Once an entry's expiry
    passes, the token it names is expired anyway, so forgetting it is safe.
    """

    def __init__(
        self,
        store: BlacklistStore,
        *,
        enabled: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._enabled = enabled
        self._clock = clock or SystemClock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def blacklist(self, jti: str, until: datetime) -> bool:
        """Deny ``jti`` until ``until``. Returns False when nothing was stored."""
        if not self._enabled or not jti:
            return False
        if until <= self._clock.now():
            return False
        await self._store.add(jti, until)
        logger.debug(f"Blacklisted token {jti} until {until.isoformat()}")
        return True

    async def is_blacklisted(self, jti: str) -> bool:
        if not self._enabled or not jti:
            return False
        return await self._store.contains(jti, self._clock.now())

    async def purge_expired(self) -> int:
        return await self._store.purge_expired(self._clock.now())
