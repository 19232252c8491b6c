"""Credential cleanup service - periodically removes expired refresh tokens and blacklist entries."""

import asyncio
import threading
from dataclasses import dataclass
from typing import Optional

from sessionkeeper.core.logging import get_logger
from sessionkeeper.services.revocation import RevocationRegistry
from sessionkeeper.storage.base import CredentialStore

logger = get_logger("credential_cleanup")

# How often to run cleanup (in seconds)
DEFAULT_CLEANUP_INTERVAL_SECONDS = 3600  # 1 hour

# Delay before the first run so startup is not slowed down
INITIAL_DELAY_SECONDS = 60


@dataclass(frozen=True)
class CleanupResult:
    credentials_deleted: int
    blacklist_purged: int


class CredentialCleanupService:
    """Background service that sweeps expired renewal credentials."""

    _instance: Optional["CredentialCleanupService"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        credentials: CredentialStore,
        registry: RevocationRegistry,
        interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        initial_delay_seconds: float = INITIAL_DELAY_SECONDS,
    ):
        self._credentials = credentials
        self._registry = registry
        self._interval = interval_seconds
        self._initial_delay = initial_delay_seconds
        self._running = False
        self._task: asyncio.Task | None = None

    @classmethod
    def get_instance(
        cls,
        credentials: CredentialStore,
        registry: RevocationRegistry,
        interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> "CredentialCleanupService":
        """Get singleton instance of the cleanup service (thread-safe).

        Raises RuntimeError when the existing instance sweeps different stores;
        call reset_instance() first to rebind.
        """
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls(credentials, registry, interval_seconds)
        instance = cls._instance
        if instance._credentials is not credentials or instance._registry is not registry:
            raise RuntimeError("Cleanup service is already bound to other stores")
        return instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._instance_lock:
            cls._instance = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def interval_seconds(self) -> float:
        return self._interval

    async def start(self):
        """Start the background cleanup task."""
        if self._running:
            logger.warning("Credential cleanup service is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Credential cleanup service started (interval: {self._interval}s)")

    async def stop(self):
        """Stop the background cleanup task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Credential cleanup service stopped")

    async def _cleanup_loop(self):
        """Main loop that periodically deletes expired credentials."""
        await asyncio.sleep(self._initial_delay)

        while self._running:
            try:
                await self.run_cleanup_now()
            except Exception as e:
                logger.exception(f"Error in credential cleanup: {e}")

            await asyncio.sleep(self._interval)

    async def run_cleanup_now(self) -> CleanupResult:
        """Manually trigger a cleanup run.

        Returns:
            Counts of deleted credentials and purged blacklist entries
        """
        deleted = await self._credentials.delete_expired()
        purged = await self._registry.purge_expired()
        if deleted or purged:
            logger.info(
                f"Credential cleanup: deleted {deleted} expired refresh tokens, "
                f"purged {purged} blacklist entries"
            )
        return CleanupResult(credentials_deleted=deleted, blacklist_purged=purged)
