"""Plain records exchanged between services and stores."""

import hashlib
import uuid
from dataclasses import dataclass, replace
from datetime import datetime


@dataclass(frozen=True)
class RenewalCredential:
    id: uuid.UUID
    token: str
    user_id: uuid.UUID
    issued_at: datetime
    expires_at: datetime
    device_id: str
    is_revoked: bool = False
    revoked_at: datetime | None = None
    revoke_reason: str | None = None
    revoked_by: uuid.UUID | None = None
    replaced_by_token: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    last_used_at: datetime | None = None
    created_by: uuid.UUID | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    @property
    def recency(self) -> datetime:
        """Sort key for device-ceiling eviction (most recently used first)."""
        return self.last_used_at or self.issued_at

    def evolve(self, **changes) -> "RenewalCredential":
        return replace(self, **changes)


@dataclass
class UserAccount:
    id: uuid.UUID
    email: str
    password_hash: str
    username: str | None = None
    secondary_id: str | None = None
    display_name: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    is_locked: bool = False
    lock_expires_at: datetime | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    login_count: int = 0

    @property
    def login_name(self) -> str:
        return self.username or self.email


@dataclass(frozen=True)
class DeviceContext:
    """Where a request came from. device_id is derived when the client omits it."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_id: str | None = None

    def resolved_device_id(self) -> str:
        if self.device_id:
            return self.device_id
        return device_fingerprint(self.user_agent, self.ip_address)


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    until: datetime | None = None


@dataclass(frozen=True)
class LoginAttempt:
    """Outcome of one guarded secret check.

    ``user`` is None when the account vanished or was deactivated before the
    check could run.
    """

    user: UserAccount | None
    accepted: bool = False
    locked: bool = False
    locked_until: datetime | None = None
    failures: int = 0


@dataclass(frozen=True)
class LoginSucceeded:
    user_id: uuid.UUID
    device_id: str
    occurred_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None


def device_fingerprint(user_agent: str | None, ip_address: str | None) -> str:
    if not user_agent and not ip_address:
        return uuid.uuid4().hex
    raw = f"{user_agent or ''}|{ip_address or ''}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:32]
