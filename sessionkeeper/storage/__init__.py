# SessionKeeper Storage
from sessionkeeper.storage.base import (
    AccountStore,
    BlacklistStore,
    CredentialStore,
    SecretVerifier,
    generate_refresh_token,
)
from sessionkeeper.storage.memory import (
    MemoryAccountStore,
    MemoryBlacklistStore,
    MemoryCredentialStore,
)
from sessionkeeper.storage.records import (
    DeviceContext,
    LockStatus,
    LoginSucceeded,
    RenewalCredential,
    UserAccount,
)

__all__ = [
    "AccountStore",
    "BlacklistStore",
    "CredentialStore",
    "DeviceContext",
    "LockStatus",
    "LoginSucceeded",
    "MemoryAccountStore",
    "MemoryBlacklistStore",
    "MemoryCredentialStore",
    "RenewalCredential",
    "SecretVerifier",
    "UserAccount",
    "generate_refresh_token",
]
