# SessionKeeper Models
from sessionkeeper.models.base import BaseModel
from sessionkeeper.models.refresh_token import RefreshToken
from sessionkeeper.models.token_blacklist import TokenBlacklist
from sessionkeeper.models.user_account import UserAccount

__all__ = [
    "BaseModel",
    "RefreshToken",
    "TokenBlacklist",
    "UserAccount",
]
