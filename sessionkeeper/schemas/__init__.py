# SessionKeeper Pydantic Schemas
from sessionkeeper.schemas.auth import (
    ErrorResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
    UserSummary,
)

__all__ = [
    "ErrorResponse",
    "LoginRequest",
    "LogoutAllResponse",
    "LogoutRequest",
    "LogoutResponse",
    "MeResponse",
    "RefreshRequest",
    "SessionResponse",
    "TokenResponse",
    "UserSummary",
]
