"""Pydantic schemas for authentication API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from sessionkeeper.services.session_issuer import IssuedSession


class LoginRequest(BaseModel):
    """Request for login by email or username."""

    login: str = Field(..., min_length=1, max_length=255, description="Email or username")
    password: str = Field(..., min_length=1, max_length=128)
    device_id: str | None = Field(
        None,
        max_length=128,
        description="Stable client device identifier. Derived from the request when omitted.",
    )


class RefreshRequest(BaseModel):
    """Request for token refresh."""

    refresh_token: str = Field(..., min_length=1)
    device_id: str | None = Field(None, max_length=128)


class LogoutRequest(BaseModel):
    """Request for logout of a single session."""

    refresh_token: str = Field(..., min_length=1, description="Refresh token of the session to end")


class UserSummary(BaseModel):
    """Public view of the authenticated account."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    login: str
    email: str
    display_name: str | None = None
    secondary_id: str | None = None


class TokenResponse(BaseModel):
    """Response with an access/refresh token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token expiry in seconds")
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    device_id: str
    user: UserSummary

    @classmethod
    def from_session(cls, issued: IssuedSession, expires_in: int) -> "TokenResponse":
        user = issued.user
        return cls(
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=expires_in,
            access_token_expires_at=issued.access_expires_at,
            refresh_token_expires_at=issued.credential.expires_at,
            device_id=issued.credential.device_id,
            user=UserSummary(
                id=user.id,
                login=user.login_name,
                email=user.email,
                display_name=user.display_name,
                secondary_id=user.secondary_id,
            ),
        )


class SessionResponse(BaseModel):
    """One signed-in device. The refresh token itself is never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    device_id: str
    ip_address: str | None
    user_agent: str | None
    issued_at: datetime
    expires_at: datetime
    last_used_at: datetime | None


class MeResponse(BaseModel):
    """Claims of the presented access token."""

    id: UUID
    login: str
    display_name: str | None
    secondary_id: str | None
    expires_at: datetime


class LogoutResponse(BaseModel):
    message: str
    revoked: bool


class LogoutAllResponse(BaseModel):
    message: str
    revoked_count: int


class ErrorResponse(BaseModel):
    """Body of every authentication failure."""

    code: str
    detail: str
    locked_until: datetime | None = None
