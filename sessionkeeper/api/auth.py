"""Authentication API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from sessionkeeper.core.request_utils import get_device_context
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
)
from sessionkeeper.services.auth import AuthenticationFacade
from sessionkeeper.services.errors import (
    AccountLockedError,
    AuthError,
    InternalFailureError,
)
from sessionkeeper.services.token_codec import AccessClaims

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_ERROR_RESPONSES = {
    401: {"model": ErrorResponse},
    423: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def status_for_error(error: AuthError) -> int:
    """HTTP status for an authentication failure."""
    if isinstance(error, AccountLockedError):
        return status.HTTP_423_LOCKED
    if isinstance(error, InternalFailureError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_401_UNAUTHORIZED


async def auth_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render an AuthError with its stable code and generic message only."""
    if not isinstance(exc, AuthError):
        raise exc
    status_code = status_for_error(exc)
    body = ErrorResponse(
        code=exc.code,
        detail=exc.public_message,
        locked_until=exc.locked_until if isinstance(exc, AccountLockedError) else None,
    )
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


def get_auth_facade(request: Request) -> AuthenticationFacade:
    """Dependency to get the application's authentication facade."""
    facade: AuthenticationFacade | None = getattr(request.app.state, "auth_facade", None)
    if facade is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service not initialized",
        )
    return facade


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()  # Remove "Bearer " prefix
    return token or None


async def get_current_claims(
    request: Request,
    facade: AuthenticationFacade = Depends(get_auth_facade),
) -> AccessClaims:
    """Dependency to get the verified, non-revoked access token claims."""
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await facade.authenticate(token)


def _expires_in(facade: AuthenticationFacade) -> int:
    return int(facade.access_token_ttl.total_seconds())


@router.post("/login", response_model=TokenResponse, responses=_ERROR_RESPONSES)
async def login(
    body: LoginRequest,
    request: Request,
    facade: AuthenticationFacade = Depends(get_auth_facade),
) -> TokenResponse:
    """Authenticate by email or username and get a token pair.

    Unknown accounts and wrong passwords produce the same 401 response.
    Returns 423 while the account is locked out.
    """
    context = get_device_context(request, body.device_id)
    issued = await facade.login(body.login, body.password, context)
    return TokenResponse.from_session(issued, _expires_in(facade))


@router.post("/refresh", response_model=TokenResponse, responses=_ERROR_RESPONSES)
async def refresh_tokens(
    body: RefreshRequest,
    request: Request,
    facade: AuthenticationFacade = Depends(get_auth_facade),
) -> TokenResponse:
    """Exchange a refresh token for a new access token.

    With rotation enabled the refresh token is single-use and a new one is returned.
    """
    context = get_device_context(request, body.device_id)
    issued = await facade.renew(body.refresh_token, context)
    return TokenResponse.from_session(issued, _expires_in(facade))


@router.post("/logout", response_model=LogoutResponse, responses=_ERROR_RESPONSES)
async def logout(
    body: LogoutRequest,
    request: Request,
    facade: AuthenticationFacade = Depends(get_auth_facade),
) -> LogoutResponse:
    """End one session.

    If the access token is sent as a bearer token it is revoked as well.
    Unknown refresh tokens are not an error so clients can always discard
    their local tokens.
    """
    revoked = await facade.logout(body.refresh_token, access_token=_bearer_token(request))
    return LogoutResponse(message="Logged out successfully", revoked=revoked)


@router.post("/logout-all", response_model=LogoutAllResponse, responses=_ERROR_RESPONSES)
async def logout_all(
    request: Request,
    claims: AccessClaims = Depends(get_current_claims),
    facade: AuthenticationFacade = Depends(get_auth_facade),
) -> LogoutAllResponse:
    """End every session of the current user, including the calling one."""
    count = await facade.logout_all(claims.user_id, access_token=_bearer_token(request))
    logger.info(f"User {claims.user_id} logged out of {count} session(s)")
    return LogoutAllResponse(message="Logged out of all devices", revoked_count=count)


@router.get("/sessions", response_model=list[SessionResponse], responses=_ERROR_RESPONSES)
async def list_sessions(
    claims: AccessClaims = Depends(get_current_claims),
    facade: AuthenticationFacade = Depends(get_auth_facade),
) -> list[SessionResponse]:
    """List the current user's signed-in devices, most recently used first."""
    sessions = await facade.list_sessions(claims.user_id)
    return [SessionResponse.model_validate(credential) for credential in sessions]


@router.get("/me", response_model=MeResponse, responses=_ERROR_RESPONSES)
async def get_current_user_info(
    claims: AccessClaims = Depends(get_current_claims),
) -> MeResponse:
    """Get the identity carried by the current access token."""
    return MeResponse(
        id=claims.user_id,
        login=claims.login_identifier,
        display_name=claims.display_name,
        secondary_id=claims.secondary_identifier,
        expires_at=claims.expires_at,
    )
