"""Authentication failure taxonomy.

Every error exposes a stable ``code`` for clients and a ``public_message``
that never reveals which internal condition applied.
"""

from datetime import datetime


class AuthError(Exception):
    """Base authentication error."""

    code = "auth_error"
    public_message = "Authentication failed"


class InvalidCredentialsError(AuthError):
    """Unknown login identifier, inactive account, or wrong secret."""

    code = "invalid_credentials"
    public_message = "Invalid login or password"


class AccountLockedError(AuthError):
    """Too many failed attempts; login is suspended."""

    code = "account_locked"
    public_message = "Account is temporarily locked"

    def __init__(self, locked_until: datetime | None = None):
        self.locked_until = locked_until
        super().__init__(
            f"Account locked until {locked_until.isoformat()}"
            if locked_until
            else "Account locked"
        )


class InvalidRenewalCredentialError(AuthError):
    """Refresh token unknown, revoked, or expired."""

    code = "invalid_credential"
    public_message = "Invalid refresh token"


class TokenError(AuthError):
    """Access token could not be honored."""

    code = "token_invalid"
    public_message = "Invalid access token"


class TokenMalformedError(TokenError):
    """Access token could not be parsed or its claims are unusable."""

    code = "token_malformed"
    public_message = "Invalid access token"


class TokenSignatureError(TokenMalformedError):
    """Access token signature does not match the signing secret."""


class TokenExpiredError(TokenError):
    """Access token is past its expiry."""

    code = "token_expired"
    public_message = "Access token has expired"


class TokenRevokedError(TokenError):
    """Access token was blacklisted before its natural expiry."""

    code = "token_revoked"
    public_message = "Access token has been revoked"


class InternalFailureError(AuthError):
    """Store or codec failure not attributable to caller input."""

    code = "internal_failure"
    public_message = "Authentication service unavailable"


class OperationTimeoutError(InternalFailureError):
    """Operation did not finish within its deadline."""
