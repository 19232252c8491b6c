"""Signed access tokens (JWT, HMAC).

The codec is stateless: it never consults the blacklist, so it is safe to
share across any number of concurrent requests.
"""

import math
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import jwt
from jwt.exceptions import InvalidSignatureError, PyJWTError

from sessionkeeper.core.clock import Clock, SystemClock
from sessionkeeper.core.config import Settings
from sessionkeeper.services.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)

ACCESS_TOKEN_TYPE = "access"
_REQUIRED_CLAIMS = ["sub", "jti", "iat", "exp"]


@dataclass(frozen=True)
class TokenSubject:
    """Identity claims copied from the account into every access token."""

    user_id: UUID
    login_identifier: str
    display_name: str | None = None
    secondary_identifier: str | None = None


@dataclass(frozen=True)
class AccessClaims:
    user_id: UUID
    login_identifier: str
    display_name: str | None
    secondary_identifier: str | None
    jti: str
    issued_at: datetime
    expires_at: datetime

    @property
    def subject(self) -> TokenSubject:
        return TokenSubject(
            user_id=self.user_id,
            login_identifier=self.login_identifier,
            display_name=self.display_name,
            secondary_identifier=self.secondary_identifier,
        )


class SignedTokenCodec:
    """Mints and verifies compact HMAC-signed access tokens."""

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str | None = None,
        audience: str | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(cls, config: Settings, clock: Clock | None = None) -> "SignedTokenCodec":
        return cls(
            config.jwt_secret_key or "",
            algorithm=config.jwt_algorithm,
            issuer=config.jwt_issuer,
            audience=config.jwt_audience,
            clock=clock,
        )

    def mint(self, subject: TokenSubject, ttl: timedelta) -> str:
        """Create a signed token valid for ``ttl`` with a fresh unique id."""
        if ttl <= timedelta(0):
            raise ValueError("Token TTL must be positive")
        now = self._clock.now()
        payload: dict[str, Any] = {
            "sub": str(subject.user_id),
            "login": subject.login_identifier,
            "name": subject.display_name,
            "sid": subject.secondary_identifier,
            "jti": uuid.uuid4().hex,
            "iat": math.floor(now.timestamp()),
            "exp": math.ceil((now + ttl).timestamp()),
            "type": ACCESS_TOKEN_TYPE,
        }
        if self._issuer:
            payload["iss"] = self._issuer
        if self._audience:
            payload["aud"] = self._audience
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        # PyJWT 2.x returns str; older type stubs may declare bytes
        return str(token)

    def verify(self, token: str) -> AccessClaims:
        """Check signature, structure and expiry.

        Raises TokenMalformedError (TokenSignatureError for a bad signature)
        or TokenExpiredError. Blacklist state is the caller's concern.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={
                    # Expiry is checked against the injected clock below
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except InvalidSignatureError as e:
            raise TokenSignatureError("Token signature mismatch") from e
        except PyJWTError as e:
            raise TokenMalformedError(f"Invalid token: {e}") from e

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenMalformedError("Not an access token")

        claims = self._claims_from_payload(payload)
        if self._clock.now() > claims.expires_at:
            raise TokenExpiredError("Token has expired")
        return claims

    def peek_unique_id(self, token: str) -> str | None:
        """Read the jti without checking the signature (blacklist bookkeeping only)."""
        payload = self._peek(token)
        jti = payload.get("jti") if payload else None
        return jti if isinstance(jti, str) and jti else None

    def peek_expiry(self, token: str) -> datetime | None:
        """Read the unverified expiry. Callers must not trust it beyond bounding a TTL."""
        payload = self._peek(token)
        exp = payload.get("exp") if payload else None
        if not isinstance(exp, int | float) or isinstance(exp, bool):
            return None
        try:
            return datetime.fromtimestamp(exp, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    def _peek(self, token: str) -> dict[str, Any] | None:
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except PyJWTError:
            return None

    def _claims_from_payload(self, payload: dict[str, Any]) -> AccessClaims:
        try:
            user_id = UUID(payload["sub"])
            issued_at = datetime.fromtimestamp(payload["iat"], tz=UTC)
            expires_at = datetime.fromtimestamp(payload["exp"], tz=UTC)
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
            raise TokenMalformedError("Token claims are invalid") from e

        jti = payload.get("jti")
        login = payload.get("login")
        if not isinstance(jti, str) or not jti or not isinstance(login, str):
            raise TokenMalformedError("Token claims are invalid")

        return AccessClaims(
            user_id=user_id,
            login_identifier=login,
            display_name=payload.get("name"),
            secondary_identifier=payload.get("sid"),
            jti=jti,
            issued_at=issued_at,
            expires_at=expires_at,
        )
