# SessionKeeper Services
from sessionkeeper.services.account_guard import AccountGuard
from sessionkeeper.services.auth import AuthenticationFacade, LoginEventSink, build_auth_facade
from sessionkeeper.services.credential_cleanup import CleanupResult, CredentialCleanupService
from sessionkeeper.services.errors import (
    AccountLockedError,
    AuthError,
    InternalFailureError,
    InvalidCredentialsError,
    InvalidRenewalCredentialError,
    OperationTimeoutError,
    TokenError,
    TokenExpiredError,
    TokenMalformedError,
    TokenRevokedError,
    TokenSignatureError,
)
from sessionkeeper.services.passwords import Argon2SecretVerifier
from sessionkeeper.services.revocation import RevocationRegistry
from sessionkeeper.services.session_issuer import IssuedSession, SessionIssuer
from sessionkeeper.services.token_codec import AccessClaims, SignedTokenCodec, TokenSubject

__all__ = [
    "AccessClaims",
    "AccountGuard",
    "AccountLockedError",
    "Argon2SecretVerifier",
    "AuthError",
    "AuthenticationFacade",
    "CleanupResult",
    "CredentialCleanupService",
    "InternalFailureError",
    "InvalidCredentialsError",
    "InvalidRenewalCredentialError",
    "IssuedSession",
    "LoginEventSink",
    "OperationTimeoutError",
    "RevocationRegistry",
    "SessionIssuer",
    "SignedTokenCodec",
    "TokenError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenRevokedError",
    "TokenSignatureError",
    "TokenSubject",
    "build_auth_facade",
]
