"""Tests for access token minting and verification."""

import uuid
from datetime import timedelta

import jwt
import pytest

from sessionkeeper.services.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)
from sessionkeeper.services.token_codec import SignedTokenCodec, TokenSubject
from tests.conftest import TEST_EPOCH, TEST_SECRET


@pytest.fixture
def subject() -> TokenSubject:
    return TokenSubject(
        user_id=uuid.uuid4(),
        login_identifier="alice",
        display_name="Alice Example",
        secondary_identifier="S00001",
    )


class TestMintAndVerify:
    """Tests for the mint/verify round trip."""

    @pytest.mark.parametrize("ttl", [timedelta(seconds=1), timedelta(minutes=15), timedelta(days=2)])
    def test_verify_returns_minted_claims(self, codec, subject, ttl):
        """Test that verifying a fresh token yields the claims it was minted with."""
        token = codec.mint(subject, ttl)

        claims = codec.verify(token)

        assert claims.subject == subject
        assert claims.issued_at == TEST_EPOCH
        assert claims.expires_at == TEST_EPOCH + ttl
        assert claims.jti

    def test_each_token_gets_a_fresh_unique_id(self, codec, subject):
        """Test that two tokens minted for the same subject have distinct ids."""
        first = codec.verify(codec.mint(subject, timedelta(minutes=5)))
        second = codec.verify(codec.mint(subject, timedelta(minutes=5)))

        assert first.jti != second.jti

    def test_optional_claims_may_be_absent(self, codec):
        """Test that a subject without display name or secondary id round-trips."""
        bare = TokenSubject(user_id=uuid.uuid4(), login_identifier="bob@example.com")

        claims = codec.verify(codec.mint(bare, timedelta(minutes=1)))

        assert claims.subject == bare

    @pytest.mark.parametrize("ttl", [timedelta(0), timedelta(seconds=-5)])
    def test_non_positive_ttl_rejected(self, codec, subject, ttl):
        """Test that minting with a non-positive TTL fails."""
        with pytest.raises(ValueError):
            codec.mint(subject, ttl)

    def test_from_settings(self, test_settings, clock, subject):
        """Test that a codec built from settings verifies its own tokens."""
        codec = SignedTokenCodec.from_settings(test_settings, clock)

        claims = codec.verify(codec.mint(subject, test_settings.access_token_ttl))

        assert claims.user_id == subject.user_id


class TestExpiry:
    """Tests for expiry against the injected clock."""

    def test_expired_after_ttl_elapses(self, codec, clock, subject):
        """Test that a 1 second token fails as expired 2 seconds later."""
        token = codec.mint(subject, timedelta(seconds=1))

        clock.advance(seconds=2)

        with pytest.raises(TokenExpiredError):
            codec.verify(token)

    def test_valid_up_to_expiry_instant(self, codec, clock, subject):
        """Test that a token is still honored at exactly its expiry time."""
        token = codec.mint(subject, timedelta(seconds=30))

        clock.advance(seconds=30)

        assert codec.verify(token).user_id == subject.user_id


class TestRejection:
    """Tests for malformed and forged tokens."""

    def test_wrong_secret_is_signature_error(self, codec, clock, subject):
        """Test that a token signed with another secret fails with a signature error."""
        other = SignedTokenCodec(
            "another-secret-that-is-also-long-enough-000",
            issuer="sessionkeeper",
            audience="sessionkeeper-clients",
            clock=clock,
        )
        token = other.mint(subject, timedelta(minutes=5))

        with pytest.raises(TokenSignatureError):
            codec.verify(token)

    def test_signature_error_is_malformed(self):
        """Test that a bad signature is reported in the malformed category."""
        assert issubclass(TokenSignatureError, TokenMalformedError)

    def test_tampered_payload_rejected(self, codec, subject):
        """Test that changing the payload invalidates the signature."""
        token = codec.mint(subject, timedelta(minutes=5))
        header, _, signature = token.split(".")
        forged_payload = jwt.encode(
            {"sub": str(uuid.uuid4()), "login": "mallory"}, "x" * 32, algorithm="HS256"
        ).split(".")[1]

        with pytest.raises(TokenMalformedError):
            codec.verify(f"{header}.{forged_payload}.{signature}")

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b.c", "....."])
    def test_garbage_is_malformed(self, codec, garbage):
        """Test that unparseable strings fail as malformed."""
        with pytest.raises(TokenMalformedError):
            codec.verify(garbage)

    def test_wrong_audience_rejected(self, codec, clock, subject):
        """Test that a token for another audience is rejected."""
        other = SignedTokenCodec(TEST_SECRET, issuer="sessionkeeper", audience="elsewhere", clock=clock)

        with pytest.raises(TokenMalformedError):
            codec.verify(other.mint(subject, timedelta(minutes=5)))

    def test_non_access_token_rejected(self, codec, subject):
        """Test that a correctly signed token of another type is rejected."""
        now = int(TEST_EPOCH.timestamp())
        token = jwt.encode(
            {
                "sub": str(subject.user_id),
                "login": "alice",
                "jti": "abc",
                "iat": now,
                "exp": now + 60,
                "type": "refresh",
                "iss": "sessionkeeper",
                "aud": "sessionkeeper-clients",
            },
            TEST_SECRET,
            algorithm="HS256",
        )

        with pytest.raises(TokenMalformedError):
            codec.verify(token)

    def test_missing_unique_id_rejected(self, codec, subject):
        """Test that a token without a jti claim is rejected."""
        now = int(TEST_EPOCH.timestamp())
        token = jwt.encode(
            {
                "sub": str(subject.user_id),
                "login": "alice",
                "iat": now,
                "exp": now + 60,
                "type": "access",
                "iss": "sessionkeeper",
                "aud": "sessionkeeper-clients",
            },
            TEST_SECRET,
            algorithm="HS256",
        )

        with pytest.raises(TokenMalformedError):
            codec.verify(token)


class TestPeek:
    """Tests for unverified claim inspection."""

    def test_peek_unique_id_matches_verified_claim(self, codec, subject):
        """Test that peeking returns the same jti verification does."""
        token = codec.mint(subject, timedelta(minutes=5))

        assert codec.peek_unique_id(token) == codec.verify(token).jti

    def test_peek_ignores_signature(self, codec, clock, subject):
        """Test that peeking works on tokens signed with an unknown secret."""
        other = SignedTokenCodec("another-secret-that-is-also-long-enough-000", clock=clock)
        token = other.mint(subject, timedelta(minutes=5))

        assert codec.peek_unique_id(token) is not None

    def test_peek_works_on_expired_token(self, codec, clock, subject):
        """Test that an expired token can still be inspected."""
        token = codec.mint(subject, timedelta(seconds=1))
        clock.advance(minutes=10)

        assert codec.peek_unique_id(token) is not None
        assert codec.peek_expiry(token) == TEST_EPOCH + timedelta(seconds=1)

    @pytest.mark.parametrize("garbage", ["", "garbage", "a.b.c"])
    def test_peek_garbage_returns_none(self, codec, garbage):
        """Test that peeking at unparseable input yields nothing."""
        assert codec.peek_unique_id(garbage) is None
        assert codec.peek_expiry(garbage) is None
