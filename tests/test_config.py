"""Tests for configuration validation.

Tests the Settings validation to ensure invalid configurations
are rejected at startup.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from sessionkeeper.core.config import DEV_JWT_SECRET, Settings
from tests.conftest import TEST_SECRET


def _settings(**overrides) -> Settings:
    values = {"jwt_secret_key": TEST_SECRET}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestDefaults:
    """Tests for default policy values."""

    def test_session_policy_defaults(self):
        """Test the default lifetimes and device ceiling."""
        config = _settings()

        assert config.access_token_ttl == timedelta(minutes=15)
        assert config.refresh_token_ttl == timedelta(days=7)
        assert config.max_active_devices == 3
        assert config.refresh_token_rotation is True
        assert config.revoke_descendant_refresh_tokens is False
        assert config.token_blacklist_enabled is True

    def test_lockout_defaults(self):
        config = _settings()

        assert config.lockout_threshold == 5
        assert config.lockout_duration == timedelta(hours=1)

    def test_indefinite_lockout(self):
        """Test that an unset duration means locks do not expire on their own."""
        assert _settings(lockout_duration_minutes=None).lockout_duration is None


class TestJwtSecretValidation:
    """Tests for signing secret validation."""

    def test_missing_secret_rejected(self, monkeypatch):
        """Test that production settings require a secret."""
        monkeypatch.delenv("JWT_SECRET_KEY", raising=False)

        with pytest.raises(ValidationError) as exc_info:
            Settings(_env_file=None, debug=False)

        assert "JWT_SECRET_KEY" in str(exc_info.value)

    def test_debug_falls_back_to_dev_secret(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET_KEY", raising=False)

        config = Settings(_env_file=None, debug=True)

        assert config.jwt_secret_key == DEV_JWT_SECRET

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            _settings(jwt_secret_key="too-short")

        assert "32" in str(exc_info.value)

    def test_secret_from_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET_KEY", "e" * 40)

        assert Settings(_env_file=None).jwt_secret_key == "e" * 40


class TestPolicyValidation:
    """Tests for numeric and algorithm validation."""

    @pytest.mark.parametrize("algorithm", ["RS256", "none", "ES256"])
    def test_non_hmac_algorithm_rejected(self, algorithm):
        with pytest.raises(ValidationError):
            _settings(jwt_algorithm=algorithm)

    @pytest.mark.parametrize("algorithm", ["HS256", "HS384", "HS512"])
    def test_hmac_algorithms_accepted(self, algorithm):
        assert _settings(jwt_algorithm=algorithm).jwt_algorithm == algorithm

    @pytest.mark.parametrize(
        "field",
        [
            "jwt_access_token_expire_minutes",
            "jwt_refresh_token_expire_days",
            "max_active_devices",
            "lockout_threshold",
            "credential_cleanup_interval_seconds",
        ],
    )
    def test_non_positive_values_rejected(self, field):
        """Test that zero is rejected for every count and lifetime."""
        with pytest.raises(ValidationError):
            _settings(**{field: 0})

    def test_non_positive_lockout_duration_rejected(self):
        with pytest.raises(ValidationError):
            _settings(lockout_duration_minutes=0)

    def test_policy_from_environment(self, monkeypatch):
        """Test that policy knobs are read from environment variables."""
        monkeypatch.setenv("MAX_ACTIVE_DEVICES", "5")
        monkeypatch.setenv("REFRESH_TOKEN_ROTATION", "false")

        config = _settings()

        assert config.max_active_devices == 5
        assert config.refresh_token_rotation is False
