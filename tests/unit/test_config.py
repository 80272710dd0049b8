"""Tests for engine configuration."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from twofactor import (
    DeviceTrustConfig,
    EmailOtpConfig,
    RecoveryCodeConfig,
    TotpConfig,
    TwoFactorConfig,
)
from twofactor.exceptions import ConfigurationError


class TestDefaults:
    def test_advertised_defaults(self) -> None:
        config = TwoFactorConfig()

        assert config.totp.digits == 6
        assert config.totp.time_step == 30
        assert config.totp.valid_window == 1
        assert config.email.ttl == timedelta(minutes=10)
        assert config.email.max_attempts == 5
        assert config.email.resend_interval_seconds == 60
        assert config.recovery.count == 8
        assert config.recovery.low_water_mark == 2
        assert config.recovery.hash_algorithm == "bcrypt"
        assert config.recovery.hash_rounds == 12
        assert config.devices.default_duration == timedelta(days=30)
        assert config.rate_limit.max_failures == 10
        assert config.rate_limit.window_seconds == 3600
        assert config.rate_limit.lockout_seconds == 900
        assert config.session_ttl == timedelta(minutes=15)

    def test_frozen(self) -> None:
        config = TwoFactorConfig()
        with pytest.raises(ValidationError):
            config.session_ttl_seconds = 10  # type: ignore[misc]

    def test_expiry_minutes_rounds_up(self) -> None:
        assert EmailOtpConfig(ttl_seconds=600).expiry_minutes == 10
        assert EmailOtpConfig(ttl_seconds=601).expiry_minutes == 11
        assert EmailOtpConfig(ttl_seconds=30).expiry_minutes == 1


class TestValidation:
    def test_window_cannot_exceed_max(self) -> None:
        with pytest.raises(ValidationError):
            TotpConfig(valid_window=3, max_window=2)

    def test_totp_secret_at_least_160_bits(self) -> None:
        with pytest.raises(ValidationError):
            TotpConfig(secret_bytes=16)

    def test_low_water_mark_below_count(self) -> None:
        with pytest.raises(ValidationError):
            RecoveryCodeConfig(count=4, low_water_mark=4)

    def test_recovery_hash_cost_bounds(self) -> None:
        with pytest.raises(ValidationError):
            RecoveryCodeConfig(hash_rounds=3)
        with pytest.raises(ValidationError):
            RecoveryCodeConfig(hash_algorithm="md5")  # type: ignore[arg-type]

    def test_fingerprint_key_is_not_shown(self) -> None:
        config = RecoveryCodeConfig.model_validate({"fingerprint_key": "s3cret-key"})

        assert "s3cret-key" not in repr(config)
        assert config.fingerprint_key is not None
        assert config.fingerprint_key.get_secret_value() == "s3cret-key"

    def test_default_duration_within_max(self) -> None:
        with pytest.raises(ValidationError):
            DeviceTrustConfig(default_duration_days=100, max_duration_days=90)

    def test_from_mapping(self) -> None:
        config = TwoFactorConfig.from_mapping(
            {"email": {"ttl_seconds": 300}, "rate_limit": {"max_failures": 5}}
        )

        assert config.email.ttl_seconds == 300
        assert config.email.max_attempts == 5
        assert config.rate_limit.max_failures == 5

    @pytest.mark.parametrize(
        "data",
        [
            {"email": {"ttl_seconds": 0}},
            {"totp": {"digits": 12}},
            {"unknown": True},
            {"rate_limit": {"max_failures": "many"}},
        ],
    )
    def test_from_mapping_rejects_invalid(self, data) -> None:
        with pytest.raises(ConfigurationError):
            TwoFactorConfig.from_mapping(data)
