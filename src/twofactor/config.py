"""Engine configuration.

Every threshold the engine enforces is configurable. The defaults follow
the values the account-security UI advertises to users: 6-digit codes,
10-minute email codes, 30-second TOTP steps, 8 recovery codes and
30-day trusted devices.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    model_validator,
)

from .exceptions import ConfigurationError


class _FrozenConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TotpConfig(_FrozenConfig):
    """TOTP configuration.

    Attributes:
        time_step: Seconds per time step.
        digits: Number of digits per code.
        secret_bytes: Length of generated secrets (at least 160 bits).
        valid_window: Steps accepted on each side of the current one.
        max_window: Largest window a caller may request.
        issuer: Issuer label shown in authenticator apps.
    """

    time_step: int = Field(default=30, gt=0, le=300)
    digits: int = Field(default=6, ge=6, le=8)
    secret_bytes: int = Field(default=20, ge=20, le=64)
    valid_window: int = Field(default=1, ge=0)
    max_window: int = Field(default=2, ge=0, le=10)
    issuer: str = Field(default="TwoFactor", min_length=1)

    @model_validator(mode="after")
    def _window_within_max(self) -> TotpConfig:
        if self.valid_window > self.max_window:
            raise ValueError("valid_window must not exceed max_window")
        return self


class EmailOtpConfig(_FrozenConfig):
    """Email one-time code configuration.

    Attributes:
        code_length: Number of digits in the emailed code.
        ttl_seconds: Lifetime of a challenge.
        max_attempts: Consecutive mismatches before the challenge locks.
        resend_interval_seconds: Minimum gap between two issuances.
    """

    code_length: int = Field(default=6, ge=4, le=10)
    ttl_seconds: int = Field(default=600, gt=0)
    max_attempts: int = Field(default=5, gt=0)
    resend_interval_seconds: int = Field(default=60, ge=0)

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)

    @property
    def expiry_minutes(self) -> int:
        """TTL rounded up to whole minutes, as shown in the email."""
        return -(-self.ttl_seconds // 60)


class RecoveryCodeConfig(_FrozenConfig):
    """Recovery code configuration.

    Attributes:
        count: Codes per generated set.
        low_water_mark: Remaining count at or below which the UI should warn.
        hash_algorithm: Slow hash used to store codes.
        hash_rounds: bcrypt cost factor.
        fingerprint_key: HMAC key for the fingerprints that keep every
            issued code unique per user. Must be shared by all processes
            and kept out of the storage backend; a random per-process key
            is used when unset.
    """

    count: int = Field(default=8, gt=0, le=32)
    low_water_mark: int = Field(default=2, ge=0)
    hash_algorithm: Literal["bcrypt", "argon2id"] = "bcrypt"
    hash_rounds: int = Field(default=12, ge=4, le=16)
    fingerprint_key: SecretStr | None = Field(default=None, repr=False)

    @model_validator(mode="after")
    def _mark_below_count(self) -> RecoveryCodeConfig:
        if self.low_water_mark >= self.count:
            raise ValueError("low_water_mark must be lower than count")
        return self


class DeviceTrustConfig(_FrozenConfig):
    """Trusted device configuration."""

    default_duration_days: int = Field(default=30, gt=0)
    max_duration_days: int = Field(default=90, gt=0)

    @model_validator(mode="after")
    def _default_within_max(self) -> DeviceTrustConfig:
        if self.default_duration_days > self.max_duration_days:
            raise ValueError("default_duration_days must not exceed max_duration_days")
        return self

    @property
    def default_duration(self) -> timedelta:
        return timedelta(days=self.default_duration_days)

    @property
    def max_duration(self) -> timedelta:
        return timedelta(days=self.max_duration_days)


class RateLimitConfig(_FrozenConfig):
    """Account-wide failure budget across all factors.

    Attributes:
        max_failures: Failed attempts tolerated inside the rolling window.
        window_seconds: Length of the rolling window.
        lockout_seconds: Duration of the account lockout once exceeded.
    """

    max_failures: int = Field(default=10, gt=0)
    window_seconds: int = Field(default=3600, gt=0)
    lockout_seconds: int = Field(default=900, gt=0)


class TwoFactorConfig(_FrozenConfig):
    """Top-level engine configuration.

    Example:
        ```python
        config = TwoFactorConfig.from_mapping({
            "email": {"ttl_seconds": 300},
            "rate_limit": {"max_failures": 5},
        })
        ```
    """

    totp: TotpConfig = Field(default_factory=TotpConfig)
    email: EmailOtpConfig = Field(default_factory=EmailOtpConfig)
    recovery: RecoveryCodeConfig = Field(default_factory=RecoveryCodeConfig)
    devices: DeviceTrustConfig = Field(default_factory=DeviceTrustConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    session_ttl_seconds: int = Field(default=900, gt=0)
    max_cas_attempts: int = Field(default=10, gt=0)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(seconds=self.session_ttl_seconds)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> TwoFactorConfig:
        """Build a configuration from plain settings data.

        Raises:
            ConfigurationError: If any value is missing bounds or unknown.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid two-factor configuration: {e}") from e


__all__: list[str] = [
    "TotpConfig",
    "EmailOtpConfig",
    "RecoveryCodeConfig",
    "DeviceTrustConfig",
    "RateLimitConfig",
    "TwoFactorConfig",
]
