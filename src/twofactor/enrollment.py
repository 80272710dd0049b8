"""Setup flows for each factor.

Mirrors the account-security wizards: confirm an email address with a
code, pair an authenticator app by entering its first code, and receive
recovery codes once the first primary factor is active.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .email_otp import ENROLLMENT, LOGIN
from .exceptions import FactorNotEnabledError
from .models import (
    PRIMARY_FACTORS,
    EmailOutcome,
    Factor,
    IssuedRecoveryCodes,
    RecoveryCodeStatus,
    TotpEnrollment,
    TotpOutcome,
    TrustedDevice,
    User2FAProfile,
)

if TYPE_CHECKING:
    from .config import TwoFactorConfig
    from .devices import DeviceTrustTracker
    from .email_otp import EmailOtpManager
    from .profiles import ProfileStore
    from .recovery import RecoveryCodeStore
    from .totp import TotpManager

logger = logging.getLogger("twofactor.enrollment")


@dataclass(frozen=True)
class EnrollmentResult:
    """Outcome of completing a factor setup.

    Attributes:
        factor: Factor being enrolled.
        outcome: Outcome reported by the factor manager.
        profile: Profile after the operation (None if nothing changed).
        recovery_codes: Codes generated with the first primary factor,
            shown to the user once.
        attempts_remaining: Mismatches left for email enrollment codes.
    """

    factor: Factor
    outcome: EmailOutcome | TotpOutcome
    profile: User2FAProfile | None = None
    recovery_codes: IssuedRecoveryCodes | None = None
    attempts_remaining: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (EmailOutcome.SUCCESS, TotpOutcome.SUCCESS)


@dataclass(frozen=True)
class TwoFactorStatus:
    """Everything the account-security dashboard shows."""

    user_id: str
    enabled_factors: frozenset[Factor] = frozenset()
    email: str | None = None
    totp_configured: bool = False
    recovery: RecoveryCodeStatus = field(
        default_factory=lambda: RecoveryCodeStatus(remaining=0, total=0, low=False)
    )
    trusted_devices: tuple[TrustedDevice, ...] = ()

    @property
    def has_two_factor(self) -> bool:
        return bool(self.enabled_factors & PRIMARY_FACTORS)


class EnrollmentService:
    """Enable, disable and inspect a user's factors.

    Example:
        ```python
        await enrollment.begin_email_enrollment("user-123", "alice@example.com")
        result = await enrollment.complete_email_enrollment("user-123", "492039")
        if result.recovery_codes:
            show_once(result.recovery_codes.to_text("MyApp"))
        ```
    """

    def __init__(
        self,
        profiles: ProfileStore,
        email: EmailOtpManager,
        totp: TotpManager,
        recovery: RecoveryCodeStore,
        devices: DeviceTrustTracker,
        config: TwoFactorConfig,
    ) -> None:
        self._profiles = profiles
        self._email = email
        self._totp = totp
        self._recovery = recovery
        self._devices = devices
        self._config = config

    # ═══════════════════════════════════════════════════════════════
    # EMAIL
    # ═══════════════════════════════════════════════════════════════

    async def begin_email_enrollment(self, user_id: str, address: str) -> bool:
        """Send a confirmation code to ``address``.

        Returns:
            True if the mail transport accepted the code.
        """
        challenge = await self._email.issue_challenge(user_id, address, ENROLLMENT)
        return await self._email.deliver(challenge)

    async def complete_email_enrollment(
        self, user_id: str, code: str
    ) -> EnrollmentResult:
        """Confirm the address and enable the email factor."""
        pending = await self._email.active_challenge(user_id, ENROLLMENT)
        verification = await self._email.verify_challenge(user_id, code, ENROLLMENT)
        if verification.outcome is not EmailOutcome.SUCCESS or pending is None:
            return EnrollmentResult(
                factor=Factor.EMAIL,
                outcome=verification.outcome,
                attempts_remaining=verification.attempts_remaining,
            )

        await self._profiles.set_email(user_id, pending.destination)
        return await self._enable_primary(user_id, Factor.EMAIL, verification.outcome)

    # ═══════════════════════════════════════════════════════════════
    # TOTP
    # ═══════════════════════════════════════════════════════════════

    async def begin_totp_enrollment(
        self, user_id: str, account_name: str
    ) -> TotpEnrollment:
        return await self._totp.begin_setup(user_id, account_name)

    async def complete_totp_enrollment(
        self, user_id: str, code: str
    ) -> EnrollmentResult:
        """Confirm the first authenticator code and enable TOTP."""
        verification = await self._totp.confirm_setup(user_id, code)
        if verification.outcome is not TotpOutcome.SUCCESS:
            return EnrollmentResult(factor=Factor.TOTP, outcome=verification.outcome)
        return await self._enable_primary(user_id, Factor.TOTP, verification.outcome)

    async def _enable_primary(
        self,
        user_id: str,
        factor: Factor,
        outcome: EmailOutcome | TotpOutcome,
    ) -> EnrollmentResult:
        before = await self._profiles.ensure(user_id)
        profile = await self._profiles.enable_factor(user_id, factor)

        codes = None
        if not before.has_two_factor:
            codes = await self._recovery.generate_set(
                user_id, self._config.recovery.count
            )
            profile = await self._profiles.enable_factor(user_id, Factor.RECOVERY)
            logger.info("Two-factor enabled for user %s via %s", user_id, factor.value)

        return EnrollmentResult(
            factor=factor,
            outcome=outcome,
            profile=profile,
            recovery_codes=codes,
        )

    # ═══════════════════════════════════════════════════════════════
    # MANAGEMENT
    # ═══════════════════════════════════════════════════════════════

    async def regenerate_recovery_codes(self, user_id: str) -> IssuedRecoveryCodes:
        """Replace the recovery codes; every old code stops working.

        Raises:
            ProfileNotFoundError: If the user has no profile.
            FactorNotEnabledError: If no primary factor is enabled.
        """
        profile = await self._profiles.require(user_id)
        if not profile.has_two_factor:
            raise FactorNotEnabledError(user_id, Factor.RECOVERY.value)

        codes = await self._recovery.generate_set(user_id)
        await self._profiles.enable_factor(user_id, Factor.RECOVERY)
        return codes

    async def disable_factor(self, user_id: str, factor: Factor) -> User2FAProfile:
        """Disable a factor and delete its secrets.

        Disabling the last primary factor turns two-factor off entirely:
        recovery codes are revoked and trusted devices forgotten.

        Raises:
            ProfileNotFoundError: If the user has no profile.
        """
        profile = await self._profiles.disable_factor(user_id, factor)

        if factor is Factor.TOTP:
            await self._totp.remove(user_id)
        elif factor is Factor.EMAIL:
            for purpose in (LOGIN, ENROLLMENT):
                await self._email.invalidate(user_id, purpose)
            profile = await self._profiles.set_email(user_id, None)
        elif factor is Factor.RECOVERY:
            await self._recovery.revoke(user_id)

        if not profile.has_two_factor:
            await self._recovery.revoke(user_id)
            await self._devices.revoke_all(user_id)
            profile = await self._profiles.disable_factor(user_id, Factor.RECOVERY)
            logger.info("Two-factor disabled for user %s", user_id)
        return profile

    async def status(self, user_id: str) -> TwoFactorStatus:
        profile = await self._profiles.get(user_id)
        if profile is None:
            return TwoFactorStatus(user_id=user_id)

        return TwoFactorStatus(
            user_id=user_id,
            enabled_factors=profile.enabled_factors,
            email=profile.email,
            totp_configured=await self._totp.is_configured(user_id),
            recovery=await self._recovery.status(user_id),
            trusted_devices=tuple(await self._devices.list_devices(user_id)),
        )


__all__: list[str] = [
    "EnrollmentResult",
    "TwoFactorStatus",
    "EnrollmentService",
]
