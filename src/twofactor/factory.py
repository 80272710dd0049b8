"""Factory functions wiring the engine together."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .audit import AttemptLog
from .budget import FailureBudgetTracker
from .clock import SystemClock
from .config import TwoFactorConfig
from .coordinator import VerificationCoordinator
from .devices import DeviceTrustTracker
from .email_otp import EmailOtpManager
from .enrollment import EnrollmentService
from .profiles import ProfileStore
from .recovery import RecoveryCodeStore
from .totp import TotpEngine, TotpManager

if TYPE_CHECKING:
    from .ports import IAssertionSigner, IClock, IMailTransport, IStorage


@dataclass(frozen=True)
class TwoFactorServices:
    """Every component of the engine, sharing one storage, clock and config."""

    config: TwoFactorConfig
    clock: IClock
    storage: IStorage
    profiles: ProfileStore
    email: EmailOtpManager
    totp: TotpManager
    recovery: RecoveryCodeStore
    devices: DeviceTrustTracker
    attempt_log: AttemptLog
    budget: FailureBudgetTracker
    coordinator: VerificationCoordinator
    enrollment: EnrollmentService


def build_two_factor(
    storage: IStorage,
    *,
    mail_transport: IMailTransport | None = None,
    config: TwoFactorConfig | None = None,
    clock: IClock | None = None,
    assertion_signer: IAssertionSigner | None = None,
) -> TwoFactorServices:
    """Create the full set of two-factor services.

    Args:
        storage: Storage adapter (``RedisStorage`` in production).
        mail_transport: Transport used to email codes.
        config: Engine configuration (defaults apply when omitted).
        clock: Time source; the system clock by default.
        assertion_signer: Signs assertions on successful verification.

    Returns:
        The wired services.

    Example:
        ```python
        services = build_two_factor(
            RedisStorage(redis_client),
            mail_transport=SesMailTransport(),
            assertion_signer=session_layer,
        )
        result = await services.coordinator.start_verification(
            user_id, Factor.TOTP, context=context
        )
        ```
    """
    cfg = config or TwoFactorConfig()
    clk = clock or SystemClock()

    profiles = ProfileStore(storage, clk, max_cas_attempts=cfg.max_cas_attempts)
    email = EmailOtpManager(storage, clk, cfg, mail_transport)
    totp = TotpManager(storage, clk, cfg, TotpEngine(max_window=cfg.totp.max_window))
    recovery = RecoveryCodeStore(storage, clk, cfg)
    devices = DeviceTrustTracker(storage, clk, cfg)
    attempt_log = AttemptLog(storage)
    budget = FailureBudgetTracker(storage, clk, cfg)

    coordinator = VerificationCoordinator(
        storage,
        clk,
        cfg,
        profiles,
        email,
        totp,
        recovery,
        devices,
        attempt_log,
        budget,
        assertion_signer,
    )
    enrollment = EnrollmentService(profiles, email, totp, recovery, devices, cfg)

    return TwoFactorServices(
        config=cfg,
        clock=clk,
        storage=storage,
        profiles=profiles,
        email=email,
        totp=totp,
        recovery=recovery,
        devices=devices,
        attempt_log=attempt_log,
        budget=budget,
        coordinator=coordinator,
        enrollment=enrollment,
    )


__all__: list[str] = ["TwoFactorServices", "build_two_factor"]
