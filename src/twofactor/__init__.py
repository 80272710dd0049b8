"""Storage-agnostic two-factor authentication engine.

Email one-time codes, TOTP authenticator apps and single-use recovery
codes behind one verification coordinator, with trusted devices, an
account-wide failure budget and an append-only attempt log.

Usage:
    ```python
    from twofactor import Factor, VerificationContext, build_two_factor
    from twofactor.storage import RedisStorage

    services = build_two_factor(RedisStorage(redis), mail_transport=transport)
    started = await services.coordinator.start_verification(
        "user-123", Factor.TOTP, context=VerificationContext(device_fingerprint=fp)
    )
    result = await services.coordinator.submit_code(
        "user-123", started.session.session_id, "492039"
    )
    ```
"""

from __future__ import annotations

from .audit import AttemptLog, VerificationAttempt
from .budget import BudgetReservation, FailureBudgetTracker
from .clock import ManualClock, SystemClock
from .config import (
    DeviceTrustConfig,
    EmailOtpConfig,
    RateLimitConfig,
    RecoveryCodeConfig,
    TotpConfig,
    TwoFactorConfig,
)
from .coordinator import VerificationCoordinator
from .devices import DeviceTrustTracker
from .email_otp import EmailOtpManager
from .enrollment import EnrollmentResult, EnrollmentService, TwoFactorStatus
from .exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    FactorNotEnabledError,
    InfrastructureError,
    InvalidStateTransitionError,
    InvalidWindowError,
    ProfileNotFoundError,
    RateLimitedError,
    ResendThrottledError,
    SecureRandomUnavailableError,
    StorageUnavailableError,
    TwoFactorError,
    TwoFactorNotFoundError,
    VerificationSessionClosedError,
    VerificationSessionNotFoundError,
)
from .factory import TwoFactorServices, build_two_factor
from .mail import InMemoryMailTransport
from .models import (
    AccountLockout,
    AttemptOutcome,
    EmailChallenge,
    EmailOutcome,
    EmailVerification,
    Factor,
    FactorAssertion,
    IssuedRecoveryCodes,
    RecoveryCodeStatus,
    RecoveryCodeUsage,
    RecoveryOutcome,
    SessionState,
    TotpEnrollment,
    TotpOutcome,
    TotpVerification,
    TrustedDevice,
    User2FAProfile,
    VerificationContext,
    VerificationResult,
    VerificationSession,
)
from .hashing import CodeHasher
from .ports import IAssertionSigner, IClock, IMailTransport, IStorage
from .profiles import ProfileStore
from .recovery import RecoveryCodeStore
from .totp import TotpEngine, TotpManager

__all__: list[str] = [
    # Wiring
    "build_two_factor",
    "TwoFactorServices",
    # Components
    "TotpEngine",
    "TotpManager",
    "EmailOtpManager",
    "RecoveryCodeStore",
    "CodeHasher",
    "DeviceTrustTracker",
    "ProfileStore",
    "EnrollmentService",
    "VerificationCoordinator",
    "AttemptLog",
    "FailureBudgetTracker",
    "BudgetReservation",
    "InMemoryMailTransport",
    # Ports
    "IStorage",
    "IMailTransport",
    "IAssertionSigner",
    "IClock",
    "SystemClock",
    "ManualClock",
    # Config
    "TwoFactorConfig",
    "TotpConfig",
    "EmailOtpConfig",
    "RecoveryCodeConfig",
    "DeviceTrustConfig",
    "RateLimitConfig",
    # Models
    "Factor",
    "SessionState",
    "AttemptOutcome",
    "EmailOutcome",
    "TotpOutcome",
    "RecoveryOutcome",
    "User2FAProfile",
    "EmailChallenge",
    "TotpEnrollment",
    "IssuedRecoveryCodes",
    "RecoveryCodeStatus",
    "RecoveryCodeUsage",
    "TrustedDevice",
    "AccountLockout",
    "VerificationContext",
    "VerificationSession",
    "VerificationAttempt",
    "EmailVerification",
    "TotpVerification",
    "FactorAssertion",
    "VerificationResult",
    "EnrollmentResult",
    "TwoFactorStatus",
    # Exceptions
    "TwoFactorError",
    "ConfigurationError",
    "FactorNotEnabledError",
    "InvalidWindowError",
    "TwoFactorNotFoundError",
    "ProfileNotFoundError",
    "VerificationSessionNotFoundError",
    "VerificationSessionClosedError",
    "InvalidStateTransitionError",
    "RateLimitedError",
    "ResendThrottledError",
    "InfrastructureError",
    "StorageUnavailableError",
    "ConcurrencyConflictError",
    "SecureRandomUnavailableError",
]
