"""Two-factor engine exceptions.

Per-attempt failures (wrong code, expired challenge, used recovery code)
are never raised: they are returned as typed outcomes. The exceptions in
this module are hard failures that propagate to the caller.
"""

from __future__ import annotations

# ═══════════════════════════════════════════════════════════════
# BASE ERROR
# ═══════════════════════════════════════════════════════════════


class TwoFactorError(Exception):
    """Root exception for the two-factor engine."""


# ═══════════════════════════════════════════════════════════════
# CALLER ERRORS
# ═══════════════════════════════════════════════════════════════


class ConfigurationError(TwoFactorError):
    """Raised when the engine is misconfigured or misused by the caller.

    Examples:
        - A factor is requested that is not enabled on the profile
        - A TOTP verification window above the configured maximum
        - Invalid configuration values
    """


class FactorNotEnabledError(ConfigurationError):
    """Raised when a verification is requested for a disabled factor.

    Attributes:
        user_id: The user the verification was requested for.
        factor: The requested factor value.
    """

    def __init__(self, user_id: str, factor: str) -> None:
        self.user_id = user_id
        self.factor = factor
        super().__init__(f"Factor {factor!r} is not enabled for user {user_id!r}")


class InvalidWindowError(ConfigurationError):
    """Raised when a TOTP tolerance window is outside the allowed range."""

    def __init__(self, window: int, max_window: int) -> None:
        self.window = window
        self.max_window = max_window
        super().__init__(
            f"TOTP window {window} is outside the allowed range 0..{max_window}"
        )


class TwoFactorNotFoundError(TwoFactorError):
    """Base class for missing records the caller referred to explicitly."""


class ProfileNotFoundError(TwoFactorNotFoundError):
    """Raised when a user has no two-factor profile."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No two-factor profile for user {user_id!r}")


class VerificationSessionNotFoundError(TwoFactorNotFoundError):
    """Raised when a verification session id is unknown."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Verification session {session_id!r} not found")


class VerificationSessionClosedError(TwoFactorError):
    """Raised when a code is submitted to a session in a terminal state."""

    def __init__(self, session_id: str, state: str) -> None:
        self.session_id = session_id
        self.state = state
        super().__init__(
            f"Verification session {session_id!r} is already closed ({state})"
        )


class InvalidStateTransitionError(TwoFactorError):
    """Raised when a verification session is moved along an illegal edge."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition session from {current} to {target}")


# ═══════════════════════════════════════════════════════════════
# RATE LIMITING
# ═══════════════════════════════════════════════════════════════


class RateLimitedError(TwoFactorError):
    """Raised when a request is rejected by a rate limit.

    Attributes:
        retry_after: Seconds until the request may be repeated.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ResendThrottledError(RateLimitedError):
    """Raised when an email code is re-requested inside the resend interval."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(
            f"Please wait {int(retry_after) + 1} seconds before requesting a new code",
            retry_after=retry_after,
        )


# ═══════════════════════════════════════════════════════════════
# INFRASTRUCTURE ERRORS
# ═══════════════════════════════════════════════════════════════


class InfrastructureError(TwoFactorError):
    """Base class for infrastructure failures."""


class StorageUnavailableError(InfrastructureError):
    """Raised when the storage backend fails.

    The engine never retries these; the caller decides whether to
    repeat the whole verification attempt.
    """


class ConcurrencyConflictError(InfrastructureError):
    """Raised when a compare-and-swap loop keeps losing to concurrent writers."""

    def __init__(self, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Gave up updating {key!r} after {attempts} conflicting writes"
        )


class SecureRandomUnavailableError(InfrastructureError):
    """Raised when the operating system CSPRNG cannot be used."""


__all__: list[str] = [
    "TwoFactorError",
    # Caller errors
    "ConfigurationError",
    "FactorNotEnabledError",
    "InvalidWindowError",
    "TwoFactorNotFoundError",
    "ProfileNotFoundError",
    "VerificationSessionNotFoundError",
    "VerificationSessionClosedError",
    "InvalidStateTransitionError",
    # Rate limiting
    "RateLimitedError",
    "ResendThrottledError",
    # Infrastructure
    "InfrastructureError",
    "StorageUnavailableError",
    "ConcurrencyConflictError",
    "SecureRandomUnavailableError",
]
