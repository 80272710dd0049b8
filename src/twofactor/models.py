"""Two-factor domain model.

Entities are frozen dataclasses. Mutations produce new instances via
``dataclasses.replace`` and are persisted with compare-and-swap, so a
stale copy can never overwrite a concurrent change.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from .exceptions import InvalidStateTransitionError

# ═══════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════


class Factor(Enum):
    """Second-factor methods.

    ``DEVICE`` never appears on a profile; it marks audit entries written
    when a trusted device skipped the challenge.
    """

    EMAIL = "email"
    TOTP = "totp"
    RECOVERY = "recovery"
    DEVICE = "device"


PRIMARY_FACTORS: frozenset[Factor] = frozenset({Factor.EMAIL, Factor.TOTP})
PROFILE_FACTORS: frozenset[Factor] = PRIMARY_FACTORS | {Factor.RECOVERY}


class EmailOutcome(Enum):
    SUCCESS = "success"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"
    LOCKED_OUT = "locked_out"


class TotpOutcome(Enum):
    SUCCESS = "success"
    MISMATCH = "mismatch"
    REPLAYED = "replayed"
    NOT_FOUND = "not_found"


class RecoveryOutcome(Enum):
    """Recovery code outcomes.

    Wrong and already-used codes share ``INVALID_OR_USED`` so callers
    cannot learn which codes exist.
    """

    SUCCESS = "success"
    INVALID_OR_USED = "invalid_or_used"


class AttemptOutcome(Enum):
    """Outcome recorded in the verification attempt log."""

    SUCCESS = "success"
    FAILURE = "failure"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"


class SessionState(Enum):
    STARTED = "started"
    AWAITING_CODE = "awaiting_code"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    LOCKED_OUT = "locked_out"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        SessionState.SUCCEEDED,
        SessionState.FAILED,
        SessionState.EXPIRED,
        SessionState.LOCKED_OUT,
    }
)

_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.STARTED: frozenset(
        {
            SessionState.AWAITING_CODE,
            SessionState.SUCCEEDED,
            SessionState.LOCKED_OUT,
        }
    ),
    SessionState.AWAITING_CODE: frozenset(
        {SessionState.AWAITING_CODE} | _TERMINAL_STATES
    ),
}


# ═══════════════════════════════════════════════════════════════
# SERIALISATION HELPERS
# ═══════════════════════════════════════════════════════════════


def utc(value: datetime) -> datetime:
    """Return ``value`` as a timezone-aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return utc(datetime.fromisoformat(value))


def _require_dt(value: str) -> datetime:
    return utc(datetime.fromisoformat(value))


# ═══════════════════════════════════════════════════════════════
# PROFILE
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class User2FAProfile:
    """Which factors a user has enabled.

    Attributes:
        user_id: User identifier.
        enabled_factors: Enabled subset of email, totp and recovery.
        email: Address used by the email factor.
        created_at: First setup time.
        updated_at: Last modification time.
    """

    user_id: str
    enabled_factors: frozenset[Factor] = frozenset()
    email: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_enabled(self, factor: Factor) -> bool:
        return factor in self.enabled_factors

    @property
    def has_two_factor(self) -> bool:
        """True when at least one primary factor is enabled."""
        return bool(self.enabled_factors & PRIMARY_FACTORS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "enabled_factors": sorted(f.value for f in self.enabled_factors),
            "email": self.email,
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> User2FAProfile:
        return cls(
            user_id=data["user_id"],
            enabled_factors=frozenset(
                Factor(f) for f in data.get("enabled_factors", [])
            ),
            email=data.get("email"),
            created_at=_require_dt(data["created_at"]),
            updated_at=_require_dt(data["updated_at"]),
        )


# ═══════════════════════════════════════════════════════════════
# EMAIL CHALLENGE
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EmailChallenge:
    """A single emailed code awaiting verification.

    Attributes:
        challenge_id: Random identifier.
        user_id: Owning user.
        code: Fixed-width numeric code.
        destination: Address the code is delivered to.
        purpose: ``login`` or ``enrollment``.
        created_at: Issuance time; also drives the resend interval.
        expires_at: ``created_at`` plus the configured TTL.
        consumed: Set on success and on expiry; the code is single-use.
        locked: Set once the mismatch limit is reached.
        attempts: Consecutive mismatches so far.
    """

    challenge_id: str
    user_id: str
    code: str = field(repr=False)
    destination: str
    purpose: str
    created_at: datetime
    expires_at: datetime
    consumed: bool = False
    locked: bool = False
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.consumed and not self.locked and not self.is_expired(now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "user_id": self.user_id,
            "code": self.code,
            "destination": self.destination,
            "purpose": self.purpose,
            "created_at": _dt(self.created_at),
            "expires_at": _dt(self.expires_at),
            "consumed": self.consumed,
            "locked": self.locked,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EmailChallenge:
        return cls(
            challenge_id=data["challenge_id"],
            user_id=data["user_id"],
            code=data["code"],
            destination=data["destination"],
            purpose=data["purpose"],
            created_at=_require_dt(data["created_at"]),
            expires_at=_require_dt(data["expires_at"]),
            consumed=data.get("consumed", False),
            locked=data.get("locked", False),
            attempts=data.get("attempts", 0),
        )


# ═══════════════════════════════════════════════════════════════
# TOTP
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TotpSecret:
    """A user's authenticator app secret.

    ``last_used_counter`` is the time-step counter of the last accepted
    code; codes at or before it are rejected as replays.
    """

    user_id: str
    secret: bytes = field(repr=False)
    time_step: int = 30
    digits: int = 6
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_used_counter: int | None = None

    @property
    def secret_base32(self) -> str:
        return base64.b32encode(self.secret).decode("ascii")

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "secret": self.secret_base32,
            "time_step": self.time_step,
            "digits": self.digits,
            "created_at": _dt(self.created_at),
            "last_used_counter": self.last_used_counter,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TotpSecret:
        return cls(
            user_id=data["user_id"],
            secret=base64.b32decode(data["secret"]),
            time_step=data["time_step"],
            digits=data["digits"],
            created_at=_require_dt(data["created_at"]),
            last_used_counter=data.get("last_used_counter"),
        )


@dataclass(frozen=True)
class TotpEnrollment:
    """Data needed to configure an authenticator app.

    Attributes:
        user_id: Enrolling user.
        secret_base32: Base32 secret.
        provisioning_uri: ``otpauth://`` URI to render as a QR code.
        manual_key: Secret in groups of four for manual entry.
    """

    user_id: str
    secret_base32: str = field(repr=False)
    provisioning_uri: str = field(repr=False)
    manual_key: str = field(repr=False)


# ═══════════════════════════════════════════════════════════════
# RECOVERY CODES
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RecoveryCode:
    """A stored recovery code.

    Only a slow hash and a keyed fingerprint are kept; neither can be
    reversed without the configured fingerprint key or a full bcrypt
    search of the code space.
    """

    code_hash: str = field(repr=False)
    fingerprint: str = field(repr=False)
    used: bool = False
    used_at: datetime | None = None
    hint: str | None = None
    context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code_hash": self.code_hash,
            "fingerprint": self.fingerprint,
            "used": self.used,
            "used_at": _dt(self.used_at),
            "hint": self.hint,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryCode:
        return cls(
            code_hash=data["code_hash"],
            fingerprint=data["fingerprint"],
            used=data.get("used", False),
            used_at=_parse_dt(data.get("used_at")),
            hint=data.get("hint"),
            context=data.get("context"),
        )


@dataclass(frozen=True)
class RecoveryCodeSet:
    """The current recovery codes of a user.

    ``retired_fingerprints`` holds the fingerprints of every code from
    earlier sets so a regenerated set never repeats an old value.
    """

    user_id: str
    codes: tuple[RecoveryCode, ...]
    generated_at: datetime
    retired_fingerprints: frozenset[str] = field(default=frozenset(), repr=False)

    @property
    def total(self) -> int:
        return len(self.codes)

    @property
    def remaining(self) -> int:
        return sum(1 for code in self.codes if not code.used)

    def all_fingerprints(self) -> frozenset[str]:
        return self.retired_fingerprints | {code.fingerprint for code in self.codes}

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "codes": [code.to_dict() for code in self.codes],
            "generated_at": _dt(self.generated_at),
            "retired_fingerprints": sorted(self.retired_fingerprints),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryCodeSet:
        return cls(
            user_id=data["user_id"],
            codes=tuple(RecoveryCode.from_dict(c) for c in data["codes"]),
            generated_at=_require_dt(data["generated_at"]),
            retired_fingerprints=frozenset(data.get("retired_fingerprints", [])),
        )


@dataclass(frozen=True)
class IssuedRecoveryCodes:
    """Plaintext codes of a freshly generated set, shown to the user once."""

    user_id: str
    codes: tuple[str, ...] = field(repr=False)
    generated_at: datetime

    def to_text(self, issuer: str = "TwoFactor") -> str:
        """Render the codes as a downloadable text file."""
        lines = [
            f"{issuer} recovery codes",
            f"Generated: {self.generated_at.strftime('%Y-%m-%d %H:%M UTC')}",
            "",
            "Each code can be used only once.",
            "",
        ]
        lines.extend(f"{i:>2}. {code}" for i, code in enumerate(self.codes, start=1))
        return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class RecoveryCodeStatus:
    remaining: int
    total: int
    low: bool
    generated_at: datetime | None = None


@dataclass(frozen=True)
class RecoveryCodeUsage:
    masked_code: str
    used_at: datetime | None
    context: str | None = None


# ═══════════════════════════════════════════════════════════════
# DEVICES AND LOCKOUT
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TrustedDevice:
    """A device allowed to skip the second factor until ``expires_at``."""

    user_id: str
    fingerprint: str
    trusted_at: datetime
    expires_at: datetime
    device_name: str | None = None
    last_used_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "fingerprint": self.fingerprint,
            "trusted_at": _dt(self.trusted_at),
            "expires_at": _dt(self.expires_at),
            "device_name": self.device_name,
            "last_used_at": _dt(self.last_used_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrustedDevice:
        return cls(
            user_id=data["user_id"],
            fingerprint=data["fingerprint"],
            trusted_at=_require_dt(data["trusted_at"]),
            expires_at=_require_dt(data["expires_at"]),
            device_name=data.get("device_name"),
            last_used_at=_parse_dt(data.get("last_used_at")),
        )


@dataclass(frozen=True)
class AccountLockout:
    """Temporary account-level lockout after too many failures."""

    user_id: str
    locked_at: datetime
    locked_until: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.locked_until

    def retry_after(self, now: datetime) -> float:
        return max(0.0, (self.locked_until - now).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "locked_at": _dt(self.locked_at),
            "locked_until": _dt(self.locked_until),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountLockout:
        return cls(
            user_id=data["user_id"],
            locked_at=_require_dt(data["locked_at"]),
            locked_until=_require_dt(data["locked_until"]),
        )


@dataclass(frozen=True)
class FailureSlot:
    """One attempt charged to the account budget.

    ``pending`` slots belong to codes still being checked.
    """

    slot_id: str
    at: datetime
    pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"slot_id": self.slot_id, "at": _dt(self.at), "pending": self.pending}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureSlot:
        return cls(
            slot_id=data["slot_id"],
            at=_require_dt(data["at"]),
            pending=data.get("pending", False),
        )


@dataclass(frozen=True)
class FailureBudget:
    """Account-wide failure budget of a user.

    ``slots`` holds the failed attempts of the rolling window together
    with attempts still being checked. A slot is charged before a code
    is checked and refunded when the code turns out correct, so no more
    codes than the limit are ever checked inside one window. Only
    settled failures count towards a lockout.
    """

    user_id: str
    slots: tuple[FailureSlot, ...] = ()
    lockout: AccountLockout | None = None

    def active_lockout(self, now: datetime) -> AccountLockout | None:
        if self.lockout is not None and self.lockout.is_active(now):
            return self.lockout
        return None

    def in_window(self, now: datetime, window: timedelta) -> tuple[FailureSlot, ...]:
        return tuple(slot for slot in self.slots if slot.at > now - window)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "slots": [slot.to_dict() for slot in self.slots],
            "lockout": self.lockout.to_dict() if self.lockout else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureBudget:
        lockout = data.get("lockout")
        return cls(
            user_id=data["user_id"],
            slots=tuple(FailureSlot.from_dict(s) for s in data.get("slots", [])),
            lockout=AccountLockout.from_dict(lockout) if lockout else None,
        )


# ═══════════════════════════════════════════════════════════════
# VERIFICATION SESSION
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class VerificationContext:
    """Where a verification request comes from."""

    device_fingerprint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class VerificationSession:
    """One login or setup attempt bound to a single factor.

    States move ``STARTED -> AWAITING_CODE -> terminal``; ``STARTED`` may
    jump straight to ``SUCCEEDED`` (trusted device) or ``LOCKED_OUT``.
    """

    session_id: str
    user_id: str
    factor: Factor
    state: SessionState
    created_at: datetime
    expires_at: datetime
    updated_at: datetime
    device_fingerprint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    failed_attempts: int = 0
    claimed_until: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_claimed(self, now: datetime) -> bool:
        """Whether a submission is being evaluated on this session."""
        return self.claimed_until is not None and now < self.claimed_until

    @property
    def context(self) -> VerificationContext:
        return VerificationContext(
            device_fingerprint=self.device_fingerprint,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )

    def transition(self, target: SessionState, now: datetime) -> VerificationSession:
        """Return a copy in ``target`` state.

        Any claim on the session is released.

        Raises:
            InvalidStateTransitionError: If the edge is not allowed.
        """
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidStateTransitionError(self.state.value, target.value)
        return replace(self, state=target, updated_at=now, claimed_until=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "factor": self.factor.value,
            "state": self.state.value,
            "created_at": _dt(self.created_at),
            "expires_at": _dt(self.expires_at),
            "updated_at": _dt(self.updated_at),
            "device_fingerprint": self.device_fingerprint,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "failed_attempts": self.failed_attempts,
            "claimed_until": _dt(self.claimed_until),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationSession:
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            factor=Factor(data["factor"]),
            state=SessionState(data["state"]),
            created_at=_require_dt(data["created_at"]),
            expires_at=_require_dt(data["expires_at"]),
            updated_at=_require_dt(data["updated_at"]),
            device_fingerprint=data.get("device_fingerprint"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            failed_attempts=data.get("failed_attempts", 0),
            claimed_until=_parse_dt(data.get("claimed_until")),
        )


# ═══════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EmailVerification:
    outcome: EmailOutcome
    attempts_remaining: int | None = None


@dataclass(frozen=True)
class TotpVerification:
    outcome: TotpOutcome
    matched_offset: int | None = None


@dataclass(frozen=True)
class FactorAssertion:
    """Facts the session layer signs once the second factor is satisfied."""

    user_id: str
    factor: Factor
    session_id: str
    verified_at: datetime
    device_trusted: bool = False


@dataclass(frozen=True)
class VerificationResult:
    """What the session layer receives from the coordinator.

    Attributes:
        session: Session after the operation.
        outcome: Attempt outcome, or None when no attempt was evaluated.
        attempts_remaining: Failures left before a lockout (email/TOTP only).
        retry_after: Seconds until a lockout ends.
        assertion: Signed assertion on success (opaque).
        recovery_codes_low: Remaining recovery codes at or below the mark.
        challenge_delivered: Whether the email transport accepted the code.
    """

    session: VerificationSession
    outcome: AttemptOutcome | None = None
    attempts_remaining: int | None = None
    retry_after: float | None = None
    assertion: str | None = None
    recovery_codes_low: bool = False
    challenge_delivered: bool | None = None

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def succeeded(self) -> bool:
        return self.session.state is SessionState.SUCCEEDED


__all__: list[str] = [
    # Enums
    "Factor",
    "PRIMARY_FACTORS",
    "PROFILE_FACTORS",
    "EmailOutcome",
    "TotpOutcome",
    "RecoveryOutcome",
    "AttemptOutcome",
    "SessionState",
    # Entities
    "User2FAProfile",
    "EmailChallenge",
    "TotpSecret",
    "TotpEnrollment",
    "RecoveryCode",
    "RecoveryCodeSet",
    "IssuedRecoveryCodes",
    "RecoveryCodeStatus",
    "RecoveryCodeUsage",
    "TrustedDevice",
    "AccountLockout",
    "FailureSlot",
    "FailureBudget",
    "VerificationContext",
    "VerificationSession",
    # Results
    "EmailVerification",
    "TotpVerification",
    "FactorAssertion",
    "VerificationResult",
    "utc",
]
