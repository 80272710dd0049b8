"""Verification attempt audit entries.

Entries are immutable and append-only. They serve both the forensic
"recent activity" display and the account-wide rolling failure budget.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..generator import generate_identifier
from ..models import AttemptOutcome, Factor, utc

if TYPE_CHECKING:
    from ..models import VerificationContext

FAILURE_OUTCOMES: frozenset[AttemptOutcome] = frozenset(
    {AttemptOutcome.FAILURE, AttemptOutcome.EXPIRED}
)


@dataclass(frozen=True)
class VerificationAttempt:
    """One verification attempt.

    Attributes:
        user_id: User the attempt was made for.
        factor: Factor used (``device`` for trusted-device short circuits).
        outcome: success, failure, expired or rate_limited.
        timestamp: When the attempt was evaluated (UTC).
        attempt_id: Unique entry id.
        session_id: Verification session, if any.
        device_fingerprint: Originating device.
        ip_address: Client IP address (if available).
        user_agent: Client user agent string (if available).
        reason: Short machine-readable cause (e.g. ``mismatch``).
        metadata: Additional entry-specific data.
    """

    user_id: str
    factor: Factor
    outcome: AttemptOutcome
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempt_id: str = field(default_factory=generate_identifier)
    session_id: str | None = None
    device_fingerprint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        """True for outcomes that count against the failure budget."""
        return self.outcome in FAILURE_OUTCOMES

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "user_id": self.user_id,
            "factor": self.factor.value,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "device_fingerprint": self.device_fingerprint,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "reason": self.reason,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationAttempt:
        """Create an entry from its stored form.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        for required in ("user_id", "factor", "outcome", "timestamp"):
            if data.get(required) is None:
                raise ValueError(f"Missing required {required!r}")

        try:
            factor = Factor(data["factor"])
            outcome = AttemptOutcome(data["outcome"])
        except ValueError as e:
            raise ValueError(f"Invalid attempt entry: {e}") from e

        return cls(
            user_id=data["user_id"],
            factor=factor,
            outcome=outcome,
            timestamp=utc(datetime.fromisoformat(data["timestamp"])),
            attempt_id=data.get("attempt_id") or generate_identifier(),
            session_id=data.get("session_id"),
            device_fingerprint=data.get("device_fingerprint"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            reason=data.get("reason"),
            metadata=data.get("metadata", {}),
        )


def attempt_event(
    user_id: str,
    factor: Factor,
    outcome: AttemptOutcome,
    *,
    timestamp: datetime,
    session_id: str | None = None,
    context: VerificationContext | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> VerificationAttempt:
    """Create an attempt entry from a verification context."""
    return VerificationAttempt(
        user_id=user_id,
        factor=factor,
        outcome=outcome,
        timestamp=timestamp,
        session_id=session_id,
        device_fingerprint=context.device_fingerprint if context else None,
        ip_address=context.ip_address if context else None,
        user_agent=context.user_agent if context else None,
        reason=reason,
        metadata=metadata or {},
    )


__all__: list[str] = [
    "FAILURE_OUTCOMES",
    "VerificationAttempt",
    "attempt_event",
]
