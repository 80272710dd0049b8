"""Verification sessions across factors.

The coordinator is the only component that knows about sessions, the
account-wide failure budget and trusted devices. Managers report typed
outcomes; the coordinator maps them onto session states, writes the
audit trail and signs the assertion handed to the session layer.

A submission claims its session and reserves a failure budget slot
before any code is checked, so one session evaluates one code at a time
and concurrent submissions never check more codes than the budget allows.

Session state machine::

    STARTED ──► AWAITING_CODE ──► SUCCEEDED | FAILED | EXPIRED | LOCKED_OUT
       │                ▲   │
       │                └───┘  (mismatch, try again)
       └──► SUCCEEDED (trusted device) | LOCKED_OUT (account lockout)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .audit import attempt_event
from .email_otp import LOGIN
from .exceptions import (
    ConfigurationError,
    FactorNotEnabledError,
    VerificationSessionClosedError,
    VerificationSessionNotFoundError,
)
from .generator import generate_identifier
from .models import (
    AccountLockout,
    AttemptOutcome,
    EmailOutcome,
    Factor,
    FactorAssertion,
    RecoveryOutcome,
    SessionState,
    TotpOutcome,
    TrustedDevice,
    VerificationContext,
    VerificationResult,
    VerificationSession,
)
from .observability import TwoFactorMetrics, TwoFactorTracing
from .storage import UNCHANGED, atomic_update, session_key

if TYPE_CHECKING:
    from .audit import AttemptLog, VerificationAttempt
    from .budget import BudgetReservation, FailureBudgetTracker
    from .config import TwoFactorConfig
    from .devices import DeviceTrustTracker
    from .email_otp import EmailOtpManager
    from .ports import IAssertionSigner, IClock, IStorage
    from .profiles import ProfileStore
    from .recovery import RecoveryCodeStore
    from .totp import TotpManager

logger = logging.getLogger("twofactor.coordinator")

_CLAIM_LEASE = timedelta(seconds=30)


@dataclass(frozen=True)
class _Evaluation:
    """A manager outcome translated into session terms."""

    state: SessionState
    outcome: AttemptOutcome
    reason: str
    attempts_remaining: int | None = None
    recovery_codes_low: bool = False


class VerificationCoordinator:
    """Drive verification sessions for email, TOTP and recovery codes.

    Example:
        ```python
        started = await coordinator.start_verification(
            "user-123",
            Factor.EMAIL,
            context=VerificationContext(device_fingerprint=fp, ip_address=ip),
        )
        if started.succeeded:
            return started.assertion  # trusted device

        result = await coordinator.submit_code(
            "user-123", started.session.session_id, "492039"
        )
        if result.state is SessionState.AWAITING_CODE:
            print(f"{result.attempts_remaining} attempts left")
        ```
    """

    def __init__(
        self,
        storage: IStorage,
        clock: IClock,
        config: TwoFactorConfig,
        profiles: ProfileStore,
        email: EmailOtpManager,
        totp: TotpManager,
        recovery: RecoveryCodeStore,
        devices: DeviceTrustTracker,
        attempt_log: AttemptLog,
        budget: FailureBudgetTracker,
        assertion_signer: IAssertionSigner | None = None,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._config = config
        self._profiles = profiles
        self._email = email
        self._totp = totp
        self._recovery = recovery
        self._devices = devices
        self._attempt_log = attempt_log
        self._budget = budget
        self._assertion_signer = assertion_signer

    # ═══════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════

    async def check_device_trust(
        self, user_id: str, device_fingerprint: str | None
    ) -> bool:
        if not device_fingerprint:
            return False
        return await self._devices.is_trusted(user_id, device_fingerprint)

    async def lockout_status(self, user_id: str) -> AccountLockout | None:
        """The active account lockout, if any."""
        return await self._budget.lockout(user_id)

    async def attempt_history(
        self, user_id: str, limit: int = 50
    ) -> list[VerificationAttempt]:
        """Recent attempts of a user, most recent first."""
        return await self._attempt_log.recent(user_id, limit=limit)

    async def get_session(self, user_id: str, session_id: str) -> VerificationSession:
        """Load a session.

        Raises:
            VerificationSessionNotFoundError: If the id is unknown or purged.
        """
        record = await self._storage.get(session_key(user_id, session_id))
        if record is None:
            raise VerificationSessionNotFoundError(session_id)
        return VerificationSession.from_dict(record.value)

    # ═══════════════════════════════════════════════════════════════
    # COMMANDS
    # ═══════════════════════════════════════════════════════════════

    async def start_verification(
        self,
        user_id: str,
        factor: Factor,
        *,
        context: VerificationContext | None = None,
    ) -> VerificationResult:
        """Open a verification session for one factor.

        A trusted device finishes the session at once; an active account
        lockout closes it as ``LOCKED_OUT``. For email a fresh code is
        issued and delivered.

        Args:
            user_id: User identifier.
            factor: Factor to verify with.
            context: Device fingerprint, IP address and user agent.

        Returns:
            The session and, for email, whether the code was delivered.

        Raises:
            FactorNotEnabledError: If the factor is not enabled for the user.
            StorageUnavailableError: If the storage backend fails.
        """
        ctx = context or VerificationContext()
        with (
            TwoFactorMetrics.operation("start_verification", factor=factor.value),
            TwoFactorTracing.span(
                "start_verification", user_id=user_id, factor=factor.value
            ) as span,
        ):
            result = await self._start(user_id, factor, ctx)
            TwoFactorTracing.set_state(span, result.state.value)
            return result

    async def _start(
        self, user_id: str, factor: Factor, ctx: VerificationContext
    ) -> VerificationResult:
        profile = await self._profiles.get(user_id)
        if profile is None or not profile.is_enabled(factor):
            raise FactorNotEnabledError(user_id, factor.value)

        now = self._clock.now()
        session = VerificationSession(
            session_id=generate_identifier(),
            user_id=user_id,
            factor=factor,
            state=SessionState.STARTED,
            created_at=now,
            expires_at=now + self._config.session_ttl,
            updated_at=now,
            device_fingerprint=ctx.device_fingerprint,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )

        lockout = await self.lockout_status(user_id)
        if lockout is not None:
            session = session.transition(SessionState.LOCKED_OUT, now)
            await self._save(session)
            await self._record(session, AttemptOutcome.RATE_LIMITED, "account_locked")
            return VerificationResult(
                session=session,
                outcome=AttemptOutcome.RATE_LIMITED,
                retry_after=lockout.retry_after(now),
            )

        fingerprint = ctx.device_fingerprint
        if fingerprint and await self._devices.is_trusted(user_id, fingerprint):
            session = session.transition(SessionState.SUCCEEDED, now)
            await self._save(session)
            await self._devices.touch(user_id, fingerprint)
            await self._record(
                session,
                AttemptOutcome.SUCCESS,
                "trusted_device",
                factor=Factor.DEVICE,
            )
            return VerificationResult(
                session=session,
                outcome=AttemptOutcome.SUCCESS,
                assertion=self._sign(session, now, device_trusted=True),
            )

        delivered: bool | None = None
        if factor is Factor.EMAIL:
            if not profile.email:
                raise ConfigurationError(
                    f"Email factor enabled without an address for user {user_id!r}"
                )
            challenge = await self._email.issue_challenge(user_id, profile.email, LOGIN)
            delivered = await self._email.deliver(challenge)

        session = session.transition(SessionState.AWAITING_CODE, now)
        await self._save(session)
        logger.info(
            "Started %s verification %s for user %s",
            factor.value,
            session.session_id,
            user_id,
        )
        return VerificationResult(session=session, challenge_delivered=delivered)

    async def submit_code(
        self, user_id: str, session_id: str, code: str
    ) -> VerificationResult:
        """Submit a code to an open session.

        Args:
            user_id: User identifier.
            session_id: Session returned by ``start_verification``.
            code: Code entered by the user.

        Returns:
            The session in its new state, with the attempt outcome.

        Raises:
            VerificationSessionNotFoundError: If the session is unknown.
            VerificationSessionClosedError: If the session already ended.
            StorageUnavailableError: If the storage backend fails.
        """
        with (
            TwoFactorMetrics.operation("submit_code"),
            TwoFactorTracing.span("submit_code", user_id=user_id) as span,
        ):
            result = await self._submit(user_id, session_id, code)
            span.set_attribute("twofactor.factor", result.session.factor.value)
            TwoFactorTracing.set_state(span, result.state.value)
            return result

    async def _submit(
        self, user_id: str, session_id: str, code: str
    ) -> VerificationResult:
        session = await self._open_session(user_id, session_id)
        now = self._clock.now()

        closed = await self._close_if_expired_or_locked(session, now)
        if closed is not None:
            return closed

        claimed, stored = await self._claim(session, now)
        if claimed is None:
            await self._record(stored, AttemptOutcome.RATE_LIMITED, "session_busy")
            busy_until = stored.claimed_until or now
            return VerificationResult(
                session=stored,
                outcome=AttemptOutcome.RATE_LIMITED,
                retry_after=max(0.0, (busy_until - now).total_seconds()),
            )
        session = claimed

        reservation = await self._budget.reserve(user_id)
        if not reservation.granted:
            return await self._refuse(session, reservation, now)

        evaluation = await self._evaluate(session, code)
        await self._record(session, evaluation.outcome, evaluation.reason)

        retry_after: float | None = None
        attempts_remaining = evaluation.attempts_remaining
        state = evaluation.state
        failed = evaluation.outcome is not AttemptOutcome.SUCCESS
        if failed:
            lockout, budget_left = await self._budget.settle_failure(reservation)
            if lockout is not None:
                state = SessionState.LOCKED_OUT
                retry_after = lockout.retry_after(now)
            if session.factor is Factor.TOTP:
                attempts_remaining = budget_left
        else:
            await self._budget.release(reservation)

        session, moved = await self._transition(session, state, now, failed=failed)
        assertion = None
        if moved and session.state is SessionState.SUCCEEDED:
            assertion = self._sign(session, now)
            logger.info("Verification %s succeeded for user %s", session_id, user_id)

        return VerificationResult(
            session=session,
            outcome=evaluation.outcome,
            attempts_remaining=attempts_remaining,
            retry_after=retry_after,
            assertion=assertion,
            recovery_codes_low=evaluation.recovery_codes_low,
        )

    async def resend_email_code(
        self, user_id: str, session_id: str
    ) -> VerificationResult:
        """Issue and deliver a new code for an email session.

        Raises:
            VerificationSessionNotFoundError: If the session is unknown.
            VerificationSessionClosedError: If the session already ended.
            ConfigurationError: If the session is not an email session.
            ResendThrottledError: If the previous code is too recent.
        """
        with (
            TwoFactorMetrics.operation("resend_email_code", factor=Factor.EMAIL.value),
            TwoFactorTracing.span(
                "resend_email_code", user_id=user_id, factor=Factor.EMAIL.value
            ) as span,
        ):
            session = await self._open_session(user_id, session_id)
            if session.factor is not Factor.EMAIL:
                raise ConfigurationError(
                    f"Session {session_id!r} does not verify by email"
                )

            now = self._clock.now()
            closed = await self._close_if_expired_or_locked(session, now)
            if closed is not None:
                TwoFactorTracing.set_state(span, closed.state.value)
                return closed

            profile = await self._profiles.require(user_id)
            if not profile.email:
                raise ConfigurationError(
                    f"Email factor enabled without an address for user {user_id!r}"
                )
            challenge = await self._email.resend_challenge(
                user_id, profile.email, LOGIN
            )
            delivered = await self._email.deliver(challenge)
            TwoFactorTracing.set_state(span, session.state.value)
            return VerificationResult(session=session, challenge_delivered=delivered)

    async def remember_device(
        self,
        user_id: str,
        session_id: str,
        *,
        device_name: str | None = None,
        duration: timedelta | None = None,
    ) -> TrustedDevice:
        """Trust the device of a successfully verified session.

        Raises:
            VerificationSessionNotFoundError: If the session is unknown.
            ConfigurationError: If the session did not succeed, carries no
                device fingerprint, or the duration is out of bounds.
        """
        with TwoFactorTracing.span("remember_device", user_id=user_id):
            session = await self.get_session(user_id, session_id)
            if session.state is not SessionState.SUCCEEDED:
                raise ConfigurationError(
                    f"Session {session_id!r} has not succeeded ({session.state.value})"
                )
            if not session.device_fingerprint:
                raise ConfigurationError(
                    f"Session {session_id!r} carries no device fingerprint"
                )
            return await self._devices.trust(
                user_id,
                session.device_fingerprint,
                duration,
                device_name=device_name or session.user_agent,
            )

    # ═══════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════

    async def _open_session(
        self, user_id: str, session_id: str
    ) -> VerificationSession:
        session = await self.get_session(user_id, session_id)
        if session.state.is_terminal:
            raise VerificationSessionClosedError(session_id, session.state.value)
        return session

    async def _close_if_expired_or_locked(
        self, session: VerificationSession, now: datetime
    ) -> VerificationResult | None:
        if session.is_expired(now):
            await self._record(session, AttemptOutcome.EXPIRED, "session_expired")
            lockout, _ = await self._budget.record_failure(session.user_id)
            expired, _ = await self._transition(session, SessionState.EXPIRED, now)
            return VerificationResult(
                session=expired,
                outcome=AttemptOutcome.EXPIRED,
                retry_after=lockout.retry_after(now) if lockout else None,
            )

        lockout = await self.lockout_status(session.user_id)
        if lockout is not None:
            await self._record(session, AttemptOutcome.RATE_LIMITED, "account_locked")
            locked, _ = await self._transition(session, SessionState.LOCKED_OUT, now)
            return VerificationResult(
                session=locked,
                outcome=AttemptOutcome.RATE_LIMITED,
                retry_after=lockout.retry_after(now),
            )
        return None

    async def _claim(
        self, session: VerificationSession, now: datetime
    ) -> tuple[VerificationSession | None, VerificationSession]:
        """Mark the session as evaluating a code.

        Only one submission per session is evaluated at a time; the claim
        is released by the next state transition or when the lease ends.

        Returns:
            The claimed session (None if another submission holds it) and
            the stored session.

        Raises:
            VerificationSessionClosedError: If the session ended meanwhile.
        """

        def mutate(
            current: dict[str, Any] | None,
        ) -> tuple[Any, tuple[VerificationSession | None, VerificationSession]]:
            if current is None:
                raise VerificationSessionNotFoundError(session.session_id)
            stored = VerificationSession.from_dict(current)
            if stored.state.is_terminal:
                raise VerificationSessionClosedError(
                    stored.session_id, stored.state.value
                )
            if stored.is_claimed(now):
                return UNCHANGED, (None, stored)
            claimed = replace(stored, claimed_until=now + _CLAIM_LEASE)
            return claimed.to_dict(), (claimed, claimed)

        return await atomic_update(
            self._storage,
            session_key(session.user_id, session.session_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
            ttl=self._config.session_ttl_seconds * 2,
        )

    async def _refuse(
        self,
        session: VerificationSession,
        reservation: BudgetReservation,
        now: datetime,
    ) -> VerificationResult:
        """Answer a submission the failure budget would not check."""
        if reservation.lockout is not None:
            await self._record(session, AttemptOutcome.RATE_LIMITED, "account_locked")
            locked, _ = await self._transition(session, SessionState.LOCKED_OUT, now)
            return VerificationResult(
                session=locked,
                outcome=AttemptOutcome.RATE_LIMITED,
                retry_after=reservation.retry_after,
            )

        await self._record(session, AttemptOutcome.RATE_LIMITED, "budget_exhausted")
        waiting, _ = await self._transition(session, SessionState.AWAITING_CODE, now)
        return VerificationResult(
            session=waiting,
            outcome=AttemptOutcome.RATE_LIMITED,
            attempts_remaining=0,
            retry_after=reservation.retry_after,
        )

    async def _evaluate(self, session: VerificationSession, code: str) -> _Evaluation:
        user_id = session.user_id

        if session.factor is Factor.EMAIL:
            email = await self._email.verify_challenge(user_id, code, LOGIN)
            if email.outcome is EmailOutcome.SUCCESS:
                return _Evaluation(SessionState.SUCCEEDED, AttemptOutcome.SUCCESS, "ok")
            if email.outcome is EmailOutcome.EXPIRED:
                return _Evaluation(
                    SessionState.EXPIRED, AttemptOutcome.EXPIRED, "code_expired"
                )
            if email.outcome is EmailOutcome.NOT_FOUND:
                return _Evaluation(
                    SessionState.FAILED, AttemptOutcome.FAILURE, "no_active_code"
                )
            if email.outcome is EmailOutcome.LOCKED_OUT:
                return _Evaluation(
                    SessionState.LOCKED_OUT,
                    AttemptOutcome.FAILURE,
                    "challenge_locked",
                    attempts_remaining=0,
                )
            remaining = email.attempts_remaining or 0
            return _Evaluation(
                SessionState.AWAITING_CODE if remaining else SessionState.LOCKED_OUT,
                AttemptOutcome.FAILURE,
                "mismatch",
                attempts_remaining=remaining,
            )

        if session.factor is Factor.TOTP:
            totp = await self._totp.verify(user_id, code)
            if totp.outcome is TotpOutcome.SUCCESS:
                return _Evaluation(SessionState.SUCCEEDED, AttemptOutcome.SUCCESS, "ok")
            if totp.outcome is TotpOutcome.NOT_FOUND:
                return _Evaluation(
                    SessionState.FAILED, AttemptOutcome.FAILURE, "not_configured"
                )
            return _Evaluation(
                SessionState.AWAITING_CODE,
                AttemptOutcome.FAILURE,
                totp.outcome.value,
            )

        if session.factor is Factor.RECOVERY:
            outcome = await self._recovery.consume(
                user_id, code, context=session.device_fingerprint
            )
            if outcome is RecoveryOutcome.SUCCESS:
                status = await self._recovery.status(user_id)
                return _Evaluation(
                    SessionState.SUCCEEDED,
                    AttemptOutcome.SUCCESS,
                    "ok",
                    recovery_codes_low=status.low,
                )
            return _Evaluation(
                SessionState.AWAITING_CODE,
                AttemptOutcome.FAILURE,
                outcome.value,
            )

        raise ConfigurationError(f"Factor {session.factor.value!r} takes no code")

    async def _save(self, session: VerificationSession) -> None:
        await atomic_update(
            self._storage,
            session_key(session.user_id, session.session_id),
            lambda _current: (session.to_dict(), None),
            max_attempts=self._config.max_cas_attempts,
            ttl=self._config.session_ttl_seconds * 2,
        )

    async def _transition(
        self,
        session: VerificationSession,
        target: SessionState,
        now: datetime,
        *,
        failed: bool = False,
    ) -> tuple[VerificationSession, bool]:
        """Move a stored session to ``target`` unless it already ended.

        Returns:
            The stored session and whether this call moved it.
        """

        def mutate(
            current: dict[str, Any] | None,
        ) -> tuple[Any, tuple[VerificationSession, bool]]:
            if current is None:
                raise VerificationSessionNotFoundError(session.session_id)
            stored = VerificationSession.from_dict(current)
            if stored.state.is_terminal:
                return UNCHANGED, (stored, False)
            moved = stored.transition(target, now)
            if failed:
                moved = replace(moved, failed_attempts=stored.failed_attempts + 1)
            return moved.to_dict(), (moved, True)

        return await atomic_update(
            self._storage,
            session_key(session.user_id, session.session_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
            ttl=self._config.session_ttl_seconds * 2,
        )

    async def _record(
        self,
        session: VerificationSession,
        outcome: AttemptOutcome,
        reason: str,
        *,
        factor: Factor | None = None,
    ) -> None:
        await self._attempt_log.record(
            attempt_event(
                session.user_id,
                factor or session.factor,
                outcome,
                timestamp=self._clock.now(),
                session_id=session.session_id,
                context=session.context,
                reason=reason,
            )
        )

    def _sign(
        self,
        session: VerificationSession,
        now: datetime,
        *,
        device_trusted: bool = False,
    ) -> str | None:
        if self._assertion_signer is None:
            return None
        return self._assertion_signer.sign(
            FactorAssertion(
                user_id=session.user_id,
                factor=session.factor,
                session_id=session.session_id,
                verified_at=now,
                device_trusted=device_trusted,
            )
        )


__all__: list[str] = ["VerificationCoordinator"]
