"""Email one-time code challenges.

The engine generates, stores and verifies codes; the application sends
them through an ``IMailTransport``. One challenge exists per user and
purpose; issuing a new one overwrites the previous record, so an old
code stops working the moment a new one is issued.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .exceptions import ResendThrottledError
from .generator import generate_identifier, generate_numeric_code
from .models import EmailChallenge, EmailOutcome, EmailVerification
from .storage import UNCHANGED, atomic_update, email_challenge_key

if TYPE_CHECKING:
    from .config import TwoFactorConfig
    from .ports import IClock, IMailTransport, IStorage

logger = logging.getLogger("twofactor.email")

LOGIN = "login"
ENROLLMENT = "enrollment"


class EmailOtpManager:
    """Issue, deliver and verify emailed one-time codes.

    Example:
        ```python
        email = EmailOtpManager(storage, clock, config, mail_transport=smtp)

        challenge = await email.issue_challenge("user-123", "alice@example.com")
        await email.deliver(challenge)

        result = await email.verify_challenge("user-123", "492039")
        if result.outcome is EmailOutcome.MISMATCH:
            print(f"{result.attempts_remaining} attempts left")
        ```
    """

    def __init__(
        self,
        storage: IStorage,
        clock: IClock,
        config: TwoFactorConfig,
        mail_transport: IMailTransport | None = None,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._config = config
        self._mail_transport = mail_transport

    @property
    def _record_ttl(self) -> int:
        # Kept past expiry so a late submission still reads EXPIRED.
        return self._config.email.ttl_seconds * 2

    def _new_challenge(
        self, user_id: str, destination: str, purpose: str, now: datetime
    ) -> EmailChallenge:
        cfg = self._config.email
        return EmailChallenge(
            challenge_id=generate_identifier(),
            user_id=user_id,
            code=generate_numeric_code(cfg.code_length),
            destination=destination,
            purpose=purpose,
            created_at=now,
            expires_at=now + cfg.ttl,
        )

    async def issue_challenge(
        self, user_id: str, destination: str, purpose: str = LOGIN
    ) -> EmailChallenge:
        """Issue a new challenge, replacing any existing one for ``purpose``.

        Args:
            user_id: User identifier.
            destination: Address the code will be sent to.
            purpose: ``login`` or ``enrollment``.

        Returns:
            The stored challenge (call ``deliver`` to send it).

        Raises:
            SecureRandomUnavailableError: If no secure random source exists.
            StorageUnavailableError: If the challenge cannot be stored.
        """
        challenge = self._new_challenge(
            user_id, destination, purpose, self._clock.now()
        )
        await atomic_update(
            self._storage,
            email_challenge_key(user_id, purpose),
            lambda _current: (challenge.to_dict(), None),
            max_attempts=self._config.max_cas_attempts,
            ttl=self._record_ttl,
        )
        logger.info(
            "Issued %s email challenge %s for user %s",
            purpose,
            challenge.challenge_id,
            user_id,
        )
        return challenge

    async def deliver(self, challenge: EmailChallenge) -> bool:
        """Hand a challenge to the mail transport.

        Delivery failures are logged and reported as False; they never
        raise, so a flaky mail provider cannot break the verification flow.

        Returns:
            True if the transport accepted the message.
        """
        if self._mail_transport is None:
            logger.warning(
                "No mail transport configured; challenge %s not delivered",
                challenge.challenge_id,
            )
            return False

        try:
            accepted = await self._mail_transport.send(
                challenge.destination,
                challenge.code,
                self._config.email.expiry_minutes,
            )
        except Exception:
            logger.exception(
                "Mail transport failed for challenge %s", challenge.challenge_id
            )
            return False

        if not accepted:
            logger.error(
                "Mail transport rejected challenge %s", challenge.challenge_id
            )
            return False
        return True

    async def verify_challenge(
        self, user_id: str, code: str, purpose: str = LOGIN
    ) -> EmailVerification:
        """Verify a submitted code.

        Checks run in this order: missing or consumed challenge, lock,
        expiry, code comparison. An expired challenge is consumed so it
        reads as ``NOT_FOUND`` from then on. A mismatch counts towards
        ``max_attempts``; reaching it locks the challenge and every later
        submission (even the right code) yields ``LOCKED_OUT``.

        Args:
            user_id: User identifier.
            code: Submitted code; surrounding whitespace is ignored.
            purpose: ``login`` or ``enrollment``.

        Returns:
            Outcome and, for mismatches, the attempts left.
        """
        now = self._clock.now()
        submitted = "".join(code.split())
        max_attempts = self._config.email.max_attempts

        def mutate(current: dict[str, Any] | None) -> tuple[Any, EmailVerification]:
            if current is None:
                return UNCHANGED, EmailVerification(EmailOutcome.NOT_FOUND)

            challenge = EmailChallenge.from_dict(current)
            if challenge.consumed:
                return UNCHANGED, EmailVerification(EmailOutcome.NOT_FOUND)
            if challenge.locked:
                return UNCHANGED, EmailVerification(EmailOutcome.LOCKED_OUT, 0)
            if challenge.is_expired(now):
                expired = replace(challenge, consumed=True)
                return expired.to_dict(), EmailVerification(EmailOutcome.EXPIRED)

            if not secrets.compare_digest(
                challenge.code.encode(), submitted.encode()
            ):
                attempts = challenge.attempts + 1
                failed = replace(
                    challenge, attempts=attempts, locked=attempts >= max_attempts
                )
                return failed.to_dict(), EmailVerification(
                    EmailOutcome.MISMATCH, max(0, max_attempts - attempts)
                )

            used = replace(challenge, consumed=True)
            return used.to_dict(), EmailVerification(EmailOutcome.SUCCESS)

        result = await atomic_update(
            self._storage,
            email_challenge_key(user_id, purpose),
            mutate,
            max_attempts=self._config.max_cas_attempts,
            ttl=self._record_ttl,
        )
        if result.outcome is EmailOutcome.MISMATCH and result.attempts_remaining == 0:
            logger.warning("Email challenge locked for user %s", user_id)
        return result

    async def seconds_until_resend(self, user_id: str, purpose: str = LOGIN) -> float:
        """Seconds left before a new code may be issued (0 when allowed)."""
        record = await self._storage.get(email_challenge_key(user_id, purpose))
        if record is None:
            return 0.0
        return self._wait_for(EmailChallenge.from_dict(record.value), self._clock.now())

    async def can_resend(self, user_id: str, purpose: str = LOGIN) -> bool:
        return await self.seconds_until_resend(user_id, purpose) == 0.0

    def _wait_for(self, challenge: EmailChallenge, now: datetime) -> float:
        elapsed = (now - challenge.created_at).total_seconds()
        return max(0.0, self._config.email.resend_interval_seconds - elapsed)

    async def resend_challenge(
        self, user_id: str, destination: str, purpose: str = LOGIN
    ) -> EmailChallenge:
        """Issue a new challenge if the resend interval has passed.

        Raises:
            ResendThrottledError: If the previous code is too recent.
        """
        now = self._clock.now()
        challenge = self._new_challenge(user_id, destination, purpose, now)

        def mutate(current: dict[str, Any] | None) -> tuple[Any, float]:
            if current is not None:
                wait = self._wait_for(EmailChallenge.from_dict(current), now)
                if wait > 0:
                    return UNCHANGED, wait
            return challenge.to_dict(), 0.0

        wait = await atomic_update(
            self._storage,
            email_challenge_key(user_id, purpose),
            mutate,
            max_attempts=self._config.max_cas_attempts,
            ttl=self._record_ttl,
        )
        if wait > 0:
            logger.info("Resend throttled for user %s (%.0fs left)", user_id, wait)
            raise ResendThrottledError(wait)

        logger.info(
            "Reissued %s email challenge %s for user %s",
            purpose,
            challenge.challenge_id,
            user_id,
        )
        return challenge

    async def active_challenge(
        self, user_id: str, purpose: str = LOGIN
    ) -> EmailChallenge | None:
        """The current challenge if it can still be answered."""
        record = await self._storage.get(email_challenge_key(user_id, purpose))
        if record is None:
            return None
        challenge = EmailChallenge.from_dict(record.value)
        return challenge if challenge.is_active(self._clock.now()) else None

    async def invalidate(self, user_id: str, purpose: str = LOGIN) -> None:
        await atomic_update(
            self._storage,
            email_challenge_key(user_id, purpose),
            lambda _current: (None, None),
            max_attempts=self._config.max_cas_attempts,
        )


__all__: list[str] = ["EmailOtpManager", "LOGIN", "ENROLLMENT"]
