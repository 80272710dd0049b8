"""Tests for email one-time code challenges."""

from __future__ import annotations

import asyncio
import logging

import pytest

from twofactor import (
    EmailOtpManager,
    EmailOutcome,
    InMemoryMailTransport,
    ManualClock,
    TwoFactorConfig,
)
from twofactor.exceptions import RateLimitedError, ResendThrottledError
from twofactor.storage import InMemoryStorage


@pytest.fixture
def email(
    storage: InMemoryStorage,
    clock: ManualClock,
    config: TwoFactorConfig,
    mail: InMemoryMailTransport,
) -> EmailOtpManager:
    return EmailOtpManager(storage, clock, config, mail)


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


@pytest.mark.asyncio
class TestIssueAndDeliver:
    async def test_issue_challenge(
        self, email: EmailOtpManager, clock: ManualClock
    ) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")

        assert len(challenge.code) == 6
        assert challenge.code.isdigit()
        assert challenge.purpose == "login"
        assert challenge.expires_at == clock.now() + TwoFactorConfig().email.ttl
        assert await email.active_challenge("user-1") == challenge

    async def test_code_is_hidden_from_repr(self, email: EmailOtpManager) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")
        assert challenge.code not in repr(challenge)

    async def test_deliver_sends_code_with_expiry_minutes(
        self, email: EmailOtpManager, mail: InMemoryMailTransport
    ) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")

        assert await email.deliver(challenge)
        sent = mail.outbox[-1]
        assert sent.to_address == "alice@example.com"
        assert sent.code == challenge.code
        assert sent.expiry_minutes == 10

    async def test_rejected_delivery_is_reported(
        self,
        storage: InMemoryStorage,
        clock: ManualClock,
        config: TwoFactorConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        manager = EmailOtpManager(
            storage, clock, config, InMemoryMailTransport(accept=False)
        )
        challenge = await manager.issue_challenge("user-1", "alice@example.com")

        with caplog.at_level(logging.ERROR, logger="twofactor.email"):
            assert await manager.deliver(challenge) is False
        assert "rejected" in caplog.text

    async def test_transport_error_is_logged_not_raised(
        self,
        storage: InMemoryStorage,
        clock: ManualClock,
        config: TwoFactorConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        manager = EmailOtpManager(
            storage,
            clock,
            config,
            InMemoryMailTransport(error=ConnectionError("smtp down")),
        )
        challenge = await manager.issue_challenge("user-1", "alice@example.com")

        with caplog.at_level(logging.ERROR, logger="twofactor.email"):
            assert await manager.deliver(challenge) is False
        assert challenge.code not in caplog.text
        # Challenge is still usable; delivery never affects verification
        result = await manager.verify_challenge("user-1", challenge.code)
        assert result.outcome is EmailOutcome.SUCCESS

    async def test_no_transport(
        self, storage: InMemoryStorage, clock: ManualClock, config: TwoFactorConfig
    ) -> None:
        manager = EmailOtpManager(storage, clock, config)
        challenge = await manager.issue_challenge("user-1", "alice@example.com")
        assert await manager.deliver(challenge) is False


@pytest.mark.asyncio
class TestVerifyChallenge:
    async def test_success_at_599_seconds(
        self, email: EmailOtpManager, clock: ManualClock
    ) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")
        clock.advance(seconds=599)

        result = await email.verify_challenge("user-1", challenge.code)
        assert result.outcome is EmailOutcome.SUCCESS

    async def test_expired_at_601_seconds(
        self, email: EmailOtpManager, clock: ManualClock
    ) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")
        clock.advance(seconds=601)

        result = await email.verify_challenge("user-1", challenge.code)
        assert result.outcome is EmailOutcome.EXPIRED
        # Expired challenges are consumed
        again = await email.verify_challenge("user-1", challenge.code)
        assert again.outcome is EmailOutcome.NOT_FOUND

    async def test_expires_exactly_at_ttl(
        self, email: EmailOtpManager, clock: ManualClock
    ) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")
        clock.advance(seconds=600)

        result = await email.verify_challenge("user-1", challenge.code)
        assert result.outcome is EmailOutcome.EXPIRED

    async def test_code_is_single_use(self, email: EmailOtpManager) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")

        assert (
            await email.verify_challenge("user-1", challenge.code)
        ).outcome is EmailOutcome.SUCCESS
        assert (
            await email.verify_challenge("user-1", challenge.code)
        ).outcome is EmailOutcome.NOT_FOUND

    async def test_no_challenge(self, email: EmailOtpManager) -> None:
        result = await email.verify_challenge("user-1", "123456")
        assert result.outcome is EmailOutcome.NOT_FOUND

    async def test_whitespace_is_ignored(self, email: EmailOtpManager) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")
        spaced = f" {challenge.code[:3]} {challenge.code[3:]} "

        result = await email.verify_challenge("user-1", spaced)
        assert result.outcome is EmailOutcome.SUCCESS

    async def test_new_challenge_invalidates_previous(
        self, email: EmailOtpManager
    ) -> None:
        old = await email.issue_challenge("user-1", "alice@example.com")
        new = await email.issue_challenge("user-1", "alice@example.com")

        result = await email.verify_challenge("user-1", old.code)
        if old.code == new.code:
            pytest.skip("random codes collided")
        assert result.outcome in (EmailOutcome.NOT_FOUND, EmailOutcome.MISMATCH)
        assert (
            await email.verify_challenge("user-1", new.code)
        ).outcome is EmailOutcome.SUCCESS

    async def test_mismatch_counts_down_then_locks(
        self, email: EmailOtpManager
    ) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")
        wrong = _wrong(challenge.code)

        remaining = [
            (await email.verify_challenge("user-1", wrong)).attempts_remaining
            for _ in range(5)
        ]
        assert remaining == [4, 3, 2, 1, 0]

        # Even the right code is refused until a new challenge is issued
        locked = await email.verify_challenge("user-1", challenge.code)
        assert locked.outcome is EmailOutcome.LOCKED_OUT
        assert await email.active_challenge("user-1") is None

        fresh = await email.issue_challenge("user-1", "alice@example.com")
        assert (
            await email.verify_challenge("user-1", fresh.code)
        ).outcome is EmailOutcome.SUCCESS

    async def test_purposes_are_independent(self, email: EmailOtpManager) -> None:
        login = await email.issue_challenge("user-1", "alice@example.com")
        enroll = await email.issue_challenge(
            "user-1", "new@example.com", purpose="enrollment"
        )

        assert (
            await email.verify_challenge("user-1", enroll.code, "enrollment")
        ).outcome is EmailOutcome.SUCCESS
        assert (
            await email.verify_challenge("user-1", login.code)
        ).outcome is EmailOutcome.SUCCESS

    async def test_concurrent_correct_submissions_succeed_once(
        self, email: EmailOtpManager
    ) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")

        results = await asyncio.gather(
            *(email.verify_challenge("user-1", challenge.code) for _ in range(4))
        )

        outcomes = [r.outcome for r in results]
        assert outcomes.count(EmailOutcome.SUCCESS) == 1
        assert outcomes.count(EmailOutcome.NOT_FOUND) == 3

    async def test_invalidate(self, email: EmailOtpManager) -> None:
        challenge = await email.issue_challenge("user-1", "alice@example.com")
        await email.invalidate("user-1")

        result = await email.verify_challenge("user-1", challenge.code)
        assert result.outcome is EmailOutcome.NOT_FOUND


@pytest.mark.asyncio
class TestResend:
    async def test_resend_interval(
        self, email: EmailOtpManager, clock: ManualClock
    ) -> None:
        assert await email.can_resend("user-1")

        await email.issue_challenge("user-1", "alice@example.com")
        clock.advance(seconds=20)

        assert not await email.can_resend("user-1")
        assert await email.seconds_until_resend("user-1") == pytest.approx(40)

        clock.advance(seconds=40)
        assert await email.can_resend("user-1")

    async def test_resend_inside_interval_raises(
        self, email: EmailOtpManager, clock: ManualClock
    ) -> None:
        first = await email.issue_challenge("user-1", "alice@example.com")
        clock.advance(seconds=10)

        with pytest.raises(ResendThrottledError) as exc_info:
            await email.resend_challenge("user-1", "alice@example.com")

        assert isinstance(exc_info.value, RateLimitedError)
        assert exc_info.value.retry_after == pytest.approx(50)
        # The original code still works
        assert (
            await email.verify_challenge("user-1", first.code)
        ).outcome is EmailOutcome.SUCCESS

    async def test_resend_after_interval_issues_new_code(
        self, email: EmailOtpManager, clock: ManualClock
    ) -> None:
        first = await email.issue_challenge("user-1", "alice@example.com")
        clock.advance(seconds=61)

        second = await email.resend_challenge("user-1", "alice@example.com")

        assert second.challenge_id != first.challenge_id
        assert second.expires_at == clock.now() + TwoFactorConfig().email.ttl
