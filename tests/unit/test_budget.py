"""Tests for the account failure budget."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from prometheus_client import CollectorRegistry

from twofactor import FailureBudgetTracker, ManualClock, TwoFactorServices
from twofactor.models import FailureBudget
from twofactor.storage import InMemoryStorage, user_key


@pytest.fixture
def budget(services: TwoFactorServices) -> FailureBudgetTracker:
    return services.budget


async def _fail(budget: FailureBudgetTracker, times: int) -> None:
    for _ in range(times):
        await budget.settle_failure(await budget.reserve("u1"))


@pytest.mark.asyncio
class TestReserve:
    async def test_reservation_counts_against_budget(
        self, budget: FailureBudgetTracker
    ) -> None:
        reservation = await budget.reserve("u1")

        assert reservation.granted
        assert reservation.remaining == 9

    async def test_refuses_when_window_is_full(
        self, budget: FailureBudgetTracker, clock: ManualClock
    ) -> None:
        await _fail(budget, 9)
        clock.advance(minutes=10)
        held = await budget.reserve("u1")

        refused = await budget.reserve("u1")

        assert held.granted
        assert not refused.granted
        assert refused.lockout is None
        assert refused.retry_after == pytest.approx(50 * 60)

    async def test_concurrent_reservations_share_the_last_slot(
        self, budget: FailureBudgetTracker
    ) -> None:
        await _fail(budget, 9)

        reservations = await asyncio.gather(*(budget.reserve("u1") for _ in range(25)))

        assert sum(r.granted for r in reservations) == 1

    async def test_refuses_while_locked(self, budget: FailureBudgetTracker) -> None:
        await _fail(budget, 10)

        refused = await budget.reserve("u1")

        assert not refused.granted
        assert refused.lockout is not None
        assert refused.retry_after == pytest.approx(900)

    async def test_budgets_are_per_user(self, budget: FailureBudgetTracker) -> None:
        await _fail(budget, 10)
        assert (await budget.reserve("u2")).granted


@pytest.mark.asyncio
class TestSettle:
    async def test_release_refunds_the_slot(
        self, budget: FailureBudgetTracker, storage: InMemoryStorage
    ) -> None:
        await _fail(budget, 2)
        reservation = await budget.reserve("u1")

        await budget.release(reservation)

        record = await storage.get(user_key("u1", "budget"))
        assert record is not None
        assert len(FailureBudget.from_dict(record.value).slots) == 2

    async def test_tenth_failure_locks(
        self,
        budget: FailureBudgetTracker,
        clock: ManualClock,
        metrics_registry: CollectorRegistry,
    ) -> None:
        await _fail(budget, 9)
        lockout, remaining = await budget.settle_failure(await budget.reserve("u1"))

        assert lockout is not None
        assert lockout.locked_until == clock.now() + timedelta(minutes=15)
        assert remaining == 0
        assert await budget.lockout("u1") == lockout
        assert (
            metrics_registry.get_sample_value("twofactor_account_lockouts_total")
            == 1.0
        )

    async def test_checks_in_flight_do_not_lock(
        self, budget: FailureBudgetTracker
    ) -> None:
        await _fail(budget, 8)
        first = await budget.reserve("u1")
        second = await budget.reserve("u1")

        lockout, remaining = await budget.settle_failure(first)
        assert lockout is None
        assert remaining == 0

        await budget.release(second)
        assert await budget.lockout("u1") is None

    async def test_lockout_starts_a_fresh_budget(
        self, budget: FailureBudgetTracker, clock: ManualClock
    ) -> None:
        await _fail(budget, 10)
        clock.advance(minutes=16)

        assert await budget.lockout("u1") is None
        reservation = await budget.reserve("u1")
        assert reservation.granted
        assert reservation.remaining == 9

    async def test_record_failure_without_reservation(
        self, budget: FailureBudgetTracker
    ) -> None:
        lockout, remaining = await budget.record_failure("u1")

        assert lockout is None
        assert remaining == 9

    async def test_failures_age_out_of_the_window(
        self, budget: FailureBudgetTracker, clock: ManualClock
    ) -> None:
        await _fail(budget, 9)
        clock.advance(hours=1, seconds=1)

        _, remaining = await budget.record_failure("u1")
        assert remaining == 9
