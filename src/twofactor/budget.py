"""Account-wide failure budget and lockout.

Every code check across all factors draws on one budget per user. A slot
is reserved atomically before the code is checked, so concurrent
submissions can never check more codes than the budget allows; the slot
is refunded when the code was right and settled as a failure otherwise.
Once the settled failures inside the rolling window reach the limit the
account is locked, and the lockout starts a fresh budget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from .generator import generate_identifier
from .models import AccountLockout, FailureBudget, FailureSlot
from .observability import TwoFactorMetrics
from .storage import UNCHANGED, atomic_update, user_key
from .storage.atomic import Mutation
from .storage.keys import BUDGET

if TYPE_CHECKING:
    from .config import TwoFactorConfig
    from .ports import IClock, IStorage

logger = logging.getLogger("twofactor.budget")

T = TypeVar("T")


@dataclass(frozen=True)
class BudgetReservation:
    """Result of reserving a slot before a code is checked.

    Attributes:
        user_id: User the slot was charged to.
        slot_id: Reserved slot, or None if the budget refused.
        remaining: Slots left after this reservation.
        lockout: The active lockout that caused a refusal.
        retry_after: Seconds until a refused caller may try again.
    """

    user_id: str
    slot_id: str | None
    remaining: int
    lockout: AccountLockout | None = None
    retry_after: float | None = None

    @property
    def granted(self) -> bool:
        return self.slot_id is not None


def _load(user_id: str, current: dict[str, Any] | None) -> FailureBudget:
    if current is None:
        return FailureBudget(user_id=user_id)
    return FailureBudget.from_dict(current)


class FailureBudgetTracker:
    """Reserve, refund and settle failure budget slots.

    Example:
        ```python
        reservation = await budget.reserve("user-123")
        if not reservation.granted:
            return rate_limited(reservation.retry_after)
        if code_is_valid:
            await budget.release(reservation)
        else:
            lockout, remaining = await budget.settle_failure(reservation)
        ```
    """

    def __init__(
        self,
        storage: IStorage,
        clock: IClock,
        config: TwoFactorConfig,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._config = config

    def _key(self, user_id: str) -> str:
        return user_key(user_id, BUDGET)

    @property
    def _window(self) -> timedelta:
        return timedelta(seconds=self._config.rate_limit.window_seconds)

    @property
    def _ttl(self) -> int:
        limits = self._config.rate_limit
        return max(limits.window_seconds, limits.lockout_seconds)

    async def _update(self, user_id: str, mutate: Mutation[T]) -> T:
        return await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
            ttl=self._ttl,
        )

    async def lockout(self, user_id: str) -> AccountLockout | None:
        """The active account lockout, if any."""
        record = await self._storage.get(self._key(user_id))
        if record is None:
            return None
        return _load(user_id, record.value).active_lockout(self._clock.now())

    async def reserve(self, user_id: str) -> BudgetReservation:
        """Charge a pending slot before a code is checked.

        Refuses while the account is locked or while failures and checks
        in flight already fill the window.
        """
        now = self._clock.now()
        limits = self._config.rate_limit
        window = self._window
        slot_id = generate_identifier()

        def mutate(current: dict[str, Any] | None) -> tuple[Any, BudgetReservation]:
            budget = _load(user_id, current)
            lockout = budget.active_lockout(now)
            if lockout is not None:
                return UNCHANGED, BudgetReservation(
                    user_id,
                    None,
                    0,
                    lockout=lockout,
                    retry_after=lockout.retry_after(now),
                )

            slots = budget.in_window(now, window)
            if len(slots) >= limits.max_failures:
                oldest = min(slot.at for slot in slots)
                retry_after = max(0.0, (oldest + window - now).total_seconds())
                return UNCHANGED, BudgetReservation(
                    user_id, None, 0, retry_after=retry_after
                )

            reserved = FailureSlot(slot_id=slot_id, at=now, pending=True)
            updated = FailureBudget(user_id, (*slots, reserved), lockout=None)
            remaining = limits.max_failures - len(updated.slots)
            return updated.to_dict(), BudgetReservation(user_id, slot_id, remaining)

        reservation = await self._update(user_id, mutate)
        if not reservation.granted:
            logger.info("Failure budget refused a check for user %s", user_id)
        return reservation

    async def release(self, reservation: BudgetReservation) -> None:
        """Refund the slot of a code that turned out correct."""
        slot_id = reservation.slot_id
        if slot_id is None:
            return

        def mutate(current: dict[str, Any] | None) -> tuple[Any, None]:
            if current is None:
                return UNCHANGED, None
            budget = _load(reservation.user_id, current)
            slots = tuple(s for s in budget.slots if s.slot_id != slot_id)
            if len(slots) == len(budget.slots):
                return UNCHANGED, None
            return replace(budget, slots=slots).to_dict(), None

        await self._update(reservation.user_id, mutate)

    async def settle_failure(
        self, reservation: BudgetReservation
    ) -> tuple[AccountLockout | None, int]:
        """Turn a reserved slot into a failure.

        Returns:
            The active lockout (if any) and the slots left in the budget.
        """
        return await self._charge(
            reservation.user_id, reservation.slot_id or generate_identifier()
        )

    async def record_failure(self, user_id: str) -> tuple[AccountLockout | None, int]:
        """Charge a failure that involved no code check, such as an expired session.

        Returns:
            The active lockout (if any) and the slots left in the budget.
        """
        return await self._charge(user_id, generate_identifier())

    async def _charge(
        self, user_id: str, slot_id: str
    ) -> tuple[AccountLockout | None, int]:
        now = self._clock.now()
        limits = self._config.rate_limit
        window = self._window
        candidate = AccountLockout(
            user_id=user_id,
            locked_at=now,
            locked_until=now + timedelta(seconds=limits.lockout_seconds),
        )

        def mutate(
            current: dict[str, Any] | None,
        ) -> tuple[Any, tuple[AccountLockout | None, int, int]]:
            budget = _load(user_id, current)
            active = budget.active_lockout(now)
            if active is not None:
                settled = tuple(
                    replace(s, pending=False) if s.slot_id == slot_id else s
                    for s in budget.slots
                )
                if settled == budget.slots:
                    return UNCHANGED, (active, 0, 0)
                return replace(budget, slots=settled).to_dict(), (active, 0, 0)

            slots = [s for s in budget.in_window(now, window) if s.slot_id != slot_id]
            charged_at = _slot_time(budget, slot_id, now)
            slots.append(FailureSlot(slot_id=slot_id, at=charged_at))
            failures = sum(1 for s in slots if not s.pending)
            if failures >= limits.max_failures:
                # Checks still in flight keep their slots into the new budget
                pending = tuple(s for s in slots if s.pending)
                locked = FailureBudget(user_id, pending, lockout=candidate)
                return locked.to_dict(), (candidate, 0, failures)

            updated = FailureBudget(user_id, tuple(slots), lockout=None)
            remaining = limits.max_failures - len(slots)
            return updated.to_dict(), (None, remaining, failures)

        lockout, remaining, failures = await self._update(user_id, mutate)
        if lockout is candidate:
            TwoFactorMetrics.record_lockout()
            logger.warning(
                "Account %s locked until %s after %d failures",
                user_id,
                lockout.locked_until.isoformat(),
                failures,
            )
        return lockout, remaining


def _slot_time(budget: FailureBudget, slot_id: str, now: datetime) -> datetime:
    """When a slot was charged; a reserved slot keeps its reservation time."""
    for slot in budget.slots:
        if slot.slot_id == slot_id:
            return slot.at
    return now


__all__: list[str] = ["BudgetReservation", "FailureBudgetTracker"]
