"""Append-only verification attempt log on top of IStorage."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ..observability import TwoFactorMetrics
from ..storage.keys import attempt_stream
from .events import VerificationAttempt

if TYPE_CHECKING:
    from ..ports import IStorage

logger = logging.getLogger("twofactor.audit")


class AttemptLog:
    """Verification attempt log.

    Entries are never mutated after ``record``. Every entry is also
    logged and counted in the attempt metrics.

    Example:
        ```python
        log = AttemptLog(storage)
        await log.record(attempt_event("u1", Factor.TOTP, AttemptOutcome.FAILURE,
                                       timestamp=clock.now(), reason="mismatch"))
        failures = await log.count_failures("u1", clock.now() - timedelta(hours=1))
        ```
    """

    def __init__(self, storage: IStorage) -> None:
        self._storage = storage

    async def record(self, attempt: VerificationAttempt) -> None:
        """Append an attempt.

        Raises:
            StorageUnavailableError: If the entry cannot be written.
        """
        await self._storage.append(attempt_stream(attempt.user_id), attempt.to_dict())
        TwoFactorMetrics.record_attempt(attempt)
        logger.info(
            "2FA attempt user=%s factor=%s outcome=%s reason=%s session=%s",
            attempt.user_id,
            attempt.factor.value,
            attempt.outcome.value,
            attempt.reason,
            attempt.session_id,
        )

    async def recent(
        self,
        user_id: str,
        *,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[VerificationAttempt]:
        """Attempts of a user, most recent first."""
        entries = await self._storage.read_log(
            attempt_stream(user_id), since=since, limit=limit
        )
        return [VerificationAttempt.from_dict(e) for e in reversed(entries)]

    async def failures_since(
        self, user_id: str, since: datetime
    ) -> list[VerificationAttempt]:
        """Failed attempts of a user at or after ``since``, oldest first."""
        entries = await self._storage.read_log(attempt_stream(user_id), since=since)
        attempts = (VerificationAttempt.from_dict(e) for e in entries)
        return [a for a in attempts if a.is_failure]

    async def count_failures(self, user_id: str, since: datetime) -> int:
        return len(await self.failures_since(user_id, since))

    async def count_failures_in_window(
        self, user_id: str, now: datetime, window: timedelta
    ) -> int:
        """Failures inside the rolling window ending at ``now``."""
        return await self.count_failures(user_id, now - window)


__all__: list[str] = ["AttemptLog"]
