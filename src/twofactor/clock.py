"""Clock implementations."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from .models import utc
from .ports import IClock


class SystemClock(IClock):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(IClock):
    """Clock that only moves when told to. For tests and simulations.

    Example:
        ```python
        clock = ManualClock.at_timestamp(1000)
        clock.advance(seconds=61)
        assert clock.timestamp() == 1061
        ```
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = utc(start) if start is not None else datetime.now(timezone.utc)

    @classmethod
    def at_timestamp(cls, unix_time: float) -> ManualClock:
        return cls(datetime.fromtimestamp(unix_time, tz=timezone.utc))

    def now(self) -> datetime:
        return self._now

    def timestamp(self) -> float:
        return self._now.timestamp()

    def advance(self, **delta: float) -> datetime:
        """Move forward by a ``timedelta(**delta)``."""
        self._now += timedelta(**delta)
        return self._now


__all__: list[str] = ["SystemClock", "ManualClock"]
