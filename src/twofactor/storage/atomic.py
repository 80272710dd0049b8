"""Compare-and-swap update loop shared by all managers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ..exceptions import ConcurrencyConflictError

if TYPE_CHECKING:
    from ..ports import IStorage

logger = logging.getLogger("twofactor.storage")

T = TypeVar("T")


class _Sentinel(Enum):
    UNCHANGED = "unchanged"


UNCHANGED = _Sentinel.UNCHANGED
"""Returned by a mutation to skip the write."""

Mutation = Callable[[dict[str, Any] | None], tuple[Any, T]]


async def atomic_update(
    storage: IStorage,
    key: str,
    mutate: Mutation[T],
    *,
    max_attempts: int = 10,
    ttl: int | None = None,
) -> T:
    """Apply ``mutate`` to a record as an atomic read-modify-write.

    ``mutate`` receives the current value (None if absent) and returns
    ``(new_value, result)``. ``new_value`` is written with
    compare-and-swap; it may be None to delete the record or
    ``UNCHANGED`` to skip the write. On a version conflict the record is
    re-read and ``mutate`` runs again against the fresh value, so it must
    be a pure function of its input.

    Storage errors propagate unchanged; only version conflicts loop.

    Args:
        storage: Storage port.
        key: Record key.
        mutate: Pure mutation function.
        max_attempts: Conflicts tolerated before giving up.
        ttl: Optional lifetime for the written record.

    Returns:
        The ``result`` of the mutation whose write succeeded.

    Raises:
        ConcurrencyConflictError: If every attempt lost to a concurrent writer.
    """
    for attempt in range(1, max_attempts + 1):
        record = await storage.get(key)
        current = record.value if record is not None else None
        version = record.version if record is not None else 0

        new_value, result = mutate(current)
        if new_value is UNCHANGED or (new_value is None and record is None):
            return result

        if await storage.compare_and_swap(key, version, new_value, ttl=ttl):
            return result

        logger.debug("Version conflict on %s (attempt %d)", key, attempt)

    logger.warning("Giving up on %s after %d conflicts", key, max_attempts)
    raise ConcurrencyConflictError(key, max_attempts)


__all__: list[str] = ["atomic_update", "UNCHANGED", "Mutation"]
