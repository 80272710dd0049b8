"""In-memory storage for development and testing.

WARNING: This implementation is NOT suitable for production use.
It keeps data in process memory and will NOT work with multiple workers.

Use RedisStorage (or another IStorage adapter) in production.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from ..ports import IStorage, VersionedRecord

if TYPE_CHECKING:
    from ..ports import IClock


class InMemoryStorage(IStorage):
    """In-memory IStorage for TESTING ONLY.

    ⚠️ WARNING: Secrets and codes are stored in plain dictionaries.

    Versions keep growing across delete/recreate so a stale reader can
    never win a compare-and-swap against a recreated record.

    Example:
        ```python
        storage = InMemoryStorage()
        await storage.compare_and_swap("user:u1:profile", 0, {"user_id": "u1"})
        record = await storage.get("user:u1:profile")
        assert record.version == 1
        ```
    """

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock
        self._records: dict[str, tuple[dict[str, Any], int, datetime | None]] = {}
        self._last_version: dict[str, int] = {}
        self._logs: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock.now()
        return datetime.now(timezone.utc)

    def _live(self, key: str) -> tuple[dict[str, Any], int] | None:
        entry = self._records.get(key)
        if entry is None:
            return None
        value, version, expires_at = entry
        if expires_at is not None and self._now() >= expires_at:
            del self._records[key]
            return None
        return value, version

    async def get(self, key: str) -> VersionedRecord | None:
        # Yield so concurrent callers interleave as they would over a network.
        await asyncio.sleep(0)
        live = self._live(key)
        if live is None:
            return None
        value, version = live
        return VersionedRecord(key=key, value=copy.deepcopy(value), version=version)

    async def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        new_value: dict[str, Any] | None,
        *,
        ttl: int | None = None,
    ) -> bool:
        async with self._lock:
            live = self._live(key)
            current_version = live[1] if live is not None else 0
            if current_version != expected_version:
                return False

            next_version = self._last_version.get(key, 0) + 1
            self._last_version[key] = next_version

            if new_value is None:
                self._records.pop(key, None)
                return True

            expires_at = None
            if ttl is not None and ttl > 0:
                expires_at = self._now() + timedelta(seconds=ttl)
            self._records[key] = (copy.deepcopy(new_value), next_version, expires_at)
            return True

    async def append(self, stream: str, entry: dict[str, Any]) -> None:
        async with self._lock:
            self._logs[stream].append(copy.deepcopy(entry))

    async def read_log(
        self,
        stream: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        entries = self._logs.get(stream, [])
        if since is not None:
            entries = [
                e for e in entries if datetime.fromisoformat(e["timestamp"]) >= since
            ]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return copy.deepcopy(entries)

    def keys(self) -> list[str]:
        """Keys of all live records. Useful in tests."""
        return [key for key in list(self._records) if self._live(key) is not None]

    def clear(self) -> None:
        """Drop all records and logs. Useful for test cleanup."""
        self._records.clear()
        self._last_version.clear()
        self._logs.clear()


__all__: list[str] = ["InMemoryStorage"]
