"""Redis storage adapter.

Records are hashes holding ``version``, ``data`` (JSON), ``deleted`` and
``expires_at``. Reads and compare-and-swap run as Lua scripts so the
version check, the expiry check and the write are atomic on the server.

A record written with a TTL expires logically at ``expires_at`` (server
time); the key itself lives a tombstone TTL longer. Deleted records
likewise leave a tombstone. Either way the version counter outlives the
record, so a recreated record never reuses a version a stale reader may
still hold. Only after the tombstone TTL has passed can a version be
reused, so it must exceed the longest compare-and-swap round trip.

Attempt logs are sorted sets scored by timestamp, which makes rolling
window queries a single ZRANGEBYSCORE.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from ..exceptions import StorageUnavailableError
from ..ports import IStorage, VersionedRecord

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger("twofactor.storage.redis")

# KEYS[1] = record key
# Returns {version, data} for a live record, nil otherwise
_GET_SCRIPT = """
local fields = redis.call('HMGET', KEYS[1], 'version', 'data', 'deleted', 'expires_at')
if not fields[2] or fields[3] == '1' then
    return false
end
if fields[4] then
    local now = tonumber(redis.call('TIME')[1])
    if now >= tonumber(fields[4]) then
        return false
    end
end
return {fields[1], fields[2]}
"""

# KEYS[1] = record key
# ARGV[1] = expected live version, ARGV[2] = JSON value ('' deletes)
# ARGV[3] = ttl seconds (0 = persistent), ARGV[4] = tombstone ttl seconds
_CAS_SCRIPT = """
local fields = redis.call('HMGET', KEYS[1], 'version', 'deleted', 'expires_at')
local now = tonumber(redis.call('TIME')[1])
local version = tonumber(fields[1] or '0')
local live = version
if fields[2] == '1' then live = 0 end
if fields[3] and now >= tonumber(fields[3]) then live = 0 end
if live ~= tonumber(ARGV[1]) then
    return 0
end
local next_version = version + 1
local tombstone_ttl = tonumber(ARGV[4])
if ARGV[2] == '' then
    if live == 0 then
        return 1
    end
    redis.call('HSET', KEYS[1], 'version', next_version, 'deleted', '1')
    redis.call('HDEL', KEYS[1], 'data', 'expires_at')
    redis.call('EXPIRE', KEYS[1], tombstone_ttl)
    return 1
end
redis.call('HSET', KEYS[1], 'version', next_version, 'data', ARGV[2], 'deleted', '0')
local ttl = tonumber(ARGV[3])
if ttl > 0 then
    redis.call('HSET', KEYS[1], 'expires_at', now + ttl)
    redis.call('EXPIRE', KEYS[1], ttl + tombstone_ttl)
else
    redis.call('HDEL', KEYS[1], 'expires_at')
    redis.call('PERSIST', KEYS[1])
end
return 1
"""


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


@contextmanager
def _translate_errors(operation: str, key: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        logger.error("Redis %s failed for %s: %s", operation, key, e)
        raise StorageUnavailableError(f"Redis {operation} failed for {key}") from e


class RedisStorage(IStorage):
    """IStorage backed by Redis.

    Example:
        ```python
        from redis.asyncio import Redis

        storage = RedisStorage(Redis.from_url("redis://localhost:6379/0"))
        ```
    """

    def __init__(
        self,
        redis_client: Redis,
        *,
        key_prefix: str = "twofactor",
        tombstone_ttl_seconds: int = 86400,
        log_retention_seconds: int | None = None,
    ) -> None:
        """Initialize the Redis storage.

        Args:
            redis_client: Async Redis client.
            key_prefix: Prefix for every key written.
            tombstone_ttl_seconds: Lifetime of deleted-record tombstones.
            log_retention_seconds: Trim attempt log entries older than this
                on append (None keeps everything).
        """
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._tombstone_ttl = tombstone_ttl_seconds
        self._log_retention = log_retention_seconds

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    async def get(self, key: str) -> VersionedRecord | None:
        with _translate_errors("get", key):
            reply = await self._redis.eval(_GET_SCRIPT, 1, self._key(key))
        if not reply:
            return None
        version, data = reply
        payload = _text(data)
        if payload is None:
            return None
        return VersionedRecord(
            key=key, value=json.loads(payload), version=int(_text(version) or 0)
        )

    async def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        new_value: dict[str, Any] | None,
        *,
        ttl: int | None = None,
    ) -> bool:
        payload = "" if new_value is None else json.dumps(new_value, sort_keys=True)
        with _translate_errors("compare_and_swap", key):
            result = await self._redis.eval(
                _CAS_SCRIPT,
                1,
                self._key(key),
                str(expected_version),
                payload,
                str(ttl or 0),
                str(self._tombstone_ttl),
            )
        return int(result) == 1

    async def append(self, stream: str, entry: dict[str, Any]) -> None:
        score = datetime.fromisoformat(entry["timestamp"]).timestamp()
        member = json.dumps(entry, sort_keys=True)
        with _translate_errors("append", stream):
            await self._redis.zadd(self._key(stream), {member: score})
            if self._log_retention is not None:
                await self._redis.zremrangebyscore(
                    self._key(stream), "-inf", f"({score - self._log_retention}"
                )

    async def read_log(
        self,
        stream: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        minimum: float | str = since.timestamp() if since is not None else "-inf"
        with _translate_errors("read_log", stream):
            if limit is None:
                members = await self._redis.zrangebyscore(
                    self._key(stream), minimum, "+inf"
                )
            elif limit <= 0:
                members = []
            else:
                members = await self._redis.zrevrangebyscore(
                    self._key(stream), "+inf", minimum, start=0, num=limit
                )
                members = list(reversed(members))
        return [json.loads(_text(m) or "{}") for m in members]

    async def health_check(self) -> bool:
        """Ping the server."""
        try:
            return bool(await self._redis.ping())
        except RedisError:
            logger.warning("Redis health check failed", exc_info=True)
            return False


__all__: list[str] = ["RedisStorage"]
