"""Storage adapters and helpers."""

from __future__ import annotations

from .atomic import UNCHANGED, atomic_update
from .keys import attempt_stream, email_challenge_key, session_key, user_key
from .memory import InMemoryStorage
from .redis import RedisStorage

__all__: list[str] = [
    "atomic_update",
    "UNCHANGED",
    "user_key",
    "email_challenge_key",
    "session_key",
    "attempt_stream",
    "InMemoryStorage",
    "RedisStorage",
]
