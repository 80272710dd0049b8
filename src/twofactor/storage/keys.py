"""Storage key layout.

Every record is namespaced by user id and entity type, so no two users
ever contend on the same key.
"""

from __future__ import annotations

PROFILE = "profile"
TOTP = "totp"
TOTP_PENDING = "totp_pending"
RECOVERY = "recovery"
DEVICES = "devices"
BUDGET = "budget"

USER_ENTITIES: tuple[str, ...] = (
    PROFILE,
    TOTP,
    TOTP_PENDING,
    RECOVERY,
    DEVICES,
    BUDGET,
)


def user_key(user_id: str, entity: str, *parts: str) -> str:
    """Build ``user:{user_id}:{entity}[:part...]``."""
    if not user_id:
        raise ValueError("user_id is required")
    return ":".join(("user", user_id, entity, *parts))


def email_challenge_key(user_id: str, purpose: str) -> str:
    return user_key(user_id, "email_challenge", purpose)


def session_key(user_id: str, session_id: str) -> str:
    return user_key(user_id, "session", session_id)


def attempt_stream(user_id: str) -> str:
    """Name of the append-only verification attempt log of a user."""
    return f"attempts:{user_id}"


__all__: list[str] = [
    "PROFILE",
    "TOTP",
    "TOTP_PENDING",
    "RECOVERY",
    "DEVICES",
    "BUDGET",
    "USER_ENTITIES",
    "user_key",
    "email_challenge_key",
    "session_key",
    "attempt_stream",
]
