"""Ports (protocols) for the collaborators the engine depends on.

The engine owns no persistence, mail delivery or session format. The
application supplies these; in-memory adapters exist for tests.
All ports use @runtime_checkable for isinstance checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from .models import FactorAssertion


# ═══════════════════════════════════════════════════════════════
# STORAGE PORT
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class VersionedRecord:
    """A stored value with its version.

    Versions start at 1 on creation and grow by one on every write.
    Version 0 denotes a record that does not exist.
    """

    key: str
    value: dict[str, Any]
    version: int


@runtime_checkable
class IStorage(Protocol):
    """Protocol for the key-value store behind every per-user record.

    Keys are namespaced by user id and entity type. Implementations
    must make ``compare_and_swap`` atomic and must raise
    ``StorageUnavailableError`` on backend failure.
    """

    async def get(self, key: str) -> VersionedRecord | None:
        """Fetch a record.

        Args:
            key: Record key.

        Returns:
            The record, or None if it does not exist.
        """
        ...

    async def compare_and_swap(
        self,
        key: str,
        expected_version: int,
        new_value: dict[str, Any] | None,
        *,
        ttl: int | None = None,
    ) -> bool:
        """Write ``new_value`` only if the record is still at ``expected_version``.

        Args:
            key: Record key.
            expected_version: Version read earlier, 0 for "must not exist".
            new_value: New value, or None to delete the record.
            ttl: Optional lifetime in seconds for the written record.

        Returns:
            True if the write happened, False on a version conflict.
        """
        ...

    async def append(self, stream: str, entry: dict[str, Any]) -> None:
        """Append an entry to an append-only log.

        Args:
            stream: Log name.
            entry: Serialised entry; must carry an ISO-8601 ``timestamp``.
        """
        ...

    async def read_log(
        self,
        stream: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Read log entries, oldest first.

        Args:
            stream: Log name.
            since: Only entries with timestamp at or after this instant.
            limit: Return at most this many of the newest matching entries.

        Returns:
            Matching entries in append order.
        """
        ...


# ═══════════════════════════════════════════════════════════════
# DELIVERY PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IMailTransport(Protocol):
    """Protocol for the transport that emails one-time codes.

    Applications implement this with their provider (SMTP, SES, ...).
    The engine logs delivery failures and never blocks verification on them.
    """

    async def send(self, to_address: str, code: str, expiry_minutes: int) -> bool:
        """Send a code.

        Args:
            to_address: Recipient address.
            code: The one-time code.
            expiry_minutes: Minutes until the code expires, for the message body.

        Returns:
            True if the transport accepted the message.
        """
        ...


# ═══════════════════════════════════════════════════════════════
# SESSION LAYER PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IAssertionSigner(Protocol):
    """Protocol for signing "second factor satisfied" assertions.

    The format of the signed value belongs to the session layer.
    """

    def sign(self, assertion: FactorAssertion) -> str:
        """Sign an assertion and return an opaque token."""
        ...


@runtime_checkable
class IClock(Protocol):
    """Source of the current time (timezone-aware UTC)."""

    def now(self) -> datetime: ...


__all__: list[str] = [
    "VersionedRecord",
    "IStorage",
    "IMailTransport",
    "IAssertionSigner",
    "IClock",
]
