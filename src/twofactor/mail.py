"""In-memory mail transport for development and testing."""

from __future__ import annotations

from dataclasses import dataclass

from .ports import IMailTransport


@dataclass(frozen=True)
class SentCode:
    to_address: str
    code: str
    expiry_minutes: int


class InMemoryMailTransport(IMailTransport):
    """Mail transport that keeps messages in an outbox for TESTING ONLY.

    ⚠️ WARNING: Codes are kept in plain text in memory.
    Do NOT use in production!

    Args:
        accept: Value returned by ``send``; False simulates a provider
            rejecting the message.
        error: Exception raised by ``send`` to simulate an outage.
    """

    def __init__(
        self, *, accept: bool = True, error: Exception | None = None
    ) -> None:
        self.accept = accept
        self.error = error
        self.outbox: list[SentCode] = []

    async def send(self, to_address: str, code: str, expiry_minutes: int) -> bool:
        if self.error is not None:
            raise self.error
        if self.accept:
            self.outbox.append(SentCode(to_address, code, expiry_minutes))
        return self.accept

    def last_code(self, to_address: str | None = None) -> str | None:
        """Most recently sent code, optionally for one recipient."""
        for message in reversed(self.outbox):
            if to_address is None or message.to_address == to_address:
                return message.code
        return None


__all__: list[str] = ["SentCode", "InMemoryMailTransport"]
