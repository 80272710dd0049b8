"""Secure generation of secrets and codes.

Everything here draws from the ``secrets`` module, which reads the
operating system CSPRNG. If that source is unavailable the call fails
with SecureRandomUnavailableError; there is no weaker fallback.
"""

from __future__ import annotations

import secrets
import uuid

from .exceptions import SecureRandomUnavailableError

RECOVERY_CODE_GROUPS = 2
RECOVERY_CODE_GROUP_LENGTH = 4


def generate_secret(byte_length: int) -> bytes:
    """Generate a random secret.

    Args:
        byte_length: Number of random bytes.

    Returns:
        ``byte_length`` bytes from the OS CSPRNG.

    Raises:
        ValueError: If ``byte_length`` is not positive.
        SecureRandomUnavailableError: If the OS source cannot be read.
    """
    if byte_length <= 0:
        raise ValueError("byte_length must be positive")
    try:
        return secrets.token_bytes(byte_length)
    except (OSError, NotImplementedError) as e:
        raise SecureRandomUnavailableError("Secure random source unavailable") from e


def generate_numeric_code(digits: int) -> str:
    """Generate a zero-padded numeric code of ``digits`` digits.

    Raises:
        ValueError: If ``digits`` is not positive.
        SecureRandomUnavailableError: If the OS source cannot be read.
    """
    if digits <= 0:
        raise ValueError("digits must be positive")
    try:
        value = secrets.randbelow(10**digits)
    except (OSError, NotImplementedError) as e:
        raise SecureRandomUnavailableError("Secure random source unavailable") from e
    return str(value).zfill(digits)


def generate_recovery_code() -> str:
    """Generate a recovery code formatted ``XXXX-XXXX`` (digits only)."""
    raw = generate_numeric_code(RECOVERY_CODE_GROUPS * RECOVERY_CODE_GROUP_LENGTH)
    return format_recovery_code(raw)


def format_recovery_code(raw: str) -> str:
    """Insert the hyphen separator into an unformatted recovery code."""
    size = RECOVERY_CODE_GROUP_LENGTH
    return "-".join(raw[i : i + size] for i in range(0, len(raw), size))


def generate_identifier() -> str:
    """Random UUID4 string for sessions and budget slots."""
    return str(uuid.UUID(bytes=generate_secret(16), version=4))


__all__: list[str] = [
    "generate_secret",
    "generate_numeric_code",
    "generate_recovery_code",
    "format_recovery_code",
    "generate_identifier",
]
