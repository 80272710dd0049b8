"""Slow hashing of recovery codes.

Recovery codes are short (eight digits), so a fast digest of one can be
reversed by enumerating the whole code space. Codes are stored as bcrypt
or argon2id hashes instead, and each hash carries its own salt.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Literal, cast

import bcrypt
from argon2 import PasswordHasher as Argon2Hasher
from argon2.exceptions import InvalidHashError, VerificationError

HashAlgorithm = Literal["bcrypt", "argon2id"]


class CodeHasher:
    """Recovery code hasher using bcrypt or argon2id.

    Verification detects the algorithm from the hash prefix, so a change
    of ``algorithm`` only affects newly generated sets.

    Example:
        ```python
        hasher = CodeHasher(rounds=12)
        hashed = hasher.hash("12345678")
        assert hasher.verify(hashed, "12345678")
        ```
    """

    def __init__(
        self,
        *,
        algorithm: HashAlgorithm = "bcrypt",
        rounds: int = 12,
    ) -> None:
        """Initialize the hasher.

        Args:
            algorithm: Hashing algorithm (default bcrypt).
            rounds: bcrypt rounds (cost factor, default 12).
        """
        self.algorithm = algorithm
        self.rounds = rounds
        self._argon2 = Argon2Hasher()

    def hash(self, code: str) -> str:
        if self.algorithm == "argon2id":
            return self._argon2.hash(code)
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(code.encode(), salt).decode()

    def verify(self, hashed: str, code: str) -> bool:
        """Check ``code`` against a stored hash of either algorithm."""
        if hashed.startswith("$argon2"):
            try:
                return cast("bool", self._argon2.verify(hashed, code))
            except (VerificationError, InvalidHashError):
                return False
        try:
            return bcrypt.checkpw(code.encode(), hashed.encode())
        except ValueError:
            # Malformed hash
            return False


def code_fingerprint(key: bytes, user_id: str, code: str) -> str:
    """Keyed HMAC-SHA256 of a normalised code.

    Fingerprints let a new set avoid every code the user was ever issued
    without slow-hash comparisons. The key lives in configuration, never
    in the stored record, so a leaked record cannot be enumerated.
    """
    message = f"{user_id}:{code}".encode()
    return hmac.new(key, message, hashlib.sha256).hexdigest()


__all__: list[str] = ["CodeHasher", "HashAlgorithm", "code_fingerprint"]
