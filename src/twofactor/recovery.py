"""Single-use recovery codes.

Codes are shown to the user once. Each stored code keeps a slow hash
(bcrypt by default) for verification and an HMAC fingerprint, keyed
outside the record, that lets a regenerated set avoid every code the
user was issued before.
"""

from __future__ import annotations

import asyncio
import functools
import hmac
import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from .exceptions import ConcurrencyConflictError
from .generator import (
    RECOVERY_CODE_GROUP_LENGTH,
    generate_recovery_code,
    generate_secret,
)
from .hashing import CodeHasher, code_fingerprint
from .models import (
    IssuedRecoveryCodes,
    RecoveryCode,
    RecoveryCodeSet,
    RecoveryCodeStatus,
    RecoveryCodeUsage,
    RecoveryOutcome,
)
from .storage import UNCHANGED, atomic_update, user_key
from .storage.keys import RECOVERY

if TYPE_CHECKING:
    from .config import TwoFactorConfig
    from .ports import IClock, IStorage

logger = logging.getLogger("twofactor.recovery")

_FINGERPRINT_KEY_BYTES = 32


def normalize_recovery_code(code: str) -> str:
    """Strip whitespace and hyphens: ``" 1234-5678 "`` -> ``"12345678"``."""
    return "".join(code.split()).replace("-", "")


@functools.cache
def _process_fingerprint_key() -> bytes:
    return generate_secret(_FINGERPRINT_KEY_BYTES)


class RecoveryCodeStore:
    """Generate, consume and report on recovery codes.

    Example:
        ```python
        issued = await recovery.generate_set("user-123")
        print(issued.to_text("MyApp"))  # offer as download

        outcome = await recovery.consume("user-123", "1234-5678")
        if outcome is RecoveryOutcome.SUCCESS:
            status = await recovery.status("user-123")
            if status.low:
                ...  # suggest regenerating
        ```
    """

    def __init__(
        self,
        storage: IStorage,
        clock: IClock,
        config: TwoFactorConfig,
        *,
        hasher: CodeHasher | None = None,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._config = config
        self._hasher = hasher or CodeHasher(
            algorithm=config.recovery.hash_algorithm,
            rounds=config.recovery.hash_rounds,
        )
        secret = config.recovery.fingerprint_key
        if secret is None:
            logger.warning(
                "recovery.fingerprint_key is not set; using a per-process key, "
                "so codes are only kept unique within this process"
            )
            self._fingerprint_key = _process_fingerprint_key()
        else:
            self._fingerprint_key = secret.get_secret_value().encode()

    def _key(self, user_id: str) -> str:
        return user_key(user_id, RECOVERY)

    async def _load(self, user_id: str) -> RecoveryCodeSet | None:
        record = await self._storage.get(self._key(user_id))
        if record is None:
            return None
        return RecoveryCodeSet.from_dict(record.value)

    def _fingerprint(self, user_id: str, normalized: str) -> str:
        return code_fingerprint(self._fingerprint_key, user_id, normalized)

    def _draw(
        self, user_id: str, size: int, taken: frozenset[str]
    ) -> tuple[list[str], list[str]]:
        """Draw ``size`` codes whose fingerprints avoid ``taken``."""
        seen = set(taken)
        plaintext: list[str] = []
        fingerprints: list[str] = []
        while len(plaintext) < size:
            code = generate_recovery_code()
            fingerprint = self._fingerprint(user_id, normalize_recovery_code(code))
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            plaintext.append(code)
            fingerprints.append(fingerprint)
        return plaintext, fingerprints

    def _hash_all(self, codes: Sequence[str]) -> list[str]:
        return [self._hasher.hash(normalize_recovery_code(code)) for code in codes]

    def _match(self, code_set: RecoveryCodeSet, normalized: str) -> str | None:
        """Hash of the stored code equal to ``normalized``, if any.

        Every stored hash is checked so the work done does not depend on
        which code, if any, matches.
        """
        matched: str | None = None
        for stored in code_set.codes:
            if self._hasher.verify(stored.code_hash, normalized):
                matched = stored.code_hash
        return matched

    async def generate_set(
        self, user_id: str, count: int | None = None
    ) -> IssuedRecoveryCodes:
        """Replace the user's codes with a fresh set.

        Every previous code, used or not, stops working. Codes are hashed
        off the event loop before the compare-and-swap; if a concurrent
        regeneration issued one of the drawn codes in the meantime, a new
        set is drawn.

        Args:
            user_id: User identifier.
            count: Codes to generate; defaults to the configured count.

        Returns:
            The plaintext codes, to be shown once.

        Raises:
            ValueError: If ``count`` is not positive.
            SecureRandomUnavailableError: If no secure random source exists.
            ConcurrencyConflictError: If concurrent regenerations keep winning.
        """
        size = self._config.recovery.count if count is None else count
        if size <= 0:
            raise ValueError("count must be positive")
        now = self._clock.now()
        attempts = self._config.max_cas_attempts

        for _ in range(attempts):
            previous = await self._load(user_id)
            taken = previous.all_fingerprints() if previous else frozenset()
            plaintext, fingerprints = self._draw(user_id, size, taken)
            hashes = await asyncio.to_thread(self._hash_all, plaintext)
            codes = tuple(
                RecoveryCode(code_hash=h, fingerprint=f)
                for h, f in zip(hashes, fingerprints)
            )

            def mutate(
                current: dict[str, Any] | None,
                codes: tuple[RecoveryCode, ...] = codes,
                fingerprints: list[str] = fingerprints,
            ) -> tuple[Any, bool]:
                existing = RecoveryCodeSet.from_dict(current) if current else None
                retired = existing.all_fingerprints() if existing else frozenset()
                if retired.intersection(fingerprints):
                    return UNCHANGED, False
                new_set = RecoveryCodeSet(
                    user_id=user_id,
                    codes=codes,
                    generated_at=now,
                    retired_fingerprints=retired,
                )
                return new_set.to_dict(), True

            written = await atomic_update(
                self._storage,
                self._key(user_id),
                mutate,
                max_attempts=attempts,
            )
            if written:
                logger.info("Generated %d recovery codes for user %s", size, user_id)
                return IssuedRecoveryCodes(
                    user_id=user_id, codes=tuple(plaintext), generated_at=now
                )
            logger.debug("Recovery code collision for user %s, redrawing", user_id)

        raise ConcurrencyConflictError(self._key(user_id), attempts)

    async def consume(
        self, user_id: str, code: str, *, context: str | None = None
    ) -> RecoveryOutcome:
        """Use a recovery code.

        The submitted code is verified against every stored hash off the
        event loop. Marking the matched code used is a compare-and-swap
        that re-checks the code is still unused and still part of the
        current set, so of several concurrent submissions of one code
        exactly one wins.

        Args:
            user_id: User identifier.
            code: Submitted code; whitespace and the hyphen are optional.
            context: Device fingerprint of the consuming request.

        Returns:
            ``SUCCESS``, or ``INVALID_OR_USED`` for wrong and spent codes alike.
        """
        now = self._clock.now()
        normalized = normalize_recovery_code(code)
        code_set = await self._load(user_id) if normalized else None
        matched = (
            await asyncio.to_thread(self._match, code_set, normalized)
            if code_set is not None
            else None
        )
        if matched is None:
            logger.info("Invalid or used recovery code for user %s", user_id)
            return RecoveryOutcome.INVALID_OR_USED
        matched_hash: str = matched

        def mutate(current: dict[str, Any] | None) -> tuple[Any, RecoveryOutcome]:
            if current is None:
                return UNCHANGED, RecoveryOutcome.INVALID_OR_USED

            latest = RecoveryCodeSet.from_dict(current)
            index = next(
                (
                    i
                    for i, stored in enumerate(latest.codes)
                    if hmac.compare_digest(stored.code_hash, matched_hash)
                ),
                None,
            )
            if index is None or latest.codes[index].used:
                return UNCHANGED, RecoveryOutcome.INVALID_OR_USED

            codes = list(latest.codes)
            codes[index] = replace(
                codes[index],
                used=True,
                used_at=now,
                hint=normalized[:RECOVERY_CODE_GROUP_LENGTH],
                context=context,
            )
            updated = replace(latest, codes=tuple(codes))
            return updated.to_dict(), RecoveryOutcome.SUCCESS

        outcome = await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
        )
        if outcome is RecoveryOutcome.SUCCESS:
            logger.info("Recovery code used for user %s", user_id)
        else:
            logger.info("Invalid or used recovery code for user %s", user_id)
        return outcome

    async def remaining_count(self, user_id: str) -> int:
        code_set = await self._load(user_id)
        return code_set.remaining if code_set else 0

    async def status(self, user_id: str) -> RecoveryCodeStatus:
        """Remaining/total counts and the low-water flag.

        ``low`` is a signal for the UI only; codes keep working until
        the last one is used.
        """
        code_set = await self._load(user_id)
        if code_set is None or code_set.total == 0:
            return RecoveryCodeStatus(remaining=0, total=0, low=False)

        remaining = code_set.remaining
        return RecoveryCodeStatus(
            remaining=remaining,
            total=code_set.total,
            low=remaining <= self._config.recovery.low_water_mark,
            generated_at=code_set.generated_at,
        )

    async def usage_history(self, user_id: str) -> list[RecoveryCodeUsage]:
        """Used codes of the current set, most recent first, masked."""
        code_set = await self._load(user_id)
        if code_set is None:
            return []

        used = [c for c in code_set.codes if c.used]
        used.sort(key=lambda c: c.used_at or code_set.generated_at, reverse=True)
        return [
            RecoveryCodeUsage(
                masked_code=f"{c.hint}-****",
                used_at=c.used_at,
                context=c.context,
            )
            for c in used
        ]

    async def revoke(self, user_id: str) -> None:
        """Invalidate every code of the user.

        The set is emptied rather than deleted so its fingerprints stay retired.
        """

        def mutate(current: dict[str, Any] | None) -> tuple[Any, None]:
            if current is None:
                return UNCHANGED, None
            code_set = RecoveryCodeSet.from_dict(current)
            emptied = replace(
                code_set,
                codes=(),
                retired_fingerprints=code_set.all_fingerprints(),
            )
            return emptied.to_dict(), None

        await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
        )
        logger.info("Recovery codes revoked for user %s", user_id)


__all__: list[str] = [
    "RecoveryCodeStore",
    "normalize_recovery_code",
]
