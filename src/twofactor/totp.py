"""TOTP (Time-based One-Time Password) support.

Works with any RFC 6238 authenticator app (Google Authenticator,
Microsoft Authenticator, Authy, 1Password, FreeOTP).

Codes are derived with ``pyotp.HOTP`` over an explicitly computed
time-step counter, so the engine is a pure function of
``(secret, time_step, digits, unix_time)`` and never reads the wall clock.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import pyotp
from pyotp.utils import strings_equal

from .exceptions import InvalidWindowError
from .generator import generate_secret
from .models import TotpEnrollment, TotpOutcome, TotpSecret, TotpVerification
from .storage import UNCHANGED, atomic_update, user_key
from .storage.keys import TOTP, TOTP_PENDING

if TYPE_CHECKING:
    from .config import TwoFactorConfig
    from .ports import IClock, IStorage

logger = logging.getLogger("twofactor.totp")


def _base32(secret: bytes) -> str:
    return base64.b32encode(secret).decode("ascii")


def _normalize(code: str) -> str:
    return "".join(code.split())


def _offsets(window: int) -> list[int]:
    """Offsets in trial order: 0, -1, +1, -2, +2, ..."""
    order = [0]
    for step in range(1, window + 1):
        order.extend((-step, step))
    return order


class TotpEngine:
    """Stateless TOTP code derivation and matching.

    Example:
        ```python
        engine = TotpEngine(max_window=2)
        code = engine.compute_code(secret, 30, 6, 1000)
        assert engine.verify(secret, 30, 6, code, 1000)
        assert not engine.verify(secret, 30, 6, code, 1061, window=1)
        ```
    """

    def __init__(self, max_window: int = 2) -> None:
        if max_window < 0:
            raise InvalidWindowError(max_window, 0)
        self.max_window = max_window

    def compute_code(
        self, secret: bytes, time_step: int, digits: int, unix_time: float
    ) -> str:
        """Compute the code for the time step containing ``unix_time``.

        Args:
            secret: Raw shared secret.
            time_step: Seconds per step.
            digits: Code length.
            unix_time: Seconds since the epoch.

        Returns:
            Zero-padded ``digits``-wide numeric code.
        """
        return self._code_at(secret, digits, self.counter_at(time_step, unix_time))

    @staticmethod
    def counter_at(time_step: int, unix_time: float) -> int:
        return int(unix_time // time_step)

    def match_offset(
        self,
        secret: bytes,
        time_step: int,
        digits: int,
        submitted: str,
        unix_time: float,
        window: int = 1,
    ) -> int | None:
        """Find the step offset at which ``submitted`` is valid.

        Offsets are tried in the order 0, -1, +1, -2, +2, ... up to
        ``window``. Counters below zero are skipped.

        Args:
            secret: Raw shared secret.
            time_step: Seconds per step.
            digits: Code length.
            submitted: Code entered by the user; whitespace is ignored.
            unix_time: Seconds since the epoch.
            window: Steps tolerated on each side of the current one.

        Returns:
            The first matching offset, or None.

        Raises:
            InvalidWindowError: If ``window`` is negative or above ``max_window``.
        """
        if window < 0 or window > self.max_window:
            raise InvalidWindowError(window, self.max_window)

        candidate = _normalize(submitted)
        if len(candidate) != digits or not candidate.isdigit():
            return None

        base = self.counter_at(time_step, unix_time)
        for offset in _offsets(window):
            counter = base + offset
            if counter < 0:
                continue
            if strings_equal(self._code_at(secret, digits, counter), candidate):
                return offset
        return None

    def verify(
        self,
        secret: bytes,
        time_step: int,
        digits: int,
        submitted: str,
        unix_time: float,
        window: int = 1,
    ) -> bool:
        return (
            self.match_offset(secret, time_step, digits, submitted, unix_time, window)
            is not None
        )

    @staticmethod
    def provisioning_uri(
        secret: bytes,
        account_name: str,
        issuer: str,
        time_step: int = 30,
        digits: int = 6,
    ) -> str:
        """Build the ``otpauth://`` URI rendered as a QR code during setup."""
        totp = pyotp.TOTP(_base32(secret), digits=digits, interval=time_step)
        return totp.provisioning_uri(name=account_name, issuer_name=issuer)

    @staticmethod
    def format_manual_key(secret: bytes) -> str:
        """Format the base32 secret in groups of four for manual entry."""
        key = _base32(secret).rstrip("=")
        return " ".join(key[i : i + 4] for i in range(0, len(key), 4))

    @staticmethod
    def _code_at(secret: bytes, digits: int, counter: int) -> str:
        return pyotp.HOTP(_base32(secret), digits=digits).at(counter)


class TotpManager:
    """Per-user TOTP secrets with setup confirmation and replay protection.

    A new secret stays *pending* until the user proves their app
    produces a valid code; only then does it replace the active secret.

    Example:
        ```python
        enrollment = await totp.begin_setup("user-123", "alice@example.com")
        # show enrollment.provisioning_uri as a QR code
        result = await totp.confirm_setup("user-123", "492039")
        if result.outcome is TotpOutcome.SUCCESS:
            ...
        ```
    """

    def __init__(
        self,
        storage: IStorage,
        clock: IClock,
        config: TwoFactorConfig,
        engine: TotpEngine | None = None,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._config = config
        self._engine = engine or TotpEngine(max_window=config.totp.max_window)

    @property
    def engine(self) -> TotpEngine:
        return self._engine

    async def begin_setup(self, user_id: str, account_name: str) -> TotpEnrollment:
        """Generate a pending secret for a user.

        Args:
            user_id: User identifier.
            account_name: Label shown in the authenticator app.

        Returns:
            Provisioning data for the authenticator app.

        Raises:
            SecureRandomUnavailableError: If no secure random source exists.
        """
        cfg = self._config.totp
        pending = TotpSecret(
            user_id=user_id,
            secret=generate_secret(cfg.secret_bytes),
            time_step=cfg.time_step,
            digits=cfg.digits,
            created_at=self._clock.now(),
        )

        await atomic_update(
            self._storage,
            user_key(user_id, TOTP_PENDING),
            lambda _current: (pending.to_dict(), None),
            max_attempts=self._config.max_cas_attempts,
        )
        logger.info("TOTP setup started for user %s", user_id)

        return TotpEnrollment(
            user_id=user_id,
            secret_base32=pending.secret_base32,
            provisioning_uri=self._engine.provisioning_uri(
                pending.secret, account_name, cfg.issuer, cfg.time_step, cfg.digits
            ),
            manual_key=self._engine.format_manual_key(pending.secret),
        )

    async def confirm_setup(self, user_id: str, code: str) -> TotpVerification:
        """Activate the pending secret if ``code`` matches it.

        The previous active secret, if any, stops working immediately.
        """
        record = await self._storage.get(user_key(user_id, TOTP_PENDING))
        if record is None:
            return TotpVerification(TotpOutcome.NOT_FOUND)

        pending = TotpSecret.from_dict(record.value)
        unix_time = self._clock.now().timestamp()
        offset = self._engine.match_offset(
            pending.secret,
            pending.time_step,
            pending.digits,
            code,
            unix_time,
            self._config.totp.valid_window,
        )
        if offset is None:
            logger.info("TOTP setup code mismatch for user %s", user_id)
            return TotpVerification(TotpOutcome.MISMATCH)

        active = replace(
            pending,
            created_at=self._clock.now(),
            last_used_counter=self._engine.counter_at(pending.time_step, unix_time)
            + offset,
        )
        await atomic_update(
            self._storage,
            user_key(user_id, TOTP),
            lambda _current: (active.to_dict(), None),
            max_attempts=self._config.max_cas_attempts,
        )

        def clear_pending(current: dict[str, Any] | None) -> tuple[Any, None]:
            # A newer setup may have replaced the pending secret meanwhile.
            if current is None or current["secret"] != pending.secret_base32:
                return UNCHANGED, None
            return None, None

        await atomic_update(
            self._storage,
            user_key(user_id, TOTP_PENDING),
            clear_pending,
            max_attempts=self._config.max_cas_attempts,
        )
        logger.info("TOTP configured for user %s", user_id)
        return TotpVerification(TotpOutcome.SUCCESS, matched_offset=offset)

    async def verify(
        self, user_id: str, code: str, *, window: int | None = None
    ) -> TotpVerification:
        """Verify a code against the active secret.

        A code whose counter is not newer than the last accepted one is
        reported as ``REPLAYED``. Acceptance advances the counter with
        compare-and-swap, so a code can succeed only once even under
        concurrent submissions.

        Args:
            user_id: User identifier.
            code: Submitted code.
            window: Tolerance in steps; defaults to the configured window.

        Returns:
            Outcome and matched offset.

        Raises:
            InvalidWindowError: If ``window`` exceeds the configured maximum.
        """
        tolerance = self._config.totp.valid_window if window is None else window
        unix_time = self._clock.now().timestamp()

        def mutate(current: dict[str, Any] | None) -> tuple[Any, TotpVerification]:
            if current is None:
                return UNCHANGED, TotpVerification(TotpOutcome.NOT_FOUND)

            secret = TotpSecret.from_dict(current)
            offset = self._engine.match_offset(
                secret.secret,
                secret.time_step,
                secret.digits,
                code,
                unix_time,
                tolerance,
            )
            if offset is None:
                return UNCHANGED, TotpVerification(TotpOutcome.MISMATCH)

            counter = self._engine.counter_at(secret.time_step, unix_time) + offset
            if (
                secret.last_used_counter is not None
                and counter <= secret.last_used_counter
            ):
                return UNCHANGED, TotpVerification(TotpOutcome.REPLAYED, offset)

            updated = replace(secret, last_used_counter=counter)
            return updated.to_dict(), TotpVerification(TotpOutcome.SUCCESS, offset)

        result = await atomic_update(
            self._storage,
            user_key(user_id, TOTP),
            mutate,
            max_attempts=self._config.max_cas_attempts,
        )
        if result.outcome is TotpOutcome.REPLAYED:
            logger.warning("Replayed TOTP code for user %s", user_id)
        return result

    async def is_configured(self, user_id: str) -> bool:
        return await self._storage.get(user_key(user_id, TOTP)) is not None

    async def remove(self, user_id: str) -> None:
        """Delete the active and pending secrets of a user."""
        for entity in (TOTP, TOTP_PENDING):
            await atomic_update(
                self._storage,
                user_key(user_id, entity),
                lambda _current: (None, None),
                max_attempts=self._config.max_cas_attempts,
            )
        logger.info("TOTP removed for user %s", user_id)


__all__: list[str] = ["TotpEngine", "TotpManager"]
