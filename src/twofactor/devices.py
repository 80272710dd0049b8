"""Trusted devices that may skip the second factor for a bounded time."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from .exceptions import ConfigurationError
from .models import TrustedDevice
from .storage import UNCHANGED, atomic_update, user_key
from .storage.keys import DEVICES

if TYPE_CHECKING:
    from .config import TwoFactorConfig
    from .ports import IClock, IStorage

logger = logging.getLogger("twofactor.devices")


def _load(current: dict[str, Any] | None) -> dict[str, TrustedDevice]:
    if not current:
        return {}
    return {
        fingerprint: TrustedDevice.from_dict(data)
        for fingerprint, data in current.get("devices", {}).items()
    }


def _dump(devices: dict[str, TrustedDevice]) -> dict[str, Any] | None:
    if not devices:
        return None
    return {"devices": {fp: d.to_dict() for fp, d in devices.items()}}


def _prune(
    devices: dict[str, TrustedDevice], now: datetime
) -> dict[str, TrustedDevice]:
    return {fp: d for fp, d in devices.items() if d.is_active(now)}


class DeviceTrustTracker:
    """Per-user trusted device records.

    All devices of a user live in one record, so every change is a
    single compare-and-swap. Expired entries are dropped on each write.

    Example:
        ```python
        await devices.trust("user-123", fingerprint, device_name="Chrome on MacBook")
        if await devices.is_trusted("user-123", fingerprint):
            ...  # skip the challenge
        ```
    """

    def __init__(
        self,
        storage: IStorage,
        clock: IClock,
        config: TwoFactorConfig,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._config = config

    def _key(self, user_id: str) -> str:
        return user_key(user_id, DEVICES)

    async def _devices(self, user_id: str) -> dict[str, TrustedDevice]:
        record = await self._storage.get(self._key(user_id))
        return _load(record.value if record else None)

    async def trust(
        self,
        user_id: str,
        fingerprint: str,
        duration: timedelta | None = None,
        *,
        device_name: str | None = None,
    ) -> TrustedDevice:
        """Trust a device, or refresh the expiry of an already trusted one.

        Args:
            user_id: User identifier.
            fingerprint: Opaque device fingerprint.
            duration: Trust period; defaults to the configured duration.
            device_name: Display name for the device list.

        Returns:
            The stored device.

        Raises:
            ConfigurationError: If the duration is not positive or above
                the configured maximum, or the fingerprint is empty.
        """
        cfg = self._config.devices
        period = cfg.default_duration if duration is None else duration
        if period <= timedelta(0):
            raise ConfigurationError("Trust duration must be positive")
        if period > cfg.max_duration:
            raise ConfigurationError(
                f"Trust duration exceeds the maximum of {cfg.max_duration_days} days"
            )
        if not fingerprint:
            raise ConfigurationError("Device fingerprint is required")

        now = self._clock.now()

        def mutate(current: dict[str, Any] | None) -> tuple[Any, TrustedDevice]:
            devices = _prune(_load(current), now)
            existing = devices.get(fingerprint)
            device = TrustedDevice(
                user_id=user_id,
                fingerprint=fingerprint,
                trusted_at=now,
                expires_at=now + period,
                device_name=device_name or (existing.device_name if existing else None),
                last_used_at=now,
            )
            devices[fingerprint] = device
            return _dump(devices), device

        device = await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
        )
        logger.info(
            "Trusted device for user %s until %s",
            user_id,
            device.expires_at.isoformat(),
        )
        return device

    async def is_trusted(self, user_id: str, fingerprint: str) -> bool:
        if not fingerprint:
            return False
        device = (await self._devices(user_id)).get(fingerprint)
        return device is not None and device.is_active(self._clock.now())

    async def touch(self, user_id: str, fingerprint: str) -> None:
        """Record that a trusted device was just used."""
        now = self._clock.now()

        def mutate(current: dict[str, Any] | None) -> tuple[Any, None]:
            devices = _prune(_load(current), now)
            device = devices.get(fingerprint)
            if device is None:
                return UNCHANGED, None
            devices[fingerprint] = replace(device, last_used_at=now)
            return _dump(devices), None

        await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
        )

    async def revoke(self, user_id: str, fingerprint: str) -> bool:
        """Stop trusting one device.

        Returns:
            True if an active device was removed.
        """
        now = self._clock.now()

        def mutate(current: dict[str, Any] | None) -> tuple[Any, bool]:
            devices = _prune(_load(current), now)
            if devices.pop(fingerprint, None) is None:
                return UNCHANGED, False
            return _dump(devices), True

        removed = await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
        )
        if removed:
            logger.info("Revoked trusted device for user %s", user_id)
        return removed

    async def revoke_all(self, user_id: str) -> int:
        """Stop trusting every device of the user.

        Returns:
            Number of active devices removed.
        """
        now = self._clock.now()

        def mutate(current: dict[str, Any] | None) -> tuple[Any, int]:
            return None, len(_prune(_load(current), now))

        count = await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._config.max_cas_attempts,
        )
        logger.info("Revoked %d trusted devices for user %s", count, user_id)
        return count

    async def list_devices(self, user_id: str) -> list[TrustedDevice]:
        """Active devices, most recently used first."""
        now = self._clock.now()
        devices = _prune(await self._devices(user_id), now).values()
        return sorted(
            devices,
            key=lambda d: d.last_used_at or d.trusted_at,
            reverse=True,
        )


__all__: list[str] = ["DeviceTrustTracker"]
