"""Tests for trusted devices."""

from __future__ import annotations

from datetime import timedelta

import pytest

from twofactor import DeviceTrustTracker, ManualClock, TwoFactorServices
from twofactor.exceptions import ConfigurationError


@pytest.fixture
def devices(services: TwoFactorServices) -> DeviceTrustTracker:
    return services.devices


@pytest.mark.asyncio
class TestDeviceTrust:
    async def test_trusted_for_thirty_days(
        self, devices: DeviceTrustTracker, clock: ManualClock
    ) -> None:
        device = await devices.trust("user-1", "fp-1")
        assert device.expires_at - device.trusted_at == timedelta(days=30)

        clock.advance(days=29)
        assert await devices.is_trusted("user-1", "fp-1")

        clock.advance(days=2)
        assert not await devices.is_trusted("user-1", "fp-1")

    async def test_unknown_device(self, devices: DeviceTrustTracker) -> None:
        assert not await devices.is_trusted("user-1", "fp-1")
        assert not await devices.is_trusted("user-1", "")

    async def test_devices_are_per_user(self, devices: DeviceTrustTracker) -> None:
        await devices.trust("user-1", "fp-1")
        assert not await devices.is_trusted("user-2", "fp-1")

    async def test_retrust_refreshes_expiry(
        self, devices: DeviceTrustTracker, clock: ManualClock
    ) -> None:
        await devices.trust("user-1", "fp-1", device_name="Chrome on MacBook")
        clock.advance(days=20)
        refreshed = await devices.trust("user-1", "fp-1")

        assert refreshed.expires_at == clock.now() + timedelta(days=30)
        assert refreshed.device_name == "Chrome on MacBook"
        clock.advance(days=25)
        assert await devices.is_trusted("user-1", "fp-1")

    @pytest.mark.parametrize(
        "duration", [timedelta(days=91), timedelta(0), timedelta(seconds=-1)]
    )
    async def test_invalid_duration(
        self, devices: DeviceTrustTracker, duration: timedelta
    ) -> None:
        with pytest.raises(ConfigurationError):
            await devices.trust("user-1", "fp-1", duration)

    async def test_custom_duration_up_to_maximum(
        self, devices: DeviceTrustTracker
    ) -> None:
        device = await devices.trust("user-1", "fp-1", timedelta(days=90))
        assert device.expires_at - device.trusted_at == timedelta(days=90)

    async def test_empty_fingerprint_rejected(
        self, devices: DeviceTrustTracker
    ) -> None:
        with pytest.raises(ConfigurationError):
            await devices.trust("user-1", "")


@pytest.mark.asyncio
class TestDeviceManagement:
    async def test_list_devices_most_recent_first(
        self, devices: DeviceTrustTracker, clock: ManualClock
    ) -> None:
        await devices.trust("user-1", "fp-1", device_name="Laptop")
        clock.advance(hours=1)
        await devices.trust("user-1", "fp-2", device_name="Phone")
        clock.advance(hours=1)
        await devices.touch("user-1", "fp-1")

        listed = await devices.list_devices("user-1")

        assert [d.device_name for d in listed] == ["Laptop", "Phone"]
        assert listed[0].last_used_at == clock.now()

    async def test_expired_devices_are_hidden_and_pruned(
        self, devices: DeviceTrustTracker, clock: ManualClock
    ) -> None:
        await devices.trust("user-1", "old", timedelta(days=1))
        clock.advance(days=2)
        await devices.trust("user-1", "new")

        listed = await devices.list_devices("user-1")
        assert [d.fingerprint for d in listed] == ["new"]
        assert not await devices.revoke("user-1", "old")

    async def test_revoke(self, devices: DeviceTrustTracker) -> None:
        await devices.trust("user-1", "fp-1")
        await devices.trust("user-1", "fp-2")

        assert await devices.revoke("user-1", "fp-1")
        assert not await devices.revoke("user-1", "fp-1")
        assert not await devices.is_trusted("user-1", "fp-1")
        assert await devices.is_trusted("user-1", "fp-2")

    async def test_revoke_all(self, devices: DeviceTrustTracker) -> None:
        await devices.trust("user-1", "fp-1")
        await devices.trust("user-1", "fp-2")

        assert await devices.revoke_all("user-1") == 2
        assert await devices.list_devices("user-1") == []
        assert await devices.revoke_all("user-1") == 0

    async def test_touch_unknown_device_is_noop(
        self, devices: DeviceTrustTracker
    ) -> None:
        await devices.touch("user-1", "fp-1")
        assert await devices.list_devices("user-1") == []
