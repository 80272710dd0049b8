"""Persistence of which factors each user has enabled."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from .email_otp import ENROLLMENT, LOGIN
from .exceptions import ConfigurationError, ProfileNotFoundError
from .models import PROFILE_FACTORS, Factor, User2FAProfile
from .storage import UNCHANGED, atomic_update, email_challenge_key, user_key
from .storage.keys import PROFILE, USER_ENTITIES

if TYPE_CHECKING:
    from .ports import IClock, IStorage

logger = logging.getLogger("twofactor.profiles")

_CHALLENGE_PURPOSES = (LOGIN, ENROLLMENT)


class ProfileStore:
    """Read and update ``User2FAProfile`` records.

    Example:
        ```python
        profile = await profiles.enable_factor("user-123", Factor.TOTP)
        assert profile.has_two_factor
        ```
    """

    def __init__(
        self,
        storage: IStorage,
        clock: IClock,
        *,
        max_cas_attempts: int = 10,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._max_cas_attempts = max_cas_attempts

    def _key(self, user_id: str) -> str:
        return user_key(user_id, PROFILE)

    async def get(self, user_id: str) -> User2FAProfile | None:
        record = await self._storage.get(self._key(user_id))
        if record is None:
            return None
        return User2FAProfile.from_dict(record.value)

    async def require(self, user_id: str) -> User2FAProfile:
        """Return the profile.

        Raises:
            ProfileNotFoundError: If the user has never set up 2FA.
        """
        profile = await self.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)
        return profile

    async def _update(self, user_id: str, change: Any) -> User2FAProfile:
        now = self._clock.now()

        def mutate(current: dict[str, Any] | None) -> tuple[Any, User2FAProfile]:
            if current is None:
                profile = User2FAProfile(
                    user_id=user_id, created_at=now, updated_at=now
                )
            else:
                profile = User2FAProfile.from_dict(current)
            updated = change(profile)
            if updated is None:
                if current is None:
                    return profile.to_dict(), profile
                return UNCHANGED, profile
            updated = replace(updated, updated_at=now)
            return updated.to_dict(), updated

        return await atomic_update(
            self._storage,
            self._key(user_id),
            mutate,
            max_attempts=self._max_cas_attempts,
        )

    async def ensure(self, user_id: str) -> User2FAProfile:
        """Return the profile, creating an empty one if needed."""
        return await self._update(user_id, lambda _profile: None)

    async def enable_factor(self, user_id: str, factor: Factor) -> User2FAProfile:
        """Add a factor to the profile (created on first use).

        Raises:
            ConfigurationError: For factors that cannot live on a profile.
        """
        if factor not in PROFILE_FACTORS:
            raise ConfigurationError(f"Factor {factor.value!r} cannot be enabled")

        def change(profile: User2FAProfile) -> User2FAProfile | None:
            if profile.is_enabled(factor):
                return None
            return replace(profile, enabled_factors=profile.enabled_factors | {factor})

        profile = await self._update(user_id, change)
        logger.info("Enabled %s for user %s", factor.value, user_id)
        return profile

    async def disable_factor(self, user_id: str, factor: Factor) -> User2FAProfile:
        """Remove a factor from the profile.

        Raises:
            ProfileNotFoundError: If the user has no profile.
        """
        await self.require(user_id)

        def change(profile: User2FAProfile) -> User2FAProfile | None:
            if not profile.is_enabled(factor):
                return None
            return replace(profile, enabled_factors=profile.enabled_factors - {factor})

        profile = await self._update(user_id, change)
        logger.info("Disabled %s for user %s", factor.value, user_id)
        return profile

    async def set_email(self, user_id: str, address: str | None) -> User2FAProfile:
        def change(profile: User2FAProfile) -> User2FAProfile | None:
            if profile.email == address:
                return None
            return replace(profile, email=address)

        return await self._update(user_id, change)

    async def delete(self, user_id: str) -> None:
        """Remove every per-user record.

        The attempt log is append-only and is kept for forensics.
        Verification sessions expire on their own.
        """
        keys = [user_key(user_id, entity) for entity in USER_ENTITIES]
        keys.extend(email_challenge_key(user_id, p) for p in _CHALLENGE_PURPOSES)
        for key in keys:
            await atomic_update(
                self._storage,
                key,
                lambda _current: (None, None),
                max_attempts=self._max_cas_attempts,
            )
        logger.info("Deleted two-factor data for user %s", user_id)


__all__: list[str] = ["ProfileStore"]
