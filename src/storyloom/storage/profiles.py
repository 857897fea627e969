"""Owner-scoped lookup of stored character profiles."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from storyloom.models.request import CharacterProfile


@runtime_checkable
class ProfileDirectory(Protocol):
    """Read access to the character profiles a user has saved."""

    async def get_profile(self, owner_id: str, profile_id: str) -> CharacterProfile | None:
        """Return the profile, or None if the owner has no such profile."""
        ...


class InMemoryProfileDirectory:
    """Profiles held in a dict keyed by ``(owner_id, profile_id)``."""

    def __init__(self, profiles: dict[str, Iterable[CharacterProfile]] | None = None) -> None:
        self._profiles: dict[tuple[str, str], CharacterProfile] = {}
        for owner_id, owned in (profiles or {}).items():
            for profile in owned:
                self.add(owner_id, profile)

    def add(self, owner_id: str, profile: CharacterProfile) -> None:
        self._profiles[(owner_id, profile.profile_id)] = profile

    async def get_profile(self, owner_id: str, profile_id: str) -> CharacterProfile | None:
        return self._profiles.get((owner_id, profile_id))
