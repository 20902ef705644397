"""Identity resolution: guest vs. registered vs. premium senders."""

from __future__ import annotations

import time
from typing import Callable, Protocol


class PlateDirectory(Protocol):
    """Lookup contract over plate ownership and subscriptions."""

    async def count_owned_plates(self, owner_id: str) -> int:
        ...

    async def is_premium(self, user_id: str) -> bool:
        ...

    async def owner_of(self, plate: str) -> str | None:
        ...


def normalize_plate(plate: str) -> str:
    return plate.strip().upper()


class IdentityResolver:
    """Classifies identifiers, caching lookups for a short TTL.

    Registered means "owns at least one plate". Anonymous callers (no
    identifier) are always guests.
    """

    def __init__(
        self,
        directory: PlateDirectory,
        *,
        cache_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = directory
        self._ttl = max(0.0, cache_ttl_seconds)
        self._clock = clock
        self._registered: dict[str, tuple[float, bool]] = {}
        self._premium: dict[str, tuple[float, bool]] = {}

    async def is_registered(self, identifier: str | None) -> bool:
        if not identifier:
            return False
        cached = self._cached(self._registered, identifier)
        if cached is not None:
            return cached
        registered = await self._directory.count_owned_plates(identifier) > 0
        self._store(self._registered, identifier, registered)
        return registered

    async def is_premium(self, identifier: str | None) -> bool:
        if not identifier:
            return False
        cached = self._cached(self._premium, identifier)
        if cached is not None:
            return cached
        premium = await self._directory.is_premium(identifier)
        self._store(self._premium, identifier, premium)
        return premium

    def _cached(self, cache: dict[str, tuple[float, bool]], key: str) -> bool | None:
        entry = cache.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            cache.pop(key, None)
            return None
        return value

    def _store(self, cache: dict[str, tuple[float, bool]], key: str, value: bool) -> None:
        if self._ttl > 0:
            cache[key] = (self._clock() + self._ttl, value)


class InMemoryPlateDirectory(PlateDirectory):
    """Reference directory used in tests and developer environments."""

    def __init__(self) -> None:
        self.owners: dict[str, str] = {}
        self.premium: set[str] = set()

    def claim(self, owner_id: str, plate: str) -> None:
        self.owners[normalize_plate(plate)] = owner_id

    async def count_owned_plates(self, owner_id: str) -> int:
        return sum(1 for owner in self.owners.values() if owner == owner_id)

    async def is_premium(self, user_id: str) -> bool:
        return user_id in self.premium

    async def owner_of(self, plate: str) -> str | None:
        return self.owners.get(normalize_plate(plate))
