"""PostgreSQL-backed plate ownership lookups for the identity resolver."""

from __future__ import annotations

import asyncpg

from platesafe.safety.domain.identity import PlateDirectory, normalize_plate


class PostgresPlateDirectory(PlateDirectory):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def count_owned_plates(self, owner_id: str) -> int:
        count = await self._pool.fetchval("SELECT COUNT(*) FROM plate WHERE owner_id = $1", owner_id)
        return int(count or 0)

    async def is_premium(self, user_id: str) -> bool:
        row = await self._pool.fetchrow(
            """
            SELECT 1 FROM premium_account
            WHERE user_id = $1 AND (expires_at IS NULL OR expires_at > NOW())
            """,
            user_id,
        )
        return row is not None

    async def owner_of(self, plate: str) -> str | None:
        owner = await self._pool.fetchval("SELECT owner_id FROM plate WHERE plate = $1", normalize_plate(plate))
        return str(owner) if owner is not None else None
