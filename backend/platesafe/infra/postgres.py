"""AsyncPG pool management for the backend."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import asyncpg

from platesafe.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None
_SCHEMA_PATH = Path(__file__).with_name("schema.sql")


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


async def apply_schema(pool: asyncpg.pool.Pool) -> None:
	"""Create the safety tables when they are missing (idempotent)."""
	ddl = _SCHEMA_PATH.read_text(encoding="utf-8")
	async with pool.acquire() as conn:
		await conn.execute(ddl)
