"""Redis-backed window counters for the rate limiter."""

from __future__ import annotations

from redis.asyncio import Redis

from platesafe.infra.redis import RedisProxy
from platesafe.safety.domain.counters import CounterSnapshot, CounterStore


class RedisCounterStore(CounterStore):
    """Fixed windows that start on the first hit and expire via key TTL."""

    def __init__(self, redis: Redis | RedisProxy) -> None:
        self._redis = redis

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        window = max(1, int(window_seconds))
        async with self._redis.pipeline(transaction=True) as pipe:
            # SET NX creates the window with its TTL; INCR keeps an existing TTL.
            pipe.set(key, 0, ex=window, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, pttl = await pipe.execute()
        if pttl is None or int(pttl) < 0:
            await self._redis.expire(key, window)
            pttl = window * 1000
        return CounterSnapshot(count=int(count), reset_in=int(pttl) / 1000.0)

    async def peek(self, key: str) -> CounterSnapshot | None:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.get(key)
            pipe.pttl(key)
            raw, pttl = await pipe.execute()
        if raw is None:
            return None
        reset_in = int(pttl) / 1000.0 if pttl is not None and int(pttl) > 0 else 0.0
        return CounterSnapshot(count=int(raw), reset_in=reset_in)
