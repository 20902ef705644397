"""Window counter stores backing the rate limiter."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from redis.exceptions import RedisError

from platesafe.obs import metrics

logger = logging.getLogger(__name__)

# Failures that move the shared store into the degraded state.
STORE_FAILURES = (RedisError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True, slots=True)
class CounterSnapshot:
    """Count of a window plus the seconds left until it resets."""

    count: int
    reset_in: float


class CounterStore(Protocol):
    """Storage contract for fixed-window counters.

    ``increment`` starts a window on the first hit and keeps its expiry on
    later hits; ``peek`` reads without counting.
    """

    async def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        ...

    async def peek(self, key: str) -> CounterSnapshot | None:
        ...


@dataclass(slots=True)
class _Window:
    window_start: float
    expires_at: float
    count: int


class InMemoryCounterStore(CounterStore):
    """In-process counters keyed exactly like the shared store."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, prune_every: int = 1024) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._prune_every = max(1, prune_every)
        self._ops = 0

    async def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        now = self._clock()
        self._maybe_prune(now)
        window = self._live(key, now)
        if window is None:
            window = _Window(window_start=now, expires_at=now + max(1, window_seconds), count=0)
            self._windows[key] = window
        window.count += 1
        return CounterSnapshot(count=window.count, reset_in=window.expires_at - now)

    async def peek(self, key: str) -> CounterSnapshot | None:
        now = self._clock()
        window = self._live(key, now)
        if window is None:
            return None
        return CounterSnapshot(count=window.count, reset_in=window.expires_at - now)

    def __len__(self) -> int:
        return len(self._windows)

    def _live(self, key: str, now: float) -> _Window | None:
        window = self._windows.get(key)
        if window is not None and window.expires_at <= now:
            del self._windows[key]
            return None
        return window

    def _maybe_prune(self, now: float) -> None:
        self._ops += 1
        if self._ops % self._prune_every:
            return
        expired = [key for key, window in self._windows.items() if window.expires_at <= now]
        for key in expired:
            del self._windows[key]


class StoreState(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"


class FailoverCounterStore(CounterStore):
    """Shared store with a one-way switch to the in-process fallback.

    Once degraded the primary is never contacted again for the lifetime of the
    instance; the switch is logged once.
    """

    def __init__(
        self,
        primary: CounterStore | None,
        fallback: CounterStore | None = None,
        *,
        timeout_seconds: float = 0.25,
    ) -> None:
        self._primary = primary
        self._fallback = fallback or InMemoryCounterStore()
        self._timeout = timeout_seconds
        self._state = StoreState.CONNECTED if primary is not None else StoreState.DEGRADED
        self._degraded_reason: str | None = None if primary is not None else "no_shared_store"
        metrics.COUNTER_STORE_STATE.set(1 if self._state is StoreState.CONNECTED else 0)

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def degraded_reason(self) -> str | None:
        return self._degraded_reason

    async def connect(self) -> StoreState:
        """Probe the shared store once at startup."""

        if self._state is StoreState.DEGRADED or self._primary is None:
            return self._state
        ping = getattr(self._primary, "ping", None)
        if ping is None:
            return self._state
        try:
            await asyncio.wait_for(ping(), timeout=self._timeout)
        except STORE_FAILURES as exc:
            self._degrade(exc, during="connect")
        return self._state

    async def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        if self._state is StoreState.CONNECTED and self._primary is not None:
            try:
                return await asyncio.wait_for(self._primary.increment(key, window_seconds), timeout=self._timeout)
            except STORE_FAILURES as exc:
                self._degrade(exc, during="increment")
        return await self._fallback.increment(key, window_seconds)

    async def peek(self, key: str) -> CounterSnapshot | None:
        if self._state is StoreState.CONNECTED and self._primary is not None:
            try:
                return await asyncio.wait_for(self._primary.peek(key), timeout=self._timeout)
            except STORE_FAILURES as exc:
                self._degrade(exc, during="peek")
        return await self._fallback.peek(key)

    def _degrade(self, exc: BaseException, *, during: str) -> None:
        metrics.COUNTER_STORE_ERRORS.labels(backend="shared").inc()
        if self._state is StoreState.DEGRADED:
            return
        self._state = StoreState.DEGRADED
        self._degraded_reason = f"{during}:{type(exc).__name__}"
        metrics.COUNTER_STORE_STATE.set(0)
        logger.warning(
            "shared counter store unavailable, using in-process counters for the rest of the process",
            extra={"during": during, "error": repr(exc)},
        )
