"""Counter stores backing the fixed-window rate limiter.

Both backends expose a single atomic ``increment`` that returns the new
value, so the limiter never needs a separate read before its write.

* ``InMemoryCounterStore`` keeps counters in-process behind a
  ``threading.Lock``.  Suitable for a single gateway process and tests.
* ``RedisCounterStore`` runs ``INCR`` and ``EXPIRE`` inside one MULTI/EXEC
  pipeline, which is safe across any number of gateway instances.
"""

import heapq
import threading
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic
from typing import Any, Protocol

import redis.asyncio as redis


class CounterBackendError(Exception):
    """Raised when the counter backend is unavailable or misconfigured."""


class CounterStore(Protocol):
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Atomically add one to ``key`` and return the new value."""

    async def get(self, key: str) -> int:
        """Return the current value of ``key`` (0 when absent or expired)."""


@dataclass
class _Counter:
    value: int
    expires_at: float


class InMemoryCounterStore:
    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._counters: dict[str, _Counter] = {}
        self._lock = threading.Lock()
        self._expiries: list[tuple[float, str]] = []

    async def increment(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            self._prune(now)
            counter = self._counters.get(key)
            if counter is None:
                counter = _Counter(value=0, expires_at=now + ttl_seconds)
                self._counters[key] = counter
                heapq.heappush(self._expiries, (counter.expires_at, key))
            counter.value += 1
            return counter.value

    async def get(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or counter.expires_at <= now:
                return 0
            return counter.value

    def __len__(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._counters)

    def _prune(self, now: float) -> None:
        while self._expiries and self._expiries[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiries)
            counter = self._counters.get(key)
            if counter is not None and counter.expires_at == expires_at:
                del self._counters[key]


class RedisCounterStore:
    def __init__(self, redis_url: str | None = None, client: Any | None = None) -> None:
        if client is not None:
            self._client = client
            return
        if not redis_url:
            raise CounterBackendError("GATEWAY_COUNTER_REDIS_URL is required when backend=redis")
        try:
            self._client = redis.Redis.from_url(redis_url, decode_responses=True)
        except Exception as exc:
            raise CounterBackendError(f"Failed to initialize Redis counter backend: {exc}") from exc

    async def increment(self, key: str, ttl_seconds: int) -> int:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl_seconds)
                results = await pipe.execute()
        except redis.RedisError as exc:
            raise CounterBackendError(f"Redis increment failed: {exc}") from exc
        return int(results[0])

    async def get(self, key: str) -> int:
        try:
            value = await self._client.get(key)
        except redis.RedisError as exc:
            raise CounterBackendError(f"Redis read failed: {exc}") from exc
        return int(value) if value is not None else 0

    async def close(self) -> None:
        await self._client.aclose()
