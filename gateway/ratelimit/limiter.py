"""Fixed-window per-identity rate limiting.

Each identity gets a counter per window of ``window_ms`` milliseconds,
keyed as ``<prefix>:<identity>:<window_index>``.  The counter store's
atomic increment decides admission: a request is admitted when the
incremented value is still within the limit.  Rejected requests also
consume an increment, which keeps admissions bounded by ``limit`` even
when many callers race on the same key.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from time import time

from gateway.ratelimit.counters import CounterStore


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_seconds: int
    retry_after_seconds: int = 0

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class FixedWindowRateLimiter:
    def __init__(
        self,
        store: CounterStore,
        limit: int = 100,
        window_ms: int = 60_000,
        key_prefix: str = "rate",
        clock: Callable[[], float] = time,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        self._store = store
        self._limit = limit
        self._window_ms = window_ms
        self._key_prefix = key_prefix
        self._clock = clock
        self._ttl_seconds = max(1, math.ceil(2 * window_ms / 1000))

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def window_index(self, now_ms: int) -> int:
        return now_ms // self._window_ms

    def counter_key(self, identity_key: str, window_index: int) -> str:
        return f"{self._key_prefix}:{identity_key}:{window_index}"

    def reset_at_seconds(self, window_index: int) -> int:
        return math.ceil((window_index + 1) * self._window_ms / 1000)

    async def admit(self, identity_key: str) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        window_index = self.window_index(now_ms)
        count = await self._store.increment(
            self.counter_key(identity_key, window_index), self._ttl_seconds
        )
        reset_at_seconds = self.reset_at_seconds(window_index)
        return RateLimitDecision(
            allowed=count <= self._limit,
            limit=self._limit,
            remaining=max(self._limit - count, 0),
            reset_at_seconds=reset_at_seconds,
            retry_after_seconds=max(math.ceil(reset_at_seconds - now_ms / 1000), 0),
        )

    async def usage(self, identity_key: str) -> int:
        """Return the number of requests counted in the current window."""
        now_ms = int(self._clock() * 1000)
        return await self._store.get(self.counter_key(identity_key, self.window_index(now_ms)))
