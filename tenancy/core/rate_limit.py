"""Fixed-window rate limiting keyed by arbitrary strings.

Every call counts, whether or not it is admitted, so a client hammering a
denied key keeps itself locked out until the window expires.
"""

import logging
from threading import Lock
from time import monotonic
from typing import Protocol

from redis.asyncio import Redis

from tenancy.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    async def incr(self, key: str, window: int) -> int:
        """Atomically increment ``key`` and return the new count.

        The counter is created with a ``window`` second expiry; later
        increments inside the window do not extend it.
        """
        ...


class RedisCounterStore:
    """Counters shared by every API process."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def incr(self, key: str, window: int) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, ex=window, nx=True)
            pipe.incr(key)
            _, count = await pipe.execute()
        return int(count)


class MemoryCounterStore:
    """Single-process counters. Thread-safe via Lock.

    Expired counters are dropped by a sweep that runs at most once per
    window, from inside ``incr``.
    """

    def __init__(self) -> None:
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = Lock()
        self._next_sweep = 0.0

    @property
    def size(self) -> int:
        """Number of counters currently held."""
        return len(self._counters)

    async def incr(self, key: str, window: int) -> int:
        now = monotonic()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
                self._next_sweep = now + window
            count, expires_at = self._counters.get(key, (0, 0.0))
            if expires_at <= now:
                count, expires_at = 0, now + window
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._counters.items() if exp <= now]
        for key in expired:
            del self._counters[key]


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        window_seconds: int = 60,
        prefix: str = "ratelimit:",
    ) -> None:
        self._store = store
        self._window = window_seconds
        self._prefix = prefix

    @property
    def window(self) -> int:
        return self._window

    async def check(self, key: str, limit: int) -> bool:
        """Record one attempt against ``key``; True while within ``limit``.

        A limit of 0 denies every call.
        """
        count = await self._store.incr(self._prefix + key, self._window)
        return count <= limit

    async def enforce(self, key: str, limit: int) -> None:
        """Like ``check`` but raises ``RateLimitExceeded`` on denial."""
        if not await self.check(key, limit):
            logger.info("Rate limit exceeded for %s (limit %s)", key, limit)
            raise RateLimitExceeded(retry_after=self._window)
