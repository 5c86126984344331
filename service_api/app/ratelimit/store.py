"""
Counter stores for fixed-window rate limiting.

A store owns the atomic "check-then-increment" step for a single key so
that concurrent requests can never both observe ``count < limit`` and
overshoot the threshold.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as redis

from shared.logging import get_logger


@dataclass
class RateCounter:
    """Requests seen for one key in the current window."""

    key: str
    window_start: float
    count: int

    def expired(self, now: float, window_seconds: float) -> bool:
        return now - self.window_start >= window_seconds


@dataclass(frozen=True)
class CounterResult:
    """Outcome of one admission attempt against a single counter."""

    allowed: bool
    count: int
    window_start: float


class RateLimitStore(ABC):
    """Keyed fixed-window counters."""

    @abstractmethod
    async def hit(self, key: str, limit: int, window_seconds: float, now: float) -> CounterResult:
        """Atomically check the counter for ``key`` and record the request.

        An expired or missing counter is replaced with ``count=1`` and the
        request is allowed. Otherwise a counter already at ``limit`` denies
        without incrementing; below ``limit`` it is incremented and allows.
        """

    @abstractmethod
    async def sweep(self, window_seconds: float, now: float) -> int:
        """Drop counters whose window has fully expired. Returns how many were removed."""

    @abstractmethod
    async def size(self) -> int:
        """Number of counters currently tracked."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backing store is reachable."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store backed by a lock-guarded dict."""

    def __init__(self):
        self._counters: Dict[str, RateCounter] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str, limit: int, window_seconds: float, now: float) -> CounterResult:
        with self._lock:
            counter = self._counters.get(key)
            if counter is None or counter.expired(now, window_seconds):
                counter = RateCounter(key=key, window_start=now, count=1)
                self._counters[key] = counter
                return CounterResult(True, counter.count, counter.window_start)

            if counter.count >= limit:
                return CounterResult(False, counter.count, counter.window_start)

            counter.count += 1
            return CounterResult(True, counter.count, counter.window_start)

    async def sweep(self, window_seconds: float, now: float) -> int:
        with self._lock:
            stale = [key for key, counter in self._counters.items() if counter.expired(now, window_seconds)]
            for key in stale:
                del self._counters[key]
            return len(stale)

    async def size(self) -> int:
        with self._lock:
            return len(self._counters)

    async def ping(self) -> bool:
        return True

    def get(self, key: str) -> Optional[RateCounter]:
        """Return a copy of the counter for ``key``, if any."""
        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                return None
            return RateCounter(counter.key, counter.window_start, counter.count)


# KEYS[1] = counter hash; ARGV = now_ms, window_ms, limit
_HIT_SCRIPT = """
local start = redis.call('HGET', KEYS[1], 'start')
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
if (not start) or (now - tonumber(start) >= window) then
  redis.call('HSET', KEYS[1], 'start', ARGV[1], 'count', 1)
  redis.call('PEXPIRE', KEYS[1], window)
  return {1, 1, ARGV[1]}
end
local count = tonumber(redis.call('HGET', KEYS[1], 'count'))
if count >= limit then
  return {0, count, start}
end
redis.call('HINCRBY', KEYS[1], 'count', 1)
return {1, count + 1, start}
"""


class RedisRateLimitStore(RateLimitStore):
    """Store shared by every process pointing at the same Redis.

    The check-then-increment step runs as a single Lua script, and each
    counter carries a TTL of one window so expired keys vanish on their own.
    """

    def __init__(self, redis_url: str, key_prefix: str = "rate_limit:"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("api.rate_limit_store")
        self._redis: Optional[redis.Redis] = None
        self._script = None
        self._lock = asyncio.Lock()

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            async with self._lock:
                if self._redis is None:
                    self._redis = redis.from_url(self.redis_url, decode_responses=True)
                    self._script = self._redis.register_script(_HIT_SCRIPT)
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def hit(self, key: str, limit: int, window_seconds: float, now: float) -> CounterResult:
        await self._get_redis()
        now_ms = int(now * 1000)
        window_ms = int(window_seconds * 1000)
        allowed, count, start_ms = await self._script(
            keys=[self._make_key(key)],
            args=[now_ms, window_ms, limit],
        )
        return CounterResult(bool(int(allowed)), int(count), int(start_ms) / 1000.0)

    async def sweep(self, window_seconds: float, now: float) -> int:
        # Keys expire through their TTL.
        return 0

    async def size(self) -> int:
        redis_client = await self._get_redis()
        total = 0
        async for _ in redis_client.scan_iter(match=f"{self.key_prefix}*"):
            total += 1
        return total

    async def ping(self) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except Exception as e:
            self.logger.error("Rate limit store ping failed", error=str(e))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
