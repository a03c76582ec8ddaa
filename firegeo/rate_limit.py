import logging
import time
from typing import Callable, Dict, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# KEYS[1] bucket hash; ARGV now_ms, capacity, tokens per second.
# Returns {allowed, remaining, reset_ms}.
TOKEN_BUCKET_SCRIPT = """
local now_ms = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local per_second = tonumber(ARGV[3])

local saved = redis.call('HMGET', KEYS[1], 'tokens', 'updated_ms')
local tokens = tonumber(saved[1]) or capacity
local updated_ms = tonumber(saved[2]) or now_ms

local elapsed_ms = math.max(0, now_ms - updated_ms)
tokens = math.min(capacity, tokens + elapsed_ms * per_second / 1000.0)

local allowed = 0
local wait_ms = math.ceil((1 - tokens) * 1000.0 / per_second)
if tokens >= 1 then
    allowed = 1
    tokens = tokens - 1
    wait_ms = math.ceil(1000.0 / per_second)
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'updated_ms', now_ms)
-- an idle bucket is full again after capacity / per_second seconds
redis.call('PEXPIRE', KEYS[1], math.ceil(capacity * 1000.0 / per_second))
return {allowed, math.floor(tokens), now_ms + wait_ms}
"""


class TokenBucketRateLimiter:
    """
    In-process token bucket.

    Good for a single worker or for tests; each identifier gets ``capacity``
    tokens refilled at ``refill_rate`` tokens per second. Buckets that have
    refilled completely are dropped, since a missing bucket counts as full.
    """

    def __init__(self, capacity: int = 60, refill_rate: float = 1.0, clock: Callable[[], float] = time.monotonic):
        if capacity < 1 or refill_rate <= 0:
            raise ValueError("capacity must be >= 1 and refill_rate > 0")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._refill_seconds = capacity / refill_rate
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._refill_seconds:
            return
        self._last_sweep = now
        full = [
            identifier for identifier, (tokens, last_refill) in self._buckets.items()
            if tokens + (now - last_refill) * self.refill_rate >= self.capacity
        ]
        for identifier in full:
            del self._buckets[identifier]
        if full:
            logger.debug(f"Dropped {len(full)} idle rate limit buckets")

    async def is_allowed(self, identifier: str) -> Tuple[bool, int, int]:
        """
        Take a token for ``identifier``.

        Returns:
            Tuple of (allowed, remaining, reset_time) where reset_time is in
            milliseconds on the limiter's clock
        """
        now = self._clock()
        self._sweep(now)
        tokens, last_refill = self._buckets.get(identifier, (float(self.capacity), now))
        tokens = min(self.capacity, tokens + (now - last_refill) * self.refill_rate)

        if tokens >= 1:
            tokens -= 1
            self._buckets[identifier] = (tokens, now)
            return True, int(tokens), int((now + 1 / self.refill_rate) * 1000)

        self._buckets[identifier] = (tokens, now)
        return False, 0, int((now + (1 - tokens) / self.refill_rate) * 1000)

    def reset(self, identifier: str) -> None:
        self._buckets.pop(identifier, None)

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    async def close(self) -> None:
        self._buckets.clear()


class RedisTokenBucketRateLimiter:
    """Token bucket shared by every worker through an atomic Lua script."""

    def __init__(self, client: redis.Redis, capacity: int = 60, refill_rate: float = 1.0):
        self.redis = client
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._script = client.register_script(TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _get_bucket_key(identifier: str) -> str:
        return f"ratelimit:tokenbucket:{identifier}"

    async def is_allowed(self, identifier: str) -> Tuple[bool, int, int]:
        current_time = int(time.time() * 1000)
        try:
            results = await self._script(
                keys=[self._get_bucket_key(identifier)],
                args=[current_time, self.capacity, self.refill_rate],
            )
        except RedisError as e:
            # fail open
            logger.error(f"Rate limit check failed for {identifier}: {e}")
            return True, self.capacity, current_time
        return bool(results[0]), int(results[1]), int(results[2])

    async def reset(self, identifier: str) -> None:
        await self.redis.delete(self._get_bucket_key(identifier))

    async def close(self) -> None:
        await self.redis.aclose()
