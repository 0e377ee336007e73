"""
Token bucket quota limiter backed by Redis.
"""

import math
import time
from contextlib import nullcontext
from typing import Any, Callable, Optional, Sequence, Tuple

import redis.asyncio as redis
from pydantic import BaseModel

from shared.logging import get_logger
from shared.metrics import MetricsCollector


# Read, refill, compare and write in one server-side evaluation so that
# concurrent callers for the same key can never both spend the same token.
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local now = tonumber(ARGV[4])
local requested = tonumber(ARGV[5] or 1)

local state = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(state[1])
local last_refill = tonumber(state[2])

if not tokens or not last_refill then
    tokens = burst
    last_refill = now
else
    local elapsed = math.max(0, now - last_refill)
    tokens = math.min(burst, tokens + elapsed * limit / window_ms)
    last_refill = now
end

local allowed = 0
if tokens >= requested then
    tokens = tokens - requested
    allowed = 1
end

redis.call('HSET', key, 'tokens', tokens, 'last_refill', last_refill)
redis.call('PEXPIRE', key, math.ceil(window_ms * 1.5))

-- Replies truncate numbers to integers, so the exact balance goes back as a string.
return {allowed, math.floor(tokens), string.format('%.17g', tokens)}
"""


class QuotaResult(BaseModel):
    """Outcome of one bucket evaluation."""

    allowed: bool
    remaining: int
    reset_ms: int
    # Time until enough tokens exist for the denied request; 0 when allowed.
    retry_after_ms: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenBucketRateLimiter:
    """Distributed token bucket rate limiter using Redis."""

    KEY_PREFIX = "quota:"

    def __init__(
        self,
        redis_url: str,
        fail_open: bool = True,
        socket_timeout: float = 2.0,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], int]] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.fail_open = fail_open
        self.socket_timeout = socket_timeout
        self.metrics = metrics
        self.logger = get_logger("quota.rate_limiter")
        self._clock = clock or _now_ms
        self._redis: Optional[redis.Redis] = client
        self._script: Optional[Any] = None

    async def start(self) -> None:
        """Open the store client and register the bucket script."""
        if self._script is not None:
            return

        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
            )
        self._script = self._redis.register_script(TOKEN_BUCKET_SCRIPT)

        try:
            await self._redis.ping()
            self.logger.info("Quota store connected", redis_url=self.redis_url)
        except Exception as e:
            # Evaluations still go through the failure policy until Redis is back.
            self.logger.error("Quota store unreachable at startup", redis_url=self.redis_url, error=str(e))

    async def stop(self) -> None:
        """Close the store client."""
        if self._redis is not None:
            await self._redis.aclose()
            self.logger.info("Quota store disconnected")
        self._redis = None
        self._script = None

    async def ping(self) -> bool:
        """Report whether the store answers."""
        try:
            if self._script is None:
                await self.start()
            return bool(await self._redis.ping())
        except Exception as e:
            self.logger.warning("Quota store ping failed", error=str(e))
            return False

    def _make_key(self, key: str) -> str:
        """Generate the store key for a tracker key."""
        return f"{self.KEY_PREFIX}{key}"

    async def check_quota(
        self,
        key: str,
        limit: int,
        window_ms: int,
        burst: int,
        requested: int = 1,
    ) -> QuotaResult:
        """Atomically refill the bucket for ``key`` and try to take ``requested`` tokens.

        ``requested=0`` refills and reads without spending anything. The bucket
        is rewritten and its expiry refreshed on every call.
        """
        now = self._clock()
        try:
            if self._script is None:
                await self.start()
            timer = self.metrics.time_operation("quota_check_duration_seconds") if self.metrics else nullcontext()
            with timer:
                raw = await self._script(
                    keys=[self._make_key(key)],
                    args=[limit, window_ms, burst, now, requested],
                )
            allowed, remaining, tokens = self._parse_reply(raw)
        except Exception as e:
            return self._on_store_failure(key, window_ms, e)

        retry_after_ms = 0
        if not allowed:
            retry_after_ms = math.ceil((requested - tokens) * window_ms / limit)
            self.logger.warning(
                "Rate limit exceeded",
                tracker_key=key,
                limit=limit,
                burst=burst,
                requested=requested,
            )

        return QuotaResult(
            allowed=allowed,
            remaining=remaining,
            reset_ms=window_ms,
            retry_after_ms=retry_after_ms,
        )

    @staticmethod
    def _parse_reply(raw: Sequence[Any]) -> Tuple[bool, int, float]:
        allowed, remaining = int(raw[0]), int(raw[1])
        tokens = float(raw[2]) if len(raw) > 2 else float(remaining)
        return allowed == 1, remaining, tokens

    def _on_store_failure(self, key: str, window_ms: int, error: Exception) -> QuotaResult:
        """Apply the configured failure policy.

        Failing open keeps the API available while Redis is down at the cost of
        not throttling; failing closed rejects everything until it recovers.
        """
        policy = "open" if self.fail_open else "closed"
        self.logger.error(
            "Failed to check quota",
            tracker_key=key,
            policy=policy,
            error=str(error),
        )
        if self.metrics:
            self.metrics.increment_counter("quota_store_errors_total", policy=policy)

        if self.fail_open:
            return QuotaResult(allowed=True, remaining=0, reset_ms=0)
        return QuotaResult(allowed=False, remaining=0, reset_ms=window_ms, retry_after_ms=window_ms)
