"""
Rate-limit gate placed in front of the OAuth endpoints.

The gate only decides; it keeps no OAuth state. A denied request is turned
into a 429 by the exception handler registered in main.py.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, NamedTuple, Optional

from fastapi import Request
from redis.asyncio import Redis
from redis.exceptions import RedisError

from config import Config

logger = logging.getLogger(__name__)


class RateLimitDecision(NamedTuple):
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until the window admits another request

    @property
    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.retry_after),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitExceeded(Exception):
    def __init__(self, decision: RateLimitDecision):
        super().__init__("Rate limit exceeded. Please try again later.")
        self.decision = decision


class RateLimiter(ABC):
    """Counts requests per key inside a time window"""

    def __init__(self, limit: int, window_seconds: int, prefix: str = "ratelimit"):
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    @abstractmethod
    async def check(self, key: str) -> RateLimitDecision:
        ...

    async def close(self) -> None:
        pass


class MemoryRateLimiter(RateLimiter):
    """Sliding window over request timestamps, per process"""

    def __init__(self, limit: int, window_seconds: int, prefix: str = "ratelimit",
                 clock: Callable[[], float] = time.time):
        super().__init__(limit, window_seconds, prefix)
        self.clock = clock
        self.requests: Dict[str, List[float]] = {}

    async def check(self, key: str) -> RateLimitDecision:
        now = self.clock()
        window_start = now - self.window_seconds
        bucket = f"{self.prefix}:{key}"
        self._prune(window_start)

        # Clean old entries
        timestamps = [ts for ts in self.requests.get(bucket, []) if ts > window_start]

        if len(timestamps) >= self.limit:
            self.requests[bucket] = timestamps
            retry_after = max(1, math.ceil(timestamps[0] + self.window_seconds - now))
            return RateLimitDecision(False, self.limit, 0, retry_after)

        timestamps.append(now)
        self.requests[bucket] = timestamps
        retry_after = max(1, math.ceil(timestamps[0] + self.window_seconds - now))
        return RateLimitDecision(True, self.limit, self.limit - len(timestamps), retry_after)

    def _prune(self, window_start: float) -> None:
        """Drop buckets with no request inside the current window"""
        idle = [bucket for bucket, timestamps in self.requests.items() if not timestamps or timestamps[-1] <= window_start]
        for bucket in idle:
            del self.requests[bucket]


class RedisRateLimiter(RateLimiter):
    """Fixed window counter shared by every instance"""

    def __init__(self, client: Redis, limit: int, window_seconds: int, prefix: str = "ratelimit"):
        super().__init__(limit, window_seconds, prefix)
        self.client = client

    async def check(self, key: str) -> RateLimitDecision:
        bucket = f"{self.prefix}:{key}"
        count = await self.client.incr(bucket)
        if count == 1:
            await self.client.expire(bucket, self.window_seconds)

        ttl = await self.client.ttl(bucket)
        if ttl is None or ttl < 0:
            # Counter lost its expiry (e.g. crash between INCR and EXPIRE)
            await self.client.expire(bucket, self.window_seconds)
            ttl = self.window_seconds

        retry_after = max(1, ttl)
        return RateLimitDecision(count <= self.limit, self.limit, max(0, self.limit - count), retry_after)

    async def close(self) -> None:
        await self.client.aclose()


def client_identifier(request: Request) -> str:
    """Bearer token prefix for authenticated callers, otherwise the client IP"""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        # Never keep full tokens in the limiter's keyspace
        return f"token:{auth_header[7:23]}"

    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
    else:
        ip = (
            request.headers.get("x-real-ip")
            or request.headers.get("cf-connecting-ip")
            or (request.client.host if request.client else None)
            or "anonymous"
        )
    return f"ip:{ip}"


def get_rate_limiter(config: Config, strict: bool = False) -> Optional[RateLimiter]:
    """Limiter for the deployment, or None when rate limiting is disabled"""
    if not config.rate_limit_enabled:
        return None

    limit = config.rate_limit_strict_requests if strict else config.rate_limit_requests
    prefix = "ratelimit:strict" if strict else "ratelimit"

    if config.redis_url:
        return RedisRateLimiter(Redis.from_url(config.redis_url, decode_responses=True),
                                limit, config.rate_limit_window, prefix)
    return MemoryRateLimiter(limit, config.rate_limit_window, prefix)


def rate_limit_gate(limiter: Optional[RateLimiter]):
    """FastAPI dependency that rejects requests over the limit"""

    async def gate(request: Request) -> None:
        if limiter is None:
            return

        try:
            decision = await limiter.check(client_identifier(request))
        except (RedisError, OSError) as e:
            # Do not block the request if the limiter backend is unavailable
            logger.error(f"Error checking rate limit: {e}")
            return

        request.state.rate_limit = decision
        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {request.url.path}")
            raise RateLimitExceeded(decision)

    return gate
