"""
Fixed-window usage counters stored in Redis.

One counter per (operation, identity) pair lives in a hash at
``ado:ratelimit:{operation}:{identity}`` with ``count`` and ``window_expiry``
(epoch seconds). Increments use read-then-conditional-write, so a burst of
concurrent callers can overshoot the ceiling by a small margin.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis
import structlog

from libs.common.errors import RateLimitError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitState:
    key: str
    count: int
    window_expiry: float


class RateLimitCounter:
    """Redis-backed fixed-window counter keyed by operation and identity."""

    def __init__(
        self,
        redis_client: redis.Redis,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "ado:ratelimit",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, operation: str, identity: str) -> str:
        return f"{self.key_prefix}:{operation}:{identity.strip().lower()}"

    async def peek(self, operation: str, identity: str) -> RateLimitState:
        key = self._key(operation, identity)
        data = await self.redis.hgetall(key)
        now = self._clock()
        expiry = float(data.get("window_expiry", 0)) if data else 0.0
        if not data or expiry <= now:
            return RateLimitState(key=key, count=0, window_expiry=now + self.window_seconds)
        return RateLimitState(key=key, count=int(data.get("count", 0)), window_expiry=expiry)

    async def hit(self, operation: str, identity: str) -> RateLimitState:
        """
        Count one call, rejecting it when the window's ceiling is already reached.

        Raises:
            RateLimitError: with ``retry_after_seconds`` set to the time left in the window
        """
        key = self._key(operation, identity)
        now = self._clock()
        data = await self.redis.hgetall(key)
        expiry = float(data.get("window_expiry", 0)) if data else 0.0

        if not data or expiry <= now:
            expiry = now + self.window_seconds
            await self.redis.hset(key, mapping={"count": 1, "window_expiry": expiry})
            await self.redis.expire(key, self.window_seconds)
            return RateLimitState(key=key, count=1, window_expiry=expiry)

        count = int(data.get("count", 0))
        if count >= self.max_requests:
            retry_after = max(0.0, expiry - now)
            logger.warning(
                "Rate limit exceeded",
                operation=operation,
                count=count,
                max_requests=self.max_requests,
                retry_after_seconds=round(retry_after, 1),
            )
            raise RateLimitError(provider="local", retry_after_seconds=retry_after)

        new_count = await self.redis.hincrby(key, "count", 1)
        return RateLimitState(key=key, count=int(new_count), window_expiry=expiry)

    async def reset(self, operation: str, identity: str) -> None:
        await self.redis.delete(self._key(operation, identity))
