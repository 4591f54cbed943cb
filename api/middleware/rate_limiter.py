"""
Per-user rate limiting for expensive endpoints.

Counters live in Redis (see libs.caching.rate_limit) so the ceiling holds
across workers. Without Redis the limiter is a no-op.
"""

from typing import Optional

import structlog
from fastapi import HTTPException, status

from libs.caching.rate_limit import RateLimitCounter
from libs.common.errors import RateLimitError

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Fixed window limiter keyed by (operation, user)."""

    def __init__(self, counter: Optional[RateLimitCounter], operation: str = "chat", enabled: bool = True):
        self.counter = counter
        self.operation = operation
        self.enabled = enabled and counter is not None

    async def check_rate_limit(self, identity: str) -> None:
        """
        Count one request for ``identity``.

        Raises:
            HTTPException: 429 if rate limit exceeded
        """
        if not self.enabled:
            return

        try:
            state = await self.counter.hit(self.operation, identity)
        except RateLimitError as e:
            retry_after = max(1, int(e.retry_after_seconds or self.counter.window_seconds))
            logger.info(
                "Request rejected by rate limiter",
                operation=self.operation,
                identity=identity,
                window_seconds=self.counter.window_seconds,
                retry_after_seconds=retry_after,
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error_code": e.code,
                    "message": e.user_message,
                    "retry_after_seconds": retry_after,
                },
                headers={"Retry-After": str(retry_after)},
            )

        logger.debug(
            "Rate limit check passed",
            operation=self.operation,
            identity=identity,
            request_count=state.count,
            max_requests=self.counter.max_requests,
        )
