"""
Backoff policy for outbound network calls.

Provides:
- Deadline: a monotonic wall-clock budget for one request
- BackoffPolicy: exponential backoff with jitter, a retryable-error predicate
  and deadline-aware stopping, built on tenacity
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
)

from libs.common.errors import RateLimitError, TransientUpstreamError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Deadline:
    """Hard wall-clock budget shared by every stage of a request."""

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.budget_seconds = budget_seconds
        self._clock = clock
        self._started_at = clock()
        self._expires_at = self._started_at + budget_seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def elapsed(self) -> float:
        return self._clock() - self._started_at

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def is_retryable(exc: BaseException) -> bool:
    """Only rate limits and transient upstream failures are worth another attempt."""
    return isinstance(exc, (RateLimitError, TransientUpstreamError))


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying upstream call",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(exc) if exc else None,
        error_type=type(exc).__name__ if exc else None,
    )


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry policy injected wherever a network call is made.

    The n-th retry waits ``base_delay * 2**(n-1)`` seconds (capped at
    ``max_delay``) plus up to ``jitter`` seconds of random noise. A
    ``retry_after_seconds`` hint on a rate-limit error raises the wait to at
    least that hint, still capped. When a Deadline is supplied every wait is
    clipped to the remaining budget and retrying stops once less than
    ``min_remaining`` seconds are left.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    jitter: float = 0.5
    min_remaining: float = 0.25
    retry_on: Callable[[BaseException], bool] = is_retryable

    @classmethod
    def from_settings(cls, settings: Any) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.provider_max_retries + 1,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter_seconds,
        )

    def with_max_retries(self, max_retries: int) -> "BackoffPolicy":
        return replace(self, max_attempts=max(0, max_retries) + 1)

    def compute_delay(self, retry_number: int, exc: Optional[BaseException] = None) -> float:
        """Delay before retry number ``retry_number`` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** max(0, retry_number - 1)))
        hint = getattr(exc, "retry_after_seconds", None)
        if hint:
            delay = max(delay, min(float(hint), self.max_delay))
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def _wait(self, deadline: Optional[Deadline]) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = self.compute_delay(retry_state.attempt_number, exc)
            if deadline is not None:
                delay = min(delay, deadline.remaining())
            return max(0.0, delay)

        return wait

    def retrying(self, deadline: Optional[Deadline] = None) -> AsyncRetrying:
        stop = stop_after_attempt(max(1, self.max_attempts))
        if deadline is not None:
            min_remaining = self.min_remaining
            stop = stop_any(stop, lambda _state: deadline.remaining() <= min_remaining)

        return AsyncRetrying(
            stop=stop,
            wait=self._wait(deadline),
            retry=retry_if_exception(self.retry_on),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        deadline: Optional[Deadline] = None,
        **kwargs: Any,
    ) -> T:
        """Call ``fn`` under this policy, re-raising the last error when exhausted."""
        return await self.retrying(deadline)(fn, *args, **kwargs)
