"""Retry policies with exponential backoff.

The fetcher makes exactly one attempt per call; callers wrap it with the
policy defined here so retry behaviour lives in one place.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.retry import retry_base

from harvester.config import settings
from harvester.core.exceptions import FetchFailed, RateLimiterUnavailable

logger = structlog.get_logger(__name__)


def is_retryable_fetch_error(exc: BaseException) -> bool:
    """Transient failures worth another attempt within the same run."""
    if isinstance(exc, FetchFailed):
        return exc.retryable
    return isinstance(exc, RateLimiterUnavailable)


def log_before_sleep(retry_state: RetryCallState) -> None:
    """structlog-friendly replacement for tenacity.before_sleep_log."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retrying_after_error",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(exc),
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: min_wait, 2*min_wait, ... capped at max_wait."""

    max_attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 30.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.FETCH_MAX_ATTEMPTS,
            min_wait=settings.FETCH_RETRY_MIN_WAIT_SECONDS,
            max_wait=settings.FETCH_RETRY_MAX_WAIT_SECONDS,
        )

    def retrying(self, retry: Optional[retry_base] = None) -> AsyncRetrying:
        """Build a fresh AsyncRetrying (tenacity controllers are stateful)."""
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            retry=retry or retry_if_exception(is_retryable_fetch_error),
            before_sleep=log_before_sleep,
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await fn(*args, **kwargs), retrying transient fetch failures.

        Raises:
            The last exception once attempts are exhausted, or immediately
            for non-retryable errors
        """
        return await self.retrying()(fn, *args, **kwargs)
