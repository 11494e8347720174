"""Retry and backoff utilities.

Two consumers:
- the delivery dispatcher, which schedules the next attempt of a failed
  notification at ``base * 2**retry_count`` seconds (capped);
- collaborator clients (recipient directory), which retry a call inline.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import TypeVar

import httpx

from app.core.config import Settings
from app.schemas.enums import FailureReason

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Retryable HTTP status codes
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}

# Non-retryable exceptions
NON_RETRYABLE_EXCEPTIONS = (
    ValueError,
    TypeError,
    KeyError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""

    max_retries: int = 3
    backoff_factor: float = 60.0
    max_wait: float = 3600.0
    jitter: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            backoff_factor=settings.retry_base_seconds,
            max_wait=settings.retry_max_seconds,
            jitter=settings.retry_jitter_seconds,
        )

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before the next attempt after ``retry_count`` prior failures."""
        wait = self.backoff_factor * (2 ** retry_count)
        if self.jitter:
            wait += random.uniform(0, self.jitter)
        return min(wait, self.max_wait)

    def next_attempt_at(self, now: datetime, retry_count: int) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds(retry_count))


# Short inline retries for collaborator lookups
INLINE_CALL_POLICY = RetryPolicy(max_retries=2, backoff_factor=0.5, max_wait=5.0, jitter=0.5)


def is_retryable_error(error: Exception) -> bool:
    """Determine if an error is retryable."""
    if isinstance(error, NON_RETRYABLE_EXCEPTIONS):
        return False

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES

    # Connection and timeout errors are retryable
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return True

    return True


def classify_failure(error: Exception) -> FailureReason:
    """Map a provider exception to a delivery failure reason."""
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return FailureReason.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code == 429:
            return FailureReason.RATE_LIMIT_EXCEEDED
        if status_code in (400, 404, 422):
            return FailureReason.INVALID_RECIPIENT
        if status_code >= 500:
            return FailureReason.SERVICE_UNAVAILABLE
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return FailureReason.SERVICE_UNAVAILABLE
    return FailureReason.UNKNOWN


def retry_with_backoff(policy: RetryPolicy | None = None):
    """Decorator that retries async functions with exponential backoff."""
    if policy is None:
        policy = INLINE_CALL_POLICY

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(policy.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_error(e):
                        logger.warning(f"Non-retryable error in {func.__name__}: {e}")
                        raise

                    if attempt >= policy.max_retries:
                        logger.error(
                            f"{func.__name__} failed after {policy.max_retries + 1} attempts: {e}"
                        )
                        raise

                    wait_time = policy.backoff_seconds(attempt)
                    logger.warning(
                        f"{func.__name__} attempt {attempt + 1}/{policy.max_retries + 1} "
                        f"failed: {e}. Retrying in {wait_time:.1f}s..."
                    )
                    await asyncio.sleep(wait_time)

            raise RuntimeError("Unexpected retry failure")

        return wrapper

    return decorator

