# listing_sync/services/retry.py
"""
Retry with backoff, shared by the HTTP request layer and the page layer of
the pagination fetcher.

A RetryPolicy says how many extra attempts to make, which exceptions are
worth another attempt, and how long to wait before each one. ``with_retry``
runs a coroutine factory under a policy; ``retrying`` is the decorator form.
"""
import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from listing_sync.core.exceptions import CatalogAPIError, CatalogServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """TransientNetwork and RetryableServer errors carry retryable=True"""
    return isinstance(exc, CatalogAPIError) and exc.retryable


def is_catalog_failure(exc: BaseException) -> bool:
    return isinstance(exc, CatalogServiceError)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    retry_on: Callable[[BaseException], bool] = is_retryable
    name: str = "request"

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (0-based)."""
        return self.base_delay * (self.factor ** attempt)

    def schedule(self) -> list:
        return [self.delay_for(attempt) for attempt in range(self.max_retries)]


def request_policy(max_retries: int = 3, base_delay: float = 1.0) -> RetryPolicy:
    """Exponential backoff (1s, 2s, 4s...) for retryable HTTP failures."""
    return RetryPolicy(max_retries=max_retries, base_delay=base_delay, factor=2.0,
                       retry_on=is_retryable, name="request")


def page_policy(max_retries: int = 2, delay: float = 1.0) -> RetryPolicy:
    """Fixed delay between attempts; any catalog failure is worth another try."""
    return RetryPolicy(max_retries=max_retries, base_delay=delay, factor=1.0,
                       retry_on=is_catalog_failure, name="page")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
) -> T:
    """
    Await ``operation()`` until it succeeds, the error is not retryable, or
    the policy's retries are exhausted. The last exception propagates.
    """
    attempts = policy.max_retries + 1
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_retries or not policy.retry_on(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (%s). Retrying in %.2fs (attempt %s/%s, %s policy)",
                description,
                exc,
                delay,
                attempt + 1,
                attempts,
                policy.name,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable: retry loop exited without result")


def retrying(policy: RetryPolicy, description: str = ""):
    """Decorator form of with_retry for coroutine functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                policy,
                description or func.__name__,
            )

        return wrapper

    return decorator
