"""Tenacity retry wrapper for storage calls, driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import PersistenceError

T = TypeVar("T")


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Usage::

        @with_retry(settings.retry)
        async def write(row: Row) -> None: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        reraise=True,
    )


async def storage_call(
    config: RetryConfig,
    operation: str,
    call: Callable[[], Awaitable[T]],
) -> T:
    """Run a storage call with backoff; exhaustion becomes ``PersistenceError``."""

    @with_retry(config)
    async def _attempt() -> T:
        return await call()

    try:
        return await _attempt()
    except Exception as exc:
        raise PersistenceError(f"{operation} failed: {exc}") from exc
