"""Retry decorators with exponential backoff for transient storage errors."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar, cast

from loguru import logger
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.utils.errors import is_retryable_error

P = ParamSpec("P")
T = TypeVar("T")


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    retry_on: tuple[type[Exception], ...] | None = None,
    only_transient: bool = True,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator for retrying transient failures with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including the first).
        base_delay: Initial delay between retries in seconds.
        max_delay: Maximum delay between retries in seconds.
        retry_on: Exception types eligible for retry. If None, all exceptions.
        only_transient: Only retry errors ``is_retryable_error`` accepts
            (locked database, timeouts, 503s).

    Returns:
        Decorated function with retry logic.

    Example:
        @retry_with_backoff(retry_on=(sqlite3.OperationalError,))
        def _write(conn: sqlite3.Connection) -> int:
            ...

    """
    retry_exceptions = retry_on or (Exception,)

    def _should_retry(error: BaseException) -> bool:
        if not isinstance(error, retry_exceptions):
            return False
        return not only_transient or is_retryable_error(error)

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        policy = retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
            retry=retry_if_exception(_should_retry),
            reraise=True,
        )

        if asyncio.iscoroutinefunction(func):

            @policy
            @wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                try:
                    result = await func(*args, **kwargs)
                    return cast(T, result)
                except Exception as e:
                    if _should_retry(e):
                        logger.warning(f"Retry attempt for {func.__name__}: {e}")
                    raise

            return cast(Callable[P, T], async_wrapper)

        @policy
        @wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if _should_retry(e):
                    logger.warning(f"Retry attempt for {func.__name__}: {e}")
                raise

        return cast(Callable[P, T], sync_wrapper)

    return decorator
