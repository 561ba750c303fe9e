"""
Retry Wrapper

Bounded retry for external calls made by nodes (AI completions) and for
transient storage failures. Supports a fixed delay between attempts or
exponential backoff with optional jitter.
"""

import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from ..exceptions import AppException
from ..logging_config import get_logger

logger = get_logger(__name__)


def _should_retry(error: Exception, exceptions: Optional[Tuple[Type[Exception], ...]]) -> bool:
    if exceptions:
        return isinstance(error, exceptions)
    if isinstance(error, AppException):
        return error.retryable
    return True


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    operation: Optional[str] = None,
) -> Any:
    """
    Retry a coroutine function with exponential backoff

    Without ``exceptions``, AppException instances are retried only when
    ``retryable`` is set; any other exception is retried.

    Args:
        func: Zero-argument async function to call
        max_retries: Retry attempts after the first call
        base_delay: Initial delay in seconds
        max_delay: Maximum delay in seconds
        exponential_base: Growth factor per attempt (1.0 gives a fixed delay)
        jitter: Scale each delay by a random factor in [0.5, 1.0)
        exceptions: Exception types to retry on
        operation: Name used in log events

    Returns:
        Result of the first successful call

    Raises:
        The last exception if all attempts fail
    """
    name = operation or getattr(func, "__name__", "operation")

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not _should_retry(e, exceptions) or attempt == max_retries:
                logger.error(
                    "Operation failed after retries",
                    operation=name,
                    attempts=attempt + 1,
                    error=str(e),
                )
                raise

            delay = min(base_delay * (exponential_base ** attempt), max_delay)
            if jitter:
                delay = delay * (0.5 + random.random() * 0.5)

            logger.warning(
                "Operation failed, retrying",
                operation=name,
                attempt=attempt + 1,
                max_retries=max_retries,
                delay=round(delay, 2),
                error=str(e),
            )
            await asyncio.sleep(delay)


async def retry_with_delay(
    func: Callable[[], Awaitable[Any]],
    max_retries: int,
    delay: float = 1.0,
    operation: Optional[str] = None,
) -> Any:
    """Retry on any exception with a fixed delay; return the first success or raise the last failure."""
    return await retry_with_backoff(
        func,
        max_retries=max_retries,
        base_delay=delay,
        max_delay=delay,
        exponential_base=1.0,
        jitter=False,
        exceptions=(Exception,),
        operation=operation,
    )


def with_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator for retrying async functions with exponential backoff

    Example:
        @with_retry(max_retries=3, base_delay=0.5, exceptions=(OperationalError,))
        async def save(self, record):
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            async def call_func():
                return await func(*args, **kwargs)

            return await retry_with_backoff(
                call_func,
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter,
                exceptions=exceptions,
                operation=func.__qualname__,
            )

        return wrapper
    return decorator
