"""Retry utilities for handling transient failures.

Two pieces live here:

    backoff_delay: The capped exponential delay used between whole-pipeline
        attempts (``min(base * 2**(attempt - 1), cap)``).
    async_retry: Decorator that retries an idempotent async call, used by
        the HTTP providers for status reads.

Example:
    >>> backoff_delay(1, base=1.0, cap=30.0)
    1.0
    >>> backoff_delay(6, base=1.0, cap=30.0)
    30.0
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay in seconds to wait after failed attempt number ``attempt``.

    Args:
        attempt: 1-based number of the attempt that just failed
        base: Delay after the first failure
        cap: Upper bound on any single delay

    Returns:
        ``min(base * 2 ** (attempt - 1), cap)``
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return min(base * (2 ** (attempt - 1)), cap)


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls before giving up.
        base_delay: Delay after the first failure, doubled per attempt.
        max_delay: Cap on any single delay.
        exceptions: Exception types that trigger a retry. Anything else
            propagates immediately.

    Raises:
        The last caught exception once attempts are exhausted.

    Example:
        >>> @async_retry(max_attempts=3, exceptions=(httpx.TransportError,))
        ... async def get_deploy(deploy_id: str) -> dict:
        ...     ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
