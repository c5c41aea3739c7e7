"""Retry utilities for handling transient failures."""

import asyncio
import logging
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, backoff_base: float, backoff_max: float, strategy: str) -> float:
    """Delay before the retry following ``attempt`` (1-based)."""
    if strategy == "fixed":
        return min(backoff_base, backoff_max)
    return min(backoff_base ** (attempt - 1), backoff_max)


def async_retry(
    max_attempts: int = 3,
    backoff_base: float = 2.0,
    backoff_max: float = 60.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    strategy: str = "exponential",
    on_retry: Callable[[Exception, int], None] | None = None,
):
    """Decorator for retrying async functions.

    Args:
        max_attempts: Maximum number of attempts
        backoff_base: Exponent base (exponential) or delay (fixed), in seconds
        backoff_max: Maximum backoff time (seconds)
        exceptions: Tuple of exception types to retry on
        strategy: "exponential" or "fixed"
        on_retry: Optional callback function called on each retry

    Returns:
        Decorated function that retries on failure

    Example:
        @async_retry(max_attempts=3, exceptions=(httpx.TransportError,))
        async def fetch(client, url):
            return await client.get(url)
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            f"{func.__name__} failed after {max_attempts} attempts: {str(e)}"
                        )
                        raise

                    backoff = compute_backoff(attempt, backoff_base, backoff_max, strategy)
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {str(e)}. "
                        f"Retrying in {backoff:.1f}s..."
                    )

                    if on_retry:
                        on_retry(e, attempt)

                    await asyncio.sleep(backoff)

        return wrapper

    return decorator
