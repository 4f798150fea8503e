# backend/governor/utils/retry_logic.py
"""
Retry with exponential backoff for transient provider failures.

Only transport-level problems are retried. A bad response body (invalid
JSON from the judge, empty completion) is not transient and fails at once.
"""

import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type

from governor.utils.logger import logger


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay before retry `attempt` (0-indexed)."""
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter:
        delay *= (0.5 + random.random())
    return delay


def retry_async(
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
):
    """
    Decorator for coroutines.

    Example:
        @retry_async(max_retries=2, exceptions=(httpx.TransportError,))
        async def embed(text): ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(f"[Retry] {func.__name__} failed after {max_retries + 1} attempts: {e}")
                        raise

                    delay = calculate_backoff(attempt, base_delay, max_delay)
                    logger.warning(
                        f"[Retry] {func.__name__} failed (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    if on_retry:
                        on_retry(e, attempt)
                    await asyncio.sleep(delay)

        return wrapper
    return decorator
