"""
Resilience - Retries and timeouts for outbound calls

Suggestion requests live under a hard latency ceiling, so retries are
short and few: one quick retry on transient transport errors at most.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from promptlens_core.errors import SuggestionTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 2
    base_delay: float = 0.1
    max_delay: float = 0.5
    retry_exceptions: tuple = (Exception,)
    exclude_exceptions: tuple = ()


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Exponential backoff with jitter before the next retry.

    Args:
        attempt: Current attempt number (1-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.base_delay * (2 ** (attempt - 1)) * (0.5 + random.random())
    return min(delay, config.max_delay)


def should_retry(exception: Exception, config: RetryConfig) -> bool:
    """Check if exception should trigger retry."""
    if config.exclude_exceptions and isinstance(exception, config.exclude_exceptions):
        return False
    return isinstance(exception, config.retry_exceptions)


def retry_async(config: Optional[RetryConfig] = None):
    """
    Decorator for retrying async functions.

    Cancellation is never retried.

    Example:
        @retry_async(RetryConfig(retry_exceptions=(httpx.TransportError,)))
        async def post(...):
            ...
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not should_retry(e, config) or attempt >= config.max_attempts:
                        raise

                    delay = calculate_delay(attempt, config)
                    logger.info(
                        f"Retry {attempt}/{config.max_attempts} for {func.__name__} "
                        f"in {delay:.2f}s: {e}"
                    )
                    await asyncio.sleep(delay)
            raise RuntimeError("retry_async exhausted without result")

        return wrapper

    return decorator


async def with_timeout(awaitable: Awaitable[T], timeout_ms: int) -> T:
    """
    Await with a hard ceiling.

    Raises:
        SuggestionTimeoutError: if the ceiling elapses (the awaitable is cancelled)
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        raise SuggestionTimeoutError(timeout_ms=timeout_ms) from None

