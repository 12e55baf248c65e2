"""Retry utilities for handling transient failures."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base doubled per attempt, capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def async_retry_result(
    should_retry: Callable[[Any], bool],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    on_retry: Callable[[Any, int], None] | None = None,
):
    """Decorator retrying an async function while its *result* is retryable.

    Unlike exception-driven retries, the wrapped function reports failure
    structurally (e.g. a command result with a non-zero exit code) and
    ``should_retry`` decides whether that result is transient.

    Args:
        should_retry: Predicate on the returned value
        max_attempts: Maximum number of attempts
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound for any single delay (seconds)
        on_retry: Optional callback called with (result, attempt) before sleeping

    Returns:
        Decorated function returning the first non-retryable result, or the
        last result once attempts are exhausted

    Example:
        @async_retry_result(lambda r: r.exit_code != 0 and is_network_error(r.stderr))
        async def pull(ref):
            return await docker.run(host, ["pull", ref])
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            result = await func(*args, **kwargs)
            for attempt in range(1, max_attempts):
                if not should_retry(result):
                    return result

                delay = backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    f"{func.__name__} attempt {attempt}/{max_attempts} hit a transient failure. "
                    f"Retrying in {delay:.1f}s..."
                )
                if on_retry:
                    on_retry(result, attempt)
                await asyncio.sleep(delay)
                result = await func(*args, **kwargs)

            if should_retry(result):
                logger.error(f"{func.__name__} still failing after {max_attempts} attempts")
            return result

        return wrapper

    return decorator
