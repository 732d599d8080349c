"""Bounded exponential backoff for provider fetch functions.

Retries belong to the fetch function, never to the orchestrator, so the
orchestrator's admission and coalescing rules run once per logical fetch.
"""

import asyncio
import random
from functools import wraps
from typing import Awaitable, Callable, Optional

import structlog

from content_engine.errors import ProviderFetchFailed
from content_engine.providers.registry import FetchFunction

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def is_retryable(error: Exception) -> bool:
    if isinstance(error, ProviderFetchFailed):
        if error.status_code is None:
            # Connection never established.
            return error.executed is False
        return error.status_code in RETRYABLE_STATUS
    return isinstance(error, (ConnectionError, OSError))


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float = 0.1) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    return delay + random.random() * delay * jitter


def with_retries(
    fetch_fn: FetchFunction,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 5.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> FetchFunction:
    """Wrap a fetch function with bounded exponential backoff.

    Args:
        fetch_fn: Fetch coroutine function to wrap
        max_attempts: Total attempts including the first
        base_delay: Delay before the first retry in seconds
        max_delay: Cap on any single delay
        sleep: Sleep coroutine, replaceable in tests

    Returns:
        Wrapped fetch function raising the last error once attempts run out
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    sleep = sleep or asyncio.sleep

    @wraps(fetch_fn)
    async def wrapper(provider, keywords, count):
        for attempt in range(1, max_attempts + 1):
            try:
                return await fetch_fn(provider, keywords, count)
            except Exception as e:
                if attempt == max_attempts or not is_retryable(e):
                    raise
                delay = backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    "provider_retry",
                    provider=provider,
                    attempt=attempt,
                    delay=round(delay, 3),
                    error=str(e),
                )
                await sleep(delay)

    return wrapper
