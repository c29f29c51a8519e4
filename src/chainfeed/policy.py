"""
Applies the configured ErrorPolicy to a single fetch.

suppress:  log and return None
propagate: re-raise
retry:     back off and try again, then suppress
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from .config import ErrorPolicy, RetryPolicy
from .errors import FeedError

logger = structlog.get_logger()

T = TypeVar("T")


async def guarded(
    fetch: Callable[[], Awaitable[T]],
    policy: ErrorPolicy = ErrorPolicy.SUPPRESS,
    retry: Optional[RetryPolicy] = None,
    event: str = "Fetch failed",
    **context,
) -> Optional[T]:
    """
    Run fetch() under an error policy.

    Only FeedError is handled; anything else propagates. `context` is
    added to every log line.
    """
    retry = retry or RetryPolicy()
    attempts = retry.max_retries + 1 if policy == ErrorPolicy.RETRY else 1

    for attempt in range(attempts):
        try:
            return await fetch()
        except FeedError as e:
            if policy == ErrorPolicy.PROPAGATE:
                raise

            if attempt + 1 < attempts:
                wait_time = retry.delay(attempt)
                logger.warning(
                    f"{event}, retrying",
                    attempt=attempt + 1,
                    max_retries=retry.max_retries,
                    wait_time=wait_time,
                    error=str(e),
                    **context,
                )
                await asyncio.sleep(wait_time)
                continue

            logger.error(event, error=str(e), error_type=type(e).__name__, **context)

    return None
