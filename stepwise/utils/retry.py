from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import RetryConfig
from ..errors import PersistenceUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await asyncio.sleep(delay)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    description: str,
    config: Optional[RetryConfig] = None,
) -> T:
    """Run an idempotent ``operation``, retrying on ``PersistenceUnavailable``.

    Only use this for reads and for guarded creation. Status transitions must
    re-check stored state between attempts instead.
    """
    config = config or RetryConfig()
    attempt = 0
    while True:
        try:
            return await operation()
        except PersistenceUnavailable as exc:
            attempt += 1
            if attempt >= config.attempts:
                logger.error(f"Giving up on {description} after {attempt} attempts: {exc}")
                raise
            logger.warning(
                f"Transient failure during {description} (attempt {attempt}/{config.attempts}): {exc}"
            )
            await schedule_retry(attempt, base=config.base, jitter=config.jitter)
