"""Retry-with-backoff for DataClient calls.

Operations return a ClientResult instead of raising, so "failure" here
means `result.error is not None`. Delay before attempt n+1 is
base_delay * 2**(n-1): 1s, 2s, 4s ... with the default settings.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from worktally.config import settings
from worktally.services.data_client import ClientResult

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay to wait after failed attempt number `attempt` (1-based)."""
    return base_delay * (2 ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[ClientResult]],
    description: str,
    attempts: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ClientResult:
    """Run `operation` until it succeeds or `attempts` is used up.

    Returns the first successful result, or the last failed one.
    """
    attempts = attempts or settings.provisioning_retry_attempts
    base_delay = settings.provisioning_retry_base_delay if base_delay is None else base_delay

    result = ClientResult()
    for attempt in range(1, attempts + 1):
        result = await operation()
        if result.ok:
            if attempt > 1:
                logger.info(f"{description} succeeded on attempt {attempt}/{attempts}")
            return result

        logger.warning(
            f"{description} failed (attempt {attempt}/{attempts}): {result.error}",
            extra={"error_code": result.error.code, "attempt": attempt},
        )
        if attempt < attempts:
            await sleep(backoff_delay(attempt, base_delay))

    logger.error(f"{description} failed after {attempts} attempts: {result.error}")
    return result
