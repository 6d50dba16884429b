"""
Bounded retry for transient store failures.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from dispatch_core.core.config import Config
from dispatch_core.core.exceptions import TransientStoreError

logger = logging.getLogger(__name__)


async def with_store_retry(
    operation: Callable[[], Awaitable[Any]],
    attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    description: str = "store operation"
) -> Any:
    """
    Run ``operation``, retrying TransientStoreError with exponential backoff.

    Logical errors propagate immediately. After the last attempt the
    TransientStoreError is re-raised to the caller.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Total attempts (default Config.STORE_RETRY_ATTEMPTS)
        backoff_seconds: First delay, doubled after each failure
        description: Label used in log messages
    """
    attempts = max(1, attempts or Config.STORE_RETRY_ATTEMPTS)
    delay = Config.STORE_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStoreError as e:
            if attempt == attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            logger.warning(f"{description} attempt {attempt}/{attempts} failed: {e}; retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            delay *= 2
