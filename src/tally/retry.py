"""Bounded retry with exponential backoff for idempotent collaborator calls.

Only wrap operations that are safe to repeat: progress reads, session writes,
message-log writes. The conditional step commit must never go through here;
a lost commit is resolved by a fresh verify-then-write cycle instead.
"""

import asyncio
import random
import sqlite3
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from litestar.types.protocols import Logger

from tally.errors import CollaboratorUnavailable

T = TypeVar("T")

TRANSIENT_ERROR_PATTERNS = (
    "database is locked",
    "database table is locked",
    "timeout",
    "temporarily unavailable",
    "connection reset",
)


def is_transient_error(exception: BaseException) -> bool:
    """True when the failure is worth another attempt."""
    if isinstance(exception, (CollaboratorUnavailable, httpx.TransportError, asyncio.TimeoutError)):
        return True

    if isinstance(exception, sqlite3.OperationalError):
        message = str(exception).lower()
        return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)

    return False


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    logger: Optional[Logger] = None,
    max_attempts: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
) -> T:
    """Retry an async operation with exponential backoff and jitter.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        operation_name: Name of the operation for logging
        logger: Optional logger for retry warnings
        max_attempts: Maximum number of attempts
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound on any single delay, in seconds

    Returns:
        The operation's result

    Raises:
        The last exception once attempts are exhausted, or immediately for
        non-transient failures.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if attempt == max_attempts or not is_transient_error(e):
                if logger is not None and attempt > 1:
                    logger.warning(f"{operation_name} failed after {attempt} attempts: {e}")
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            # +/-25% jitter so concurrent retries spread out
            delay += delay * 0.25 * (random.random() * 2 - 1)

            if logger is not None:
                logger.info(
                    f"{operation_name} attempt {attempt}/{max_attempts} failed ({e}), retrying in {delay:.3f}s"
                )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")
