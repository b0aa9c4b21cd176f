"""Retry helpers with exponential backoff."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from listing_search.errors import TransientBackendError

logger = structlog.get_logger()

T = TypeVar("T")


def calculate_backoff(attempt: int, base: float = 0.5, cap: float = 8.0) -> float:
    """Calculate exponential backoff delay in seconds.

    Args:
        attempt: Current attempt number (0-indexed).
        base: Delay of the first retry.
        cap: Upper bound for any single delay.

    Returns:
        Delay in seconds.
    """
    return min(base * 2**attempt, cap)


def should_retry(attempt: int, max_retries: int) -> bool:
    """Check whether another retry is allowed after a failed attempt."""
    return attempt < max_retries


class RetryPolicy:
    """Bounded retries of transient backend failures."""

    def __init__(self, max_retries: int = 3, base: float = 0.5, cap: float = 8.0) -> None:
        """Initialize retry policy.

        Args:
            max_retries: Retries after the first attempt.
            base: Delay of the first retry.
            cap: Upper bound for any single delay.
        """
        self.max_retries = max_retries
        self.base = base
        self.cap = cap

    def delay(self, attempt: int) -> float:
        """Backoff before retry number attempt + 1."""
        return calculate_backoff(attempt, self.base, self.cap)

    async def run(
        self,
        callback: Callable[[], Awaitable[T]],
        operation: str = "operation",
    ) -> T:
        """Run an async operation, retrying transient failures.

        Args:
            callback: Zero-argument coroutine factory.
            operation: Operation name for logging.

        Returns:
            Result of the callback.

        Raises:
            TransientBackendError: If every attempt failed.
        """
        attempt = 0
        while True:
            try:
                return await callback()
            except TransientBackendError as exc:
                if not should_retry(attempt, self.max_retries):
                    logger.error(
                        "retries_exhausted",
                        operation=operation,
                        attempts=attempt + 1,
                        error=str(exc),
                    )
                    raise
                delay = self.delay(attempt)
                logger.warning(
                    "operation_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                attempt += 1
