"""
Retry policies for the autopilot engine.
Implements exponential backoff with jitter for optimistic-write conflicts
and retryable collaborator failures.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar


logger = logging.getLogger("retry")

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 3600.0
    exponential_factor: float = 2.0
    jitter_factor: float = 0.1

    def calculate_delay(self, retry_count: int) -> float:
        """Calculate delay with exponential backoff and jitter."""
        delay = min(
            self.base_delay * (self.exponential_factor ** retry_count),
            self.max_delay
        )
        jitter = delay * self.jitter_factor * random.uniform(-1, 1)
        return max(0, delay + jitter)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    should_retry: Callable[[BaseException], bool] = lambda exc: True,
    operation_name: str = "operation",
) -> T:
    """
    Await operation(), retrying on the given exception types.

    The last exception is re-raised once max_retries is exhausted or
    should_retry() declines it.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= policy.max_retries or not should_retry(exc):
                raise
            delay = policy.calculate_delay(attempt)
            attempt += 1
            logger.info("Retry %d/%d for %s in %.2fs: %s",
                        attempt, policy.max_retries, operation_name, delay, exc)
            await asyncio.sleep(delay)
