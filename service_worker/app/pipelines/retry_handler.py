"""Retry handling with exponential backoff.

``RetryHandler`` retries short transient failures in-process (a dropped
connection to the inference server). ``backoff_delay`` computes the delay a
worker hides a failed job for before the queue redelivers it.
"""

import asyncio
import random
from typing import Any, Callable, Tuple, Type

import structlog

logger = structlog.get_logger("retry_handler")


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """Delay after the ``attempt``-th failure (0-based)."""
    # Exponential backoff: base_delay * (exponential_base ^ attempt)
    delay = min(base_delay * (exponential_base ** max(attempt, 0)), max_delay)

    if jitter:
        jitter_range = delay * 0.1
        delay += random.uniform(-jitter_range, jitter_range)

    return max(delay, 0.1)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError)
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions


class RetryHandler:
    """Handles retry logic with exponential backoff."""

    def __init__(self, config: RetryConfig):
        self.config = config

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Await ``func`` until it succeeds or attempts run out."""
        for attempt in range(self.config.max_attempts):
            try:
                result = await func(*args, **kwargs)
            except self.config.retryable_exceptions as e:
                if attempt == self.config.max_attempts - 1:
                    logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=self.config.max_attempts,
                        error=str(e)
                    )
                    raise

                delay = self._calculate_delay(attempt)
                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_attempts,
                    delay_seconds=delay,
                    error=str(e)
                )
                await asyncio.sleep(delay)
                continue

            if attempt > 0:
                logger.info(
                    "Operation succeeded after retry",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_attempts
                )
            return result

        raise RuntimeError("RetryHandler configured with max_attempts < 1")

    def _calculate_delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            self.config.base_delay,
            self.config.max_delay,
            self.config.exponential_base,
            self.config.jitter,
        )
