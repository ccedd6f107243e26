"""Retry helper for provider network calls.

Transient faults (network errors, timeouts, 5xx) are retried with
exponential backoff. Provider rate-limit signals are never retried here so
the rate limiter can record the backoff. Anything else fails immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from storagesync.core.config import settings
from storagesync.core.exceptions import BackoffError, TransientProviderError
from storagesync.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """How the retry helper treats an error."""

    TRANSIENT = "TRANSIENT"  # Network errors, timeouts, 5xx -> retry
    RATE_LIMITED = "RATE_LIMITED"  # Provider throttling -> propagate
    PERMANENT = "PERMANENT"  # Auth, not found, bad request -> propagate


def categorize_error(error: BaseException) -> ErrorCategory:
    """Categorize an error to determine retry behavior.

    Args:
        error: The exception raised by a provider call.

    Returns:
        ErrorCategory indicating how to handle the error.
    """
    if isinstance(error, BackoffError):
        return ErrorCategory.RATE_LIMITED
    if isinstance(error, (TransientProviderError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PERMANENT


@dataclass
class RetryConfig:
    """Exponential backoff parameters."""

    max_attempts: int = field(default_factory=lambda: settings.retry_max_attempts)
    initial_delay: float = field(default_factory=lambda: settings.retry_initial_delay)
    max_delay: float = field(default_factory=lambda: settings.retry_max_delay)
    backoff_multiplier: float = field(default_factory=lambda: settings.retry_backoff_multiplier)

    def delay_for(self, retry_number: int) -> float:
        """Delay in seconds before the given retry (0-indexed), capped at max_delay."""
        return min(self.initial_delay * (self.backoff_multiplier ** retry_number), self.max_delay)


async def with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation: str = "provider call",
) -> T:
    """Await ``func()``, retrying transient failures.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        config: Backoff parameters (defaults from settings).
        operation: Description of the operation for logging.

    Returns:
        Result of the first successful attempt.

    Raises:
        BackoffError: Immediately, when the provider signals a rate limit.
        Exception: The last transient error once attempts are exhausted, or
            any non-transient error on first occurrence.
    """
    config = config or RetryConfig()

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func()
        except Exception as e:
            if categorize_error(e) != ErrorCategory.TRANSIENT:
                raise

            if attempt >= config.max_attempts:
                logger.error(
                    "retry_max_attempts_exceeded",
                    operation=operation,
                    attempts=attempt,
                    error=str(e),
                )
                raise

            delay = config.delay_for(attempt - 1)
            logger.warning(
                "retry_scheduled",
                operation=operation,
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
            )
            await asyncio.sleep(delay)

    # max_attempts < 1
    raise ValueError("RetryConfig.max_attempts must be at least 1")
