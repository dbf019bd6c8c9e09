"""
Bounded retry with exponential backoff.

Usage:
    config = RetryConfig(max_retries=2, base_delay=0.2, retry_condition=is_transient)
    result = await retry_async(call_provider, payload, config=config)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Optional,
    Type,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Retries after the first attempt (0 means a single attempt)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) applied to delays
        retryable_exceptions: Exception types that trigger retries
        non_retryable_exceptions: Exception types never retried (checked first)
        retry_condition: Optional predicate deciding whether to retry
    """

    max_retries: int = 2
    base_delay: float = 0.2
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()
    retry_condition: Optional[Callable[[BaseException], bool]] = None

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        if self.retry_condition is not None:
            return self.retry_condition(exception)
        return isinstance(exception, self.retryable_exceptions)


@dataclass
class RetryStats:
    """Statistics about one retried call."""

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Execute an async function with retry logic.

    Non-retryable errors propagate unchanged on the attempt that raised them.

    Raises:
        RetryExhausted: If all attempts fail with retryable errors
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        stats.attempts = attempt + 1
        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result
        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if not config.should_retry(e):
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay
            logger.warning(
                "Retry %d/%d for %s after %s: %s. Waiting %.2fs",
                attempt + 1,
                config.max_retries,
                name,
                type(e).__name__,
                e,
                delay,
            )
            await sleep(delay)

    raise RetryExhausted(
        f"All {config.max_attempts} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception
