"""
Exponential Backoff Retry Strategy

Implements exponential backoff for retrying transient provider failures.
"""

import asyncio
import random
from typing import Any, Callable, Optional, TypeVar

from ..errors import should_retry
from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class ExponentialBackoff:
    """
    Exponential backoff strategy with jitter.

    Features:
    - Configurable base delay and max delay
    - Exponential growth: delay = base * (2 ** retry_count)
    - Jitter to prevent thundering herd
    - Only retryable errors are retried; others propagate immediately
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = True,
        retry_predicate: Optional[Callable[[Exception], bool]] = None,
    ):
        """
        Initialize backoff strategy.

        Args:
            base_delay: Initial delay in seconds
            max_delay: Maximum delay in seconds
            jitter: Whether to add random jitter
            retry_predicate: Decides whether an exception is worth retrying
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retry_predicate = retry_predicate or should_retry

    def get_delay(self, retry_count: int) -> float:
        """Delay in seconds before retry number ``retry_count`` (0-based)."""
        delay = min(self.base_delay * (2 ** retry_count), self.max_delay)

        # Add jitter (±25%)
        if self.jitter:
            jitter_factor = 0.75 + random.random() * 0.5  # 0.75 to 1.25
            delay = delay * jitter_factor

        return delay

    async def wait(self, retry_count: int) -> float:
        """
        Wait for exponentially increasing delay.

        Args:
            retry_count: Current retry attempt (0-based)

        Returns:
            Actual delay waited (in seconds)
        """
        delay = self.get_delay(retry_count)
        logger.debug(f"Exponential backoff: waiting {delay:.2f}s (retry {retry_count})")
        await asyncio.sleep(delay)
        return delay

    async def with_retry(
        self,
        func: Callable[..., Any],
        *args,
        max_retries: int = 3,
        **kwargs
    ) -> Any:
        """
        Execute function with exponential backoff retry.

        Args:
            func: Async function to execute
            *args: Positional arguments for func
            max_retries: Maximum attempts (including the first)
            **kwargs: Keyword arguments for func

        Returns:
            Result from func

        Raises:
            Exception: The last error once attempts are exhausted, or the first
                non-retryable error
        """
        last_error = None
        attempts = max(1, max_retries)

        for attempt in range(attempts):
            try:
                result = await func(*args, **kwargs)

                if attempt > 0:
                    logger.debug(f"Operation succeeded on retry {attempt + 1}")

                return result

            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e

                if not self.retry_predicate(e):
                    raise

                if attempt < attempts - 1:
                    logger.warning(
                        f"Operation failed (attempt {attempt + 1}/{attempts}): {e}"
                    )
                    await self.wait(attempt)
                else:
                    logger.error(
                        f"Operation failed after {attempts} attempts: {e}"
                    )

        if last_error:
            raise last_error

        raise RuntimeError("Operation failed: no error recorded")
