"""Retry logic with exponential backoff for HTTP calls to gate signal services."""

import logging
import random
import time
from typing import Any, Callable, Optional, Type, Tuple

import requests

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Tuple[Type[Exception], ...]] = None,
    ):
        """
        Initialize retry configuration.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds
            exponential_base: Base for exponential backoff (2.0 = double each time)
            jitter: Add random jitter to delays
            retryable_exceptions: Exception types that should trigger retry
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or (
            requests.ConnectionError,
            requests.Timeout,
        )

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate delay for given attempt number.

        Args:
            attempt: Current retry attempt (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * 0.25  # +/- 25%
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return delay


def retry_sync(
    func: Callable[..., Any],
    *args,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Any] = time.sleep,
    **kwargs
) -> Any:
    """
    Retry sync function with exponential backoff.

    Args:
        func: Function to retry
        *args: Positional arguments for func
        config: Retry configuration (uses defaults if None)
        sleep: Sleep function; gates pass one that raises once the run is cancelled
        **kwargs: Keyword arguments for func

    Returns:
        Result from func

    Raises:
        Last exception if all retries exhausted
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt >= config.max_retries:
                logger.error(f"Retry exhausted after {attempt + 1} attempts: {e}")
                raise

            delay = config.calculate_delay(attempt)
            logger.warning(
                f"Attempt {attempt + 1}/{config.max_retries + 1} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            sleep(delay)


DEFAULT_SIGNAL_RETRY_CONFIG = RetryConfig(max_retries=3, base_delay=1.0)
