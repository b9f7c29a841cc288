"""
Retry manager for executing callables with backoff.
"""

import time
from collections.abc import Callable
from typing import Any, TypeVar

from bucketfeed.retry.policy import RetryPolicy
from bucketfeed.utils.logging import get_logger

logger = get_logger("bucketfeed.retry.manager")

T = TypeVar("T")


class RetryManager:
    """
    Re-runs a callable according to a RetryPolicy.

    The sleep function is injectable so tests can observe delays without waiting.

    Examples:
        >>> manager = RetryManager()
        >>> body = manager.execute_sync(client.get_object, policy=policy, name="get_object", Bucket="b", Key="k")
    """

    def __init__(self, sleep: Callable[[float], Any] = time.sleep):
        self._sleep = sleep

    def execute_sync(
        self,
        func: Callable[..., T],
        *args,
        policy: RetryPolicy,
        name: str | None = None,
        **kwargs,
    ) -> T:
        """
        Execute func with retry logic.

        Args:
            func: Callable to execute
            *args: Positional arguments to pass to func
            policy: Retry policy
            name: Operation name for logging
            **kwargs: Keyword arguments to pass to func

        Returns:
            Result of successful execution

        Raises:
            Exception: Final exception after all retries exhausted, or the first
                exception the policy does not consider retryable
        """
        name = name or getattr(func, "__name__", "operation")

        for attempt in range(policy.max_attempts + 1):
            try:
                result = func(*args, **kwargs)
                if attempt > 0:
                    logger.info(f"{name} succeeded after {attempt + 1} attempts")
                return result
            except Exception as e:
                if not policy.should_retry(e, attempt):
                    if attempt > 0:
                        logger.error(f"{name} failed after {attempt + 1} attempts: {e}")
                    raise

                delay = policy.get_delay(attempt)
                logger.warning(f"{name} attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s...")
                self._sleep(delay)

        # Should not reach here, but just in case
        raise RuntimeError(f"Retry logic error for {name}")
