"""
Retry policy configuration for object fetches and worker-level I/O failures.
"""

import random
from dataclasses import dataclass
from typing import Optional, Tuple, Type


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for retry behavior when an operation fails.

    Implements exponential backoff with optional jitter. A fixed backoff is an
    exponential policy with ``exponential_base=1.0``.

    Examples:
        >>> # Exponential backoff for network fetches
        >>> policy = RetryPolicy(max_attempts=5, initial_delay=0.5, max_delay=16.0)

        >>> # Fixed one second sleep between attempts
        >>> policy = RetryPolicy(
        ...     max_attempts=10,
        ...     initial_delay=1.0,
        ...     exponential_base=1.0,
        ...     jitter=False,
        ...     retryable_exceptions=(BrokenPipeError,),
        ... )
    """

    # Maximum number of retry attempts (total executions = max_attempts + 1)
    max_attempts: int = 3

    # Initial delay before first retry (seconds)
    initial_delay: float = 1.0

    # Maximum delay between retries (seconds)
    max_delay: float = 30.0

    # Exponential backoff base (delay = initial_delay * base^attempt)
    exponential_base: float = 2.0

    # Add random jitter to prevent thundering herd (±25% of delay)
    jitter: bool = True

    # Only retry these exception types (None = retry all exceptions)
    retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None

    def __post_init__(self):
        """Validate configuration."""
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        if self.exponential_base < 1.0:
            raise ValueError("exponential_base must be >= 1.0")

    def should_retry(self, exception: BaseException, attempt: int) -> bool:
        """
        Determine if we should retry after this exception.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if we should retry, False otherwise
        """
        if attempt >= self.max_attempts:
            return False

        if self.retryable_exceptions is not None:
            return isinstance(exception, self.retryable_exceptions)

        return True

    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before next retry using exponential backoff.

        Implements: delay = min(initial_delay * base^attempt, max_delay)
        With optional jitter: delay * random(0.75, 1.25)

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = self.initial_delay * (self.exponential_base**attempt)

        if self.jitter:
            delay *= random.uniform(0.75, 1.25)

        # Cap at max_delay (applied after jitter so max_delay is a hard upper bound)
        return min(delay, self.max_delay)


def fetch_retry_policy(max_attempts: int, retryable_exceptions: Tuple[Type[BaseException], ...]) -> RetryPolicy:
    """Exponential policy used for transient network failures while fetching an object."""
    return RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=0.5,
        max_delay=16.0,
        exponential_base=2.0,
        jitter=True,
        retryable_exceptions=retryable_exceptions,
    )


def broken_pipe_retry_policy(max_attempts: int) -> RetryPolicy:
    """Fixed one second policy used by workers when a stream breaks mid-read."""
    return RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=1.0,
        max_delay=1.0,
        exponential_base=1.0,
        jitter=False,
        retryable_exceptions=(BrokenPipeError,),
    )


NO_RETRY_POLICY = RetryPolicy(max_attempts=0, initial_delay=0.0, max_delay=0.0, jitter=False)
