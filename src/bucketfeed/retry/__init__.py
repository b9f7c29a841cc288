"""
Retry framework for transient object store and stream failures.
"""

from bucketfeed.retry.manager import RetryManager
from bucketfeed.retry.policy import (
    NO_RETRY_POLICY,
    RetryPolicy,
    broken_pipe_retry_policy,
    fetch_retry_policy,
)

__all__ = [
    "RetryPolicy",
    "RetryManager",
    "NO_RETRY_POLICY",
    "fetch_retry_policy",
    "broken_pipe_retry_policy",
]
