"""
Tests for the retry framework.
"""

from unittest.mock import MagicMock

import pytest

from bucketfeed.retry import (
    NO_RETRY_POLICY,
    RetryManager,
    RetryPolicy,
    broken_pipe_retry_policy,
    fetch_retry_policy,
)


class TestRetryPolicy:
    """Tests for RetryPolicy configuration."""

    def test_default_values(self):
        """Test default policy values."""
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.initial_delay == 1.0
        assert policy.max_delay == 30.0
        assert policy.exponential_base == 2.0
        assert policy.jitter is True
        assert policy.retryable_exceptions is None

    def test_validation_max_attempts(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=-1)

    def test_validation_initial_delay(self):
        with pytest.raises(ValueError, match="initial_delay"):
            RetryPolicy(initial_delay=-1.0)

    def test_validation_max_delay(self):
        with pytest.raises(ValueError, match="max_delay"):
            RetryPolicy(initial_delay=10.0, max_delay=5.0)

    def test_should_retry_within_attempts(self):
        policy = RetryPolicy(max_attempts=2)
        assert policy.should_retry(RuntimeError(), 0)
        assert policy.should_retry(RuntimeError(), 1)
        assert not policy.should_retry(RuntimeError(), 2)

    def test_should_retry_exception_filter(self):
        """Test that only listed exception types are retried."""
        policy = RetryPolicy(retryable_exceptions=(ConnectionError,))
        assert policy.should_retry(ConnectionResetError(), 0)
        assert not policy.should_retry(ValueError(), 0)

    def test_get_delay_exponential(self):
        policy = RetryPolicy(initial_delay=1.0, exponential_base=2.0, jitter=False)
        assert policy.get_delay(0) == 1.0
        assert policy.get_delay(1) == 2.0
        assert policy.get_delay(3) == 8.0

    def test_get_delay_max_cap(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=5.0, jitter=False)
        assert policy.get_delay(10) == 5.0

    def test_get_delay_jitter(self):
        policy = RetryPolicy(initial_delay=4.0, max_delay=100.0, jitter=True)
        delays = {policy.get_delay(0) for _ in range(20)}
        assert all(3.0 <= d <= 5.0 for d in delays)


class TestPresetPolicies:
    """Tests for the fetch and broken-pipe policies."""

    def test_fetch_policy_backs_off_exponentially(self):
        policy = fetch_retry_policy(5, (TimeoutError,))
        assert policy.max_attempts == 5
        assert policy.retryable_exceptions == (TimeoutError,)
        assert policy.max_delay == 16.0
        assert 0.375 <= policy.get_delay(0) <= 0.625

    def test_broken_pipe_policy_is_fixed(self):
        """Test a constant one second delay for every attempt."""
        policy = broken_pipe_retry_policy(10)
        assert [policy.get_delay(attempt) for attempt in range(10)] == [1.0] * 10
        assert policy.should_retry(BrokenPipeError(), 0)
        assert not policy.should_retry(ConnectionResetError(), 0)

    def test_no_retry_policy(self):
        assert not NO_RETRY_POLICY.should_retry(RuntimeError(), 0)


class TestRetryManager:
    """Tests for RetryManager.execute_sync."""

    def test_execute_sync_success(self):
        func = MagicMock(return_value="ok")
        manager = RetryManager(sleep=MagicMock())

        assert manager.execute_sync(func, 1, policy=RetryPolicy(), key="v") == "ok"
        func.assert_called_once_with(1, key="v")

    def test_execute_sync_with_retry(self):
        """Test that failures are retried with the policy's delays."""
        func = MagicMock(side_effect=[RuntimeError("1"), RuntimeError("2"), "ok"])
        sleeps = []
        manager = RetryManager(sleep=sleeps.append)

        result = manager.execute_sync(func, policy=RetryPolicy(max_attempts=3, jitter=False), name="op")

        assert result == "ok"
        assert sleeps == [1.0, 2.0]

    def test_execute_sync_exhausted_reraises_last_error(self):
        func = MagicMock(side_effect=RuntimeError("still failing"))
        manager = RetryManager(sleep=lambda delay: None)

        with pytest.raises(RuntimeError, match="still failing"):
            manager.execute_sync(func, policy=RetryPolicy(max_attempts=2, jitter=False))

        assert func.call_count == 3

    def test_execute_sync_non_retryable_raises_immediately(self):
        func = MagicMock(side_effect=ValueError("bad"))
        manager = RetryManager(sleep=MagicMock())

        with pytest.raises(ValueError):
            manager.execute_sync(func, policy=RetryPolicy(retryable_exceptions=(ConnectionError,)))

        func.assert_called_once()
