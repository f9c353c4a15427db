"""Tests for bounded retry of transient storage errors."""

from unittest.mock import MagicMock

import pytest

from mcu_batch.domain.guardrails import RetryPolicy, call_with_retry
from mcu_batch.domain.ports import InvalidValueError, StorageError, TransientStorageError


class TestRetryPolicy:

    def test_backoff_is_exponential_and_capped(self):
        policy = RetryPolicy(max_attempts=5, base_delay_seconds=0.25, max_delay_seconds=1.0)
        assert [policy.delay_for(n) for n in range(4)] == [0.25, 0.5, 1.0, 1.0]

    def test_no_retry(self):
        assert RetryPolicy.no_retry().max_attempts == 1


class TestCallWithRetry:
    """Test suite for call_with_retry."""

    def test_success_first_time(self):
        sleep = MagicMock()
        assert call_with_retry(lambda: 42, RetryPolicy(), sleep=sleep) == 42
        sleep.assert_not_called()

    def test_transient_error_is_retried(self):
        """A transient failure followed by success returns the value."""
        operation = MagicMock(side_effect=[TransientStorageError("reset"), "ok"])
        sleep = MagicMock()

        assert call_with_retry(operation, RetryPolicy(max_attempts=3), sleep=sleep) == "ok"
        assert operation.call_count == 2
        sleep.assert_called_once_with(0.25)

    def test_exhausted_attempts_raise_last_error(self):
        operation = MagicMock(side_effect=TransientStorageError("still down"))
        sleep = MagicMock()

        with pytest.raises(TransientStorageError, match="still down"):
            call_with_retry(operation, RetryPolicy(max_attempts=3), sleep=sleep)
        assert operation.call_count == 3
        assert sleep.call_count == 2

    @pytest.mark.parametrize("error", [
        StorageError("constraint violated"),
        InvalidValueError("Lab item 1: Value must be positive (got 0.0)"),
        RuntimeError("bug"),
    ])
    def test_other_errors_are_not_retried(self, error):
        operation = MagicMock(side_effect=error)
        sleep = MagicMock()

        with pytest.raises(type(error)):
            call_with_retry(operation, RetryPolicy(max_attempts=5), sleep=sleep)
        assert operation.call_count == 1
        sleep.assert_not_called()

    def test_zero_attempts_still_calls_once(self):
        operation = MagicMock(return_value=1)
        assert call_with_retry(operation, RetryPolicy(max_attempts=0)) == 1
        operation.assert_called_once()
