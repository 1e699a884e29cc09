"""Tests for retry logic with exponential backoff."""

from unittest.mock import Mock

import pytest

from strata.errors import PermanentError, RemoteTimeout, TransientError
from strata.retry_config import RetryConfig
from strata.retry_handler import (
    MAX_RETRY_AFTER_SECONDS,
    backoff_delay,
    call_with_retry,
    safe_error_message,
)

NO_JITTER = RetryConfig(max_attempts=4, initial_delay=1.0, max_delay=30.0, jitter_enabled=False)


class TestBackoffDelay:
    """Test delay computation."""

    def test_delay_doubles(self):
        """Verify 1s, 2s, 4s without jitter."""
        assert [backoff_delay(n, NO_JITTER) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_capped(self):
        """Verify the cap applies to late attempts."""
        assert backoff_delay(10, NO_JITTER) == 30.0

    def test_jitter_stays_within_quarter(self):
        """Verify jitter is +/-25% of the base delay."""
        config = RetryConfig(initial_delay=4.0, max_delay=100.0, jitter_enabled=True)

        for _ in range(50):
            assert 3.0 <= backoff_delay(1, config) <= 5.0

    def test_retry_after_raises_floor(self):
        """Verify a server-requested wait is honoured."""
        assert backoff_delay(1, NO_JITTER, retry_after=12.0) == 12.0

    def test_retry_after_capped(self):
        """Verify absurd retry_after values are capped."""
        assert backoff_delay(1, NO_JITTER, retry_after=86_400) == MAX_RETRY_AFTER_SECONDS


class TestCallWithRetry:
    """Test the bounded retry loop."""

    def test_success_first_try(self):
        """Verify no sleep when the operation succeeds immediately."""
        sleep = Mock()
        operation = Mock(return_value="ok")

        assert call_with_retry(operation, NO_JITTER, sleep=sleep) == "ok"
        operation.assert_called_once()
        sleep.assert_not_called()

    def test_transient_failures_retried(self):
        """Verify transient errors are retried until success."""
        sleep = Mock()
        operation = Mock(side_effect=[TransientError("throttled"), RemoteTimeout("slow"), "ok"])

        assert call_with_retry(operation, NO_JITTER, sleep=sleep) == "ok"
        assert operation.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_ceiling_reraises_last_error(self):
        """Verify exhausting max_attempts raises the final transient error."""
        operation = Mock(side_effect=TransientError("still throttled"))

        with pytest.raises(TransientError, match="still throttled"):
            call_with_retry(operation, NO_JITTER, sleep=Mock())

        assert operation.call_count == 4

    def test_permanent_error_not_retried(self):
        """Verify non-retryable errors propagate on the first attempt."""
        operation = Mock(side_effect=PermanentError("bad request"))

        with pytest.raises(PermanentError):
            call_with_retry(operation, NO_JITTER, sleep=Mock())

        operation.assert_called_once()

    def test_on_attempt_reports_attempt_numbers(self):
        """Verify the attempt callback sees 1, 2, 3."""
        attempts = []
        operation = Mock(side_effect=[TransientError("a"), TransientError("b"), "ok"])

        call_with_retry(operation, NO_JITTER, sleep=Mock(), on_attempt=attempts.append)

        assert attempts == [1, 2, 3]

    def test_retry_after_used_for_sleep(self):
        """Verify a throttling hint overrides the computed delay."""
        sleep = Mock()
        operation = Mock(side_effect=[TransientError("slow down", retry_after=7.5), "ok"])

        call_with_retry(operation, NO_JITTER, sleep=sleep)

        sleep.assert_called_once_with(7.5)


class TestSafeErrorMessage:
    """Test sanitizing of error text."""

    def test_long_message_truncated(self):
        """Verify messages are cut at 200 characters."""
        message = safe_error_message(PermanentError("x" * 500))

        assert message == "x" * 200 + "..."

    def test_credentials_masked(self):
        """Verify anything after a credential marker is hidden."""
        message = safe_error_message(PermanentError("denied: token=abc123 for user"))

        assert message == "denied: token=***"
        assert "abc123" not in message

    def test_empty_message_uses_type_name(self):
        """Verify an exception without text still reports something."""
        assert safe_error_message(TransientError("")) == "TransientError"
