"""Tests for retry and timeout helpers."""

import threading
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from sqltransfer.resilience import (
    RetryConfig,
    RetryHandler,
    call_with_timeout,
    is_transient_error,
    retry,
)


class TestRetryHandler:
    @pytest.fixture
    def handler(self):
        return RetryHandler(
            RetryConfig(max_attempts=3, initial_delay=0.0, jitter=False)
        )

    def test_returns_first_success(self, handler):
        func = Mock(return_value="ok")
        assert handler.execute_with_retry(func, 1, key="v") == "ok"
        func.assert_called_once_with(1, key="v")

    def test_retries_transient_errors(self, handler):
        func = Mock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])
        assert handler.execute_with_retry(func) == "ok"
        assert func.call_count == 3

    def test_reraises_after_max_attempts(self, handler):
        func = Mock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            handler.execute_with_retry(func)
        assert func.call_count == 3

    def test_does_not_retry_permanent_errors(self, handler):
        func = Mock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            handler.execute_with_retry(func)
        func.assert_called_once()

    def test_delay_grows_exponentially_up_to_max(self):
        handler = RetryHandler(
            RetryConfig(initial_delay=1.0, backoff_multiplier=2.0, max_delay=5.0, jitter=False)
        )
        assert handler.calculate_delay(0) == 1.0
        assert handler.calculate_delay(1) == 2.0
        assert handler.calculate_delay(2) == 4.0
        assert handler.calculate_delay(3) == 5.0

    def test_jitter_stays_within_ten_percent(self):
        handler = RetryHandler(RetryConfig(initial_delay=1.0, jitter=True))
        for _ in range(20):
            assert 0.9 <= handler.calculate_delay(0) <= 1.1

    @patch("sqltransfer.resilience.time.sleep")
    def test_sleeps_between_attempts(self, mock_sleep):
        handler = RetryHandler(RetryConfig(max_attempts=2, initial_delay=0.5, jitter=False))
        func = Mock(side_effect=[TimeoutError(), "ok"])
        handler.execute_with_retry(func)
        mock_sleep.assert_called_once_with(0.5)

    def test_decorator(self):
        calls = []

        @retry(RetryConfig(max_attempts=2, initial_delay=0.0, jitter=False))
        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("once")
            return "done"

        assert flaky() == "done"
        assert len(calls) == 2


class TestIsTransientError:
    def test_operational_error_is_transient(self):
        assert is_transient_error(OperationalError("SELECT 1", {}, Exception("gone")))

    def test_integrity_error_is_not(self):
        assert not is_transient_error(IntegrityError("INSERT", {}, Exception("dup")))

    def test_timeouts_are_transient(self):
        assert is_transient_error(TimeoutError("slow"))


class TestCallWithTimeout:
    def test_no_timeout_calls_directly(self):
        assert call_with_timeout(None, lambda x: x * 2, 21) == 42

    def test_returns_result_within_timeout(self):
        assert call_with_timeout(5.0, lambda: "fast") == "fast"

    def test_raises_timeout_error(self):
        release = threading.Event()
        try:
            with pytest.raises(TimeoutError) as exc_info:
                call_with_timeout(0.05, release.wait, 5)
            assert "timed out after 0.05 seconds" in str(exc_info.value)
        finally:
            release.set()

    def test_propagates_exceptions(self):
        def fail():
            raise ValueError("inner")

        with pytest.raises(ValueError, match="inner"):
            call_with_timeout(5.0, fail)
