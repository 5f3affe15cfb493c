"""Tests for assetsmith.retry -- exponential backoff and cancellation."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, call, patch

import pytest

from assetsmith.errors import (
    AuthenticationError,
    GenerationCancelledError,
    RemoteError,
    TaskTimeoutError,
)
from assetsmith.retry import check_cancelled, interruptible_sleep, is_retryable, retry


class TestRetry:
    @patch("assetsmith.retry.time.sleep")
    def test_first_attempt_succeeds(self, mock_sleep):
        op = MagicMock(return_value="ok")
        assert retry(op) == "ok"
        assert op.call_count == 1
        mock_sleep.assert_not_called()

    @patch("assetsmith.retry.time.sleep")
    def test_succeeds_after_transient_failures(self, mock_sleep):
        op = MagicMock(side_effect=[RemoteError("503"), RemoteError("503"), "ok"])

        assert retry(op, max_attempts=3, initial_delay=1.0) == "ok"

        assert op.call_count == 3
        assert mock_sleep.call_args_list == [call(1.0), call(2.0)]

    @patch("assetsmith.retry.time.sleep")
    def test_reraises_last_error(self, mock_sleep):
        errors = [RemoteError("first"), RemoteError("second"), RemoteError("third")]
        op = MagicMock(side_effect=errors)

        with pytest.raises(RemoteError, match="third"):
            retry(op, max_attempts=3, initial_delay=0.5)

        # No sleep after the final attempt.
        assert mock_sleep.call_args_list == [call(0.5), call(1.0)]

    @patch("assetsmith.retry.time.sleep")
    def test_non_retryable_raised_immediately(self, mock_sleep):
        op = MagicMock(side_effect=AuthenticationError("bad key"))

        with pytest.raises(AuthenticationError):
            retry(op, max_attempts=5)

        assert op.call_count == 1
        mock_sleep.assert_not_called()

    @patch("assetsmith.retry.time.sleep")
    def test_poll_timeout_not_retried(self, mock_sleep):
        op = MagicMock(side_effect=TaskTimeoutError("too slow", task_id="t"))
        with pytest.raises(TaskTimeoutError):
            retry(op)
        assert op.call_count == 1

    @patch("assetsmith.retry.time.sleep")
    def test_plain_exceptions_are_retried(self, mock_sleep):
        op = MagicMock(side_effect=[ConnectionResetError("reset"), "ok"])
        assert retry(op, max_attempts=2) == "ok"

    @patch("assetsmith.retry.time.sleep")
    def test_single_attempt(self, mock_sleep):
        op = MagicMock(side_effect=RemoteError("nope"))
        with pytest.raises(RemoteError):
            retry(op, max_attempts=1)
        mock_sleep.assert_not_called()

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            retry(lambda: None, max_attempts=0)

    @patch("assetsmith.retry.time.sleep")
    def test_logs_each_retry(self, mock_sleep, caplog):
        op = MagicMock(side_effect=[RemoteError("flaky"), "ok"])
        with caplog.at_level("WARNING", logger="assetsmith.retry"):
            retry(op, max_attempts=3, description="Meshy GET")
        assert "Meshy GET failed (flaky), retrying in 1.0s (attempt 1/3)" in caplog.text

    def test_cancel_event_stops_backoff(self):
        cancel = threading.Event()

        def _op():
            cancel.set()
            raise RemoteError("flaky")

        with pytest.raises(GenerationCancelledError):
            retry(_op, max_attempts=3, initial_delay=30.0, cancel_event=cancel)

    def test_already_cancelled_never_calls(self):
        cancel = threading.Event()
        cancel.set()
        op = MagicMock()
        with pytest.raises(GenerationCancelledError):
            retry(op, cancel_event=cancel)
        op.assert_not_called()


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable(RemoteError("x")) is True
        assert is_retryable(RemoteError("x", retryable=False)) is False
        assert is_retryable(GenerationCancelledError()) is False
        assert is_retryable(ValueError("x")) is True

    def test_check_cancelled(self):
        check_cancelled(None)
        ev = threading.Event()
        check_cancelled(ev)
        ev.set()
        with pytest.raises(GenerationCancelledError):
            check_cancelled(ev)

    @patch("assetsmith.retry.time.sleep")
    def test_interruptible_sleep_without_event(self, mock_sleep):
        interruptible_sleep(2.5)
        mock_sleep.assert_called_once_with(2.5)

    def test_interruptible_sleep_with_unset_event(self):
        interruptible_sleep(0.01, threading.Event())
