"""Tests for cooperative cancellation."""

import threading
import time

import pytest

from iso_converter.conversion.cancellation import CancelToken
from iso_converter.conversion.exceptions import PipelineCancelled


class TestCancelToken:
    def test_check_passes_until_cancelled(self):
        token = CancelToken()
        token.check()
        token.cancel("user request")
        with pytest.raises(PipelineCancelled, match="user request"):
            token.check()

    def test_first_reason_wins(self):
        token = CancelToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    def test_shares_external_event(self):
        """Test setting the caller's event cancels the token."""
        event = threading.Event()
        token = CancelToken(event)
        assert not token.is_cancelled
        event.set()
        assert token.is_cancelled

    def test_cancel_after(self):
        token = CancelToken()
        token.cancel_after(0.05)
        deadline = time.monotonic() + 5
        while not token.is_cancelled and time.monotonic() < deadline:
            time.sleep(0.01)
        assert token.is_cancelled
        assert token.reason.startswith("run timeout")

    def test_disarm(self):
        """Test a disarmed timer never fires."""
        token = CancelToken()
        token.cancel_after(0.05)
        token.disarm()
        time.sleep(0.15)
        assert not token.is_cancelled
