"""Tests for external tool execution helpers."""

import subprocess
import sys
from unittest.mock import Mock, patch

import pytest

from iso_converter.conversion import commands
from iso_converter.conversion.cancellation import CancelToken
from iso_converter.conversion.exceptions import (
    CommandError,
    CommandTimeoutError,
    PipelineCancelled,
)


class TestRequireTool:
    def test_found(self):
        with patch.object(commands.shutil, "which", return_value="/usr/bin/xorriso"):
            assert commands.require_tool("xorriso") == "/usr/bin/xorriso"

    def test_missing(self):
        with patch.object(commands.shutil, "which", return_value=None):
            with pytest.raises(CommandError, match="xorriso not found on PATH"):
                commands.require_tool("xorriso")


class TestParsePercent:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("[====    ] 1200/4800  25%", 25.0),
            ("10% 20% 33.5%", 33.5),
            ("no progress here", None),
            ("150%", 100.0),
        ],
    )
    def test_parse(self, text, expected):
        assert commands.parse_percent(text) == expected


class TestRunCheckedCommand:
    """Tests for run_checked_command function."""

    @patch("iso_converter.conversion.commands.subprocess.run")
    def test_successful_command(self, mock_run):
        """Test successful command execution."""
        mock_run.return_value = Mock(returncode=0, stdout="output", stderr="")

        result = commands.run_checked_command(["echo", "test"], timeout=5)

        assert result == "output"
        mock_run.assert_called_once_with(
            ["echo", "test"],
            input=None,
            text=True,
            capture_output=True,
            timeout=5,
            env=None,
        )

    @patch("iso_converter.conversion.commands.subprocess.run")
    def test_failure_uses_stderr(self, mock_run):
        """Test command failure with stderr message."""
        mock_run.return_value = Mock(returncode=2, stdout="", stderr="error message")

        with pytest.raises(CommandError, match="Command failed.*error message") as excinfo:
            commands.run_checked_command(["false"], timeout=5)
        assert excinfo.value.returncode == 2

    @patch("iso_converter.conversion.commands.subprocess.run")
    def test_failure_without_output(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="")

        with pytest.raises(CommandError, match="Command failed"):
            commands.run_checked_command(["false"], timeout=5)

    @patch("iso_converter.conversion.commands.subprocess.run")
    def test_timeout(self, mock_run):
        """Test TimeoutExpired becomes CommandTimeoutError."""
        mock_run.side_effect = subprocess.TimeoutExpired(["sleep"], 5)

        with pytest.raises(CommandTimeoutError):
            commands.run_checked_command(["sleep", "10"], timeout=5)

    @patch("iso_converter.conversion.commands.subprocess.run")
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("no such file")

        with pytest.raises(CommandError, match="no such file"):
            commands.run_checked_command(["nope"], timeout=5)

    @patch("iso_converter.conversion.commands.subprocess.run")
    def test_cancelled_before_start(self, mock_run):
        """Test a cancelled token prevents the command from running."""
        token = CancelToken()
        token.cancel("stop")

        with pytest.raises(PipelineCancelled, match="stop"):
            commands.run_checked_command(["echo"], timeout=5, cancel_token=token)
        mock_run.assert_not_called()


class TestRunCheckedWithStreamingProgress:
    """Tests that run a real Python child process."""

    def test_reports_progress(self):
        """Test percentages in the output reach the callback."""
        script = (
            "import sys, time; sys.stdout.write('25%\\n'); sys.stdout.flush(); "
            "time.sleep(0.5); print('100%')"
        )
        ratios = []

        result = commands.run_checked_with_streaming_progress(
            [sys.executable, "-c", script], timeout=30, progress_callback=ratios.append
        )

        assert result.returncode == 0
        assert "25%" in result.stdout
        assert ratios[0] == 0.25
        assert ratios[-1] == 1.0

    def test_failure_reports_last_line(self):
        script = "import sys; print('working'); print('fatal: disk full'); sys.exit(3)"

        with pytest.raises(CommandError, match="fatal: disk full") as excinfo:
            commands.run_checked_with_streaming_progress([sys.executable, "-c", script], timeout=30)
        assert excinfo.value.returncode == 3

    def test_timeout_kills_process(self):
        """Test a process exceeding the timeout is killed."""
        with pytest.raises(CommandTimeoutError):
            commands.run_checked_with_streaming_progress(
                [sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5
            )

    def test_cancellation_kills_process(self):
        """Test a cancel request during the run kills the process."""
        token = CancelToken()
        token.cancel_after(0.3)
        try:
            with pytest.raises(PipelineCancelled):
                commands.run_checked_with_streaming_progress(
                    [sys.executable, "-c", "import time; time.sleep(30)"],
                    timeout=30,
                    cancel_token=token,
                )
        finally:
            token.disarm()

    def test_missing_binary(self):
        with pytest.raises(CommandError):
            commands.run_checked_with_streaming_progress(
                ["/nonexistent/mksquashfs"], timeout=5
            )

    def test_closed_output_does_not_spin(self, mocker):
        """Test a child that closes its output before exiting is waited on, not polled."""
        script = (
            "import os, sys, time; print('50%', flush=True); "
            "null = os.open(os.devnull, os.O_WRONLY); os.dup2(null, 1); os.dup2(null, 2); "
            "time.sleep(1)"
        )
        reads = mocker.spy(commands.os, "read")

        result = commands.run_checked_with_streaming_progress(
            [sys.executable, "-c", script], timeout=30
        )

        assert result.returncode == 0
        assert "50%" in result.stdout
        assert reads.call_count <= 3
