"""External tool execution with timeouts, cancellation and progress tracking.

Every stage reaches its external tool (xorriso, mksquashfs, qemu-img, openssl,
mount) through this module, so no invocation can block without a timeout and
tests can substitute the runners in one place.
"""

from __future__ import annotations

import os
import re
import select
import shutil
import subprocess
import time
from typing import Callable, Optional

from iso_converter.logging import LoggerFactory, ThrottledLogger

from .cancellation import CancelToken
from .exceptions import CommandError, CommandTimeoutError, PipelineCancelled

log = LoggerFactory.for_tools()

ProgressCallback = Callable[[float], None]

_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
_POLL_INTERVAL = 0.5


def which(tool: str) -> Optional[str]:
    """Locate a tool on PATH."""
    return shutil.which(tool)


def require_tool(tool: str) -> str:
    """Locate a tool on PATH or raise CommandError."""
    path = which(tool)
    if not path:
        raise CommandError([tool], f"{tool} not found on PATH")
    return path


def parse_percent(text: str) -> Optional[float]:
    """Return the last percentage found in a chunk of tool output."""
    matches = _PERCENT_RE.findall(text)
    if not matches:
        return None
    return max(0.0, min(100.0, float(matches[-1])))


def run_checked_command(
    command: list[str],
    *,
    timeout: float,
    input_text: Optional[str] = None,
    env: Optional[dict[str, str]] = None,
    cancel_token: Optional[CancelToken] = None,
) -> str:
    """Run a command and raise CommandError if it fails.

    Returns:
        The command's stdout

    Raises:
        PipelineCancelled: If the token was cancelled before the command ran
        CommandTimeoutError: If the command did not finish within ``timeout``
        CommandError: If the command exited non-zero
    """
    if cancel_token is not None:
        cancel_token.check()
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired as error:
        raise CommandTimeoutError(command, timeout) from error
    except OSError as error:
        raise CommandError(command, str(error)) from error
    if result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        message = stderr or stdout or "Command failed"
        raise CommandError(command, message, returncode=result.returncode)
    return result.stdout


def run_checked_with_streaming_progress(
    command: list[str],
    *,
    timeout: float,
    cancel_token: Optional[CancelToken] = None,
    progress_callback: Optional[ProgressCallback] = None,
    title: str = "WORKING",
) -> subprocess.CompletedProcess:
    """Run a command while streaming its output for percentage progress.

    The process is killed if the timeout elapses or the cancel token fires;
    both are checked every poll interval so a wedged tool cannot block the run.
    """
    if cancel_token is not None:
        cancel_token.check()
    log.debug(f"Running command: {' '.join(command)}")
    progress_log = ThrottledLogger(LoggerFactory.for_progress(title.lower()))
    try:
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as error:
        raise CommandError(command, str(error)) from error

    deadline = time.monotonic() + timeout
    output_chunks: list[bytes] = []
    last_percent: Optional[float] = None
    stream = process.stdout
    eof = False
    try:
        while True:
            if cancel_token is not None and cancel_token.is_cancelled:
                _terminate(process)
                raise PipelineCancelled(cancel_token.reason)
            if time.monotonic() > deadline:
                _terminate(process)
                raise CommandTimeoutError(command, timeout)
            if eof:
                # output closed, wait for the exit status without polling the pipe
                try:
                    process.wait(timeout=_POLL_INTERVAL)
                except subprocess.TimeoutExpired:
                    continue
                break
            ready, _, _ = select.select([stream], [], [], _POLL_INTERVAL)
            if ready:
                chunk = os.read(stream.fileno(), 4096)
                if not chunk:
                    eof = True
                    continue
                output_chunks.append(chunk)
                percent = parse_percent(chunk.decode("utf-8", errors="replace"))
                if percent is not None and percent != last_percent:
                    last_percent = percent
                    progress_log.debug(title, f"{title} {percent:.0f}%")
                    if progress_callback:
                        progress_callback(percent / 100.0)
            elif process.poll() is not None:
                remainder = stream.read()
                if remainder:
                    output_chunks.append(remainder)
                break
    finally:
        if stream is not None:
            stream.close()
    process.wait()
    output = b"".join(output_chunks).decode("utf-8", errors="replace")
    if process.returncode != 0:
        lines = [line for line in re.split(r"[\r\n]+", output.strip()) if line]
        message = lines[-1] if lines else "Command failed"
        raise CommandError(command, message, returncode=process.returncode)
    if progress_callback:
        progress_callback(1.0)
    return subprocess.CompletedProcess(command, process.returncode, stdout=output, stderr="")


def _terminate(process: subprocess.Popen) -> None:
    process.kill()
    try:
        process.wait(timeout=10)
    except subprocess.TimeoutExpired:
        log.warning(f"Process {process.pid} did not exit after kill")
