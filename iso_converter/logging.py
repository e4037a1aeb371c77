from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ISO_CONVERTER_LOG_DIR",
        Path.home() / ".local" / "state" / "iso-converter" / "logs",
    )
)


def _should_log_progress(record) -> bool:
    """Filter compressor progress chatter - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "progress" in tags:
        return record["level"].no <= logger.level("TRACE").no or (
            record["level"].no >= logger.level("WARNING").no
        )

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for downstream tooling (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/iso-converter/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_should_log_progress,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <15}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <15} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <15} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Run identifier for tracking a conversion
        tags: Tags for filtering (e.g., ["stage", "packaging"])
        source: Source component (e.g., "classifier", "netboot")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "convert", "package")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("convert", source="debian.iso") as log:
            log.debug("Classifying image")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_pipeline(job_id: str | None = None) -> Logger:
        """Logger for the conversion coordinator."""
        if job_id is None:
            job_id = f"convert-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_stage(stage: str) -> Logger:
        """Logger for a single conversion stage."""
        return logger.bind(source=stage, tags=["stage", stage])

    @staticmethod
    def for_tools() -> Logger:
        """Logger for external tool invocations."""
        return logger.bind(source="tools", tags=["tools", "subprocess"])

    @staticmethod
    def for_progress(stage: str) -> Logger:
        """Logger for high-frequency progress updates."""
        return logger.bind(source=stage, tags=["progress", stage])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Useful for progress updates that should only be emitted at intervals.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging pipeline events with consistent structure
    and fields, so structured.jsonl can be consumed by downstream tooling.
    """

    @staticmethod
    def log_state_transition(log: Logger, previous: str, current: str, **extra) -> None:
        """Log a coordinator state change."""
        log.bind(
            event_type="state_transition",
            previous_state=previous,
            current_state=current,
            **extra,
        ).debug(f"State {previous} -> {current}")

    @staticmethod
    def log_artifact_recorded(
        log: Logger, kind: str, path: str, size_bytes: int, checksum: str, **extra
    ) -> None:
        """Log an artifact appended to the manifest."""
        log.bind(
            event_type="artifact_recorded",
            artifact_kind=kind,
            artifact_path=path,
            size_bytes=size_bytes,
            checksum=checksum,
            **extra,
        ).info(f"Recorded {kind} artifact {path}")

    @staticmethod
    def log_stage_outcome(
        log: Logger, stage: str, status: str, message: str = "", **extra
    ) -> None:
        """Log the final status of a fan-out stage."""
        text = f"Stage {stage} {status}"
        if message:
            text = f"{text}: {message}"
        # bind() keeps tool output containing braces out of message formatting
        event_log = log.bind(event_type="stage_outcome", stage=stage, status=status, **extra)
        if status == "failed":
            event_log.error(text)
        elif status in ("skipped", "warned"):
            event_log.warning(text)
        else:
            event_log.info(text)
