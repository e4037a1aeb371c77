"""Custom exceptions for the conversion pipeline.

This module defines a hierarchy of exceptions so the coordinator and the CLI
can tell fatal input problems, classification failures and stage failures
apart, and map each to its own exit status.

Exception Hierarchy:
    PipelineError (base)
        ├── FatalInputError
        │   └── ConfigError
        ├── ClassificationFailure
        │   └── UnrecognizedFormat
        ├── StageFailure
        │   ├── MountError
        │   ├── CopyError
        │   ├── CompressionError
        │   ├── ConversionError
        │   ├── KeyGenError
        │   └── PluginError
        ├── UnsupportedPlatform
        ├── CommandError
        │   └── CommandTimeoutError
        └── PipelineCancelled

Usage:
    from iso_converter.conversion.exceptions import UnrecognizedFormat

    if distribution is None:
        raise UnrecognizedFormat(image_path, labels)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


class PipelineError(Exception):
    """Base exception for all conversion pipeline errors."""


class FatalInputError(PipelineError):
    """Input image or output directory cannot be used."""

    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        super().__init__(message)


class ConfigError(FatalInputError):
    """Configuration value is invalid."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for {key}: {reason}")


class ClassificationFailure(PipelineError):
    """Base exception for distribution classification errors."""


class UnrecognizedFormat(ClassificationFailure):
    """No known distribution marker was found in the image."""

    def __init__(self, image_path: Path, labels: Iterable[str] = ()):
        self.image_path = Path(image_path)
        self.labels = [label for label in labels if label]
        msg = f"Unsupported distribution detected in {self.image_path.name}"
        if self.labels:
            msg += f" (labels: {', '.join(self.labels)})"
        super().__init__(msg)


class StageFailure(PipelineError):
    """A pipeline stage failed.

    ``stage`` names the failing stage so callers can report where the run
    stopped.
    """

    stage = "unknown"

    def __init__(self, message: str, stage: Optional[str] = None):
        if stage is not None:
            self.stage = stage
        super().__init__(message)


class MountError(StageFailure):
    """Source image could not be attached for reading."""

    stage = "extraction"


class CopyError(StageFailure):
    """Image contents could not be copied into the workspace."""

    stage = "extraction"


class CompressionError(StageFailure):
    """Filesystem image could not be produced."""

    stage = "packaging"


class ConversionError(StageFailure):
    """Disk format conversion failed."""

    stage = "virtualization"


class KeyGenError(StageFailure):
    """Signing key or certificate could not be generated."""

    stage = "secureboot"


class PluginError(StageFailure):
    """A per-distribution customization hook failed."""

    stage = "customize"


class UnsupportedPlatform(PipelineError):
    """Requested virtualization platform has no known disk format.

    This is advisory: the coordinator records it and carries on.
    """

    def __init__(self, platform: str, supported: Iterable[str] = ()):
        self.platform = platform
        self.supported = sorted(supported)
        msg = f"Unsupported virtualization platform: {platform}"
        if self.supported:
            msg += f" (supported: {', '.join(self.supported)})"
        super().__init__(msg)


class CommandError(PipelineError):
    """An external tool exited unsuccessfully."""

    def __init__(self, command: list[str], message: str, returncode: Optional[int] = None):
        self.command = list(command)
        self.returncode = returncode
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class CommandTimeoutError(CommandError):
    """An external tool exceeded its timeout and was killed."""

    def __init__(self, command: list[str], timeout: float):
        self.timeout = timeout
        super().__init__(command, f"timed out after {timeout:g}s")


class PipelineCancelled(PipelineError):
    """The run was cancelled by timeout or external request."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(f"Conversion cancelled: {reason}")
