"""External tool presence checks.

Maps each enabled stage to the binaries it runs and the distribution
packages that provide them, so a run can fail before any work starts.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from iso_converter.config.settings import ConversionOptions
from iso_converter.domain import ConversionRequest
from iso_converter.logging import LoggerFactory

from . import commands
from .virtualization import PLATFORM_FORMATS
from .exceptions import FatalInputError

log = LoggerFactory.for_system()


@dataclass(frozen=True)
class ToolRequirement:
    binary: str
    package: str


XORRISO = ToolRequirement("xorriso", "libisoburn")
MOUNT = ToolRequirement("mount", "util-linux")
MKSQUASHFS = ToolRequirement("mksquashfs", "squashfs-tools")
QEMU_IMG = ToolRequirement("qemu-img", "qemu-utils")
OPENSSL = ToolRequirement("openssl", "openssl")


def required_tools(
    request: ConversionRequest, options: ConversionOptions
) -> list[ToolRequirement]:
    tools: list[ToolRequirement] = []
    if options.extraction_method == "loop":
        tools.append(MOUNT)
    elif options.extraction_method == "xorriso":
        tools.append(XORRISO)
    elif not (commands.which(MOUNT.binary) and os.geteuid() == 0):
        # auto: xorriso unless loopback mounting is possible
        tools.append(XORRISO)
    tools.append(MKSQUASHFS)
    # unknown platforms are skipped at run time and never reach qemu-img
    if request.target_platform and request.target_platform.strip().lower() in PLATFORM_FORMATS:
        tools.append(QEMU_IMG)
    if request.enable_secure_boot:
        tools.append(OPENSSL)
    return tools


def find_missing_tools(
    request: ConversionRequest, options: ConversionOptions
) -> list[ToolRequirement]:
    return [tool for tool in required_tools(request, options) if not commands.which(tool.binary)]


def validate_dependencies(request: ConversionRequest, options: ConversionOptions) -> None:
    """Fail fast when a tool needed by an enabled stage is missing.

    Raises:
        FatalInputError: Listing the packages that provide the missing tools
    """
    missing = find_missing_tools(request, options)
    if missing:
        packages = " ".join(tool.package for tool in missing)
        log.error(f"Missing critical dependencies: {packages}")
        raise FatalInputError(f"Missing critical dependencies: {packages}")
    log.success("All dependencies validated successfully")
