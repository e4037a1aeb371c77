"""Hypervisor disk format conversion.

Converts the packaged filesystem image into a disk format for a target
virtualization platform using qemu-img. An unknown platform is advisory
(UnsupportedPlatform) while a failing conversion is a ConversionError.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Union

from iso_converter.domain import ArtifactEntry, ArtifactKind, DistributionIdentity
from iso_converter.logging import LoggerFactory

from . import commands
from .cancellation import CancelToken
from .checksums import describe_artifact
from .exceptions import CommandError, ConversionError, PipelineCancelled, UnsupportedPlatform

log = LoggerFactory.for_stage("virtualization")


@dataclass(frozen=True)
class DiskFormat:
    label: str  # e.g. "VMware"
    qemu_format: str  # qemu-img -O value
    extension: str
    options: tuple[str, ...] = ()  # extra qemu-img -o settings


PLATFORM_FORMATS: Mapping[str, DiskFormat] = MappingProxyType(
    {
        "vmware": DiskFormat("VMware", "vmdk", "vmdk"),
        "hyperv": DiskFormat("Hyper-V", "vhdx", "vhdx"),
        "qemu": DiskFormat("QEMU", "qcow2", "qcow2"),
        "kvm": DiskFormat("KVM", "qcow2", "qcow2"),
        "virtualbox": DiskFormat("VirtualBox", "vdi", "vdi"),
    }
)


def resolve_platform(
    platform: str, formats: Mapping[str, DiskFormat] = PLATFORM_FORMATS
) -> DiskFormat:
    """Look up the disk format for a platform name.

    Raises:
        UnsupportedPlatform: If the platform is not known
    """
    key = platform.strip().lower()
    if key not in formats:
        raise UnsupportedPlatform(platform, formats.keys())
    return formats[key]


def output_name(distribution: DistributionIdentity, platform: str, disk_format: DiskFormat) -> str:
    return f"{distribution.value}-{platform.strip().lower()}.{disk_format.extension}"


def convert_disk(
    source: Union[ArtifactEntry, Path],
    target_platform: str,
    output_dir: Path,
    distribution: DistributionIdentity,
    *,
    formats: Mapping[str, DiskFormat] = PLATFORM_FORMATS,
    timeout: float = 3600,
    cancel_token: Optional[CancelToken] = None,
) -> ArtifactEntry:
    """Convert a packaged filesystem image into a hypervisor disk.

    Raises:
        UnsupportedPlatform: If ``target_platform`` has no known disk format
        ConversionError: If qemu-img is missing or the conversion fails
    """
    source_path = source.path if isinstance(source, ArtifactEntry) else Path(source)
    disk_format = resolve_platform(target_platform, formats)
    if cancel_token is not None:
        cancel_token.check()
    try:
        qemu_img = commands.require_tool("qemu-img")
    except CommandError as error:
        raise ConversionError(str(error)) from error

    destination = Path(output_dir) / output_name(distribution, target_platform, disk_format)
    partial = destination.with_name(destination.name + ".partial")
    command = [qemu_img, "convert", "-f", "raw", "-O", disk_format.qemu_format]
    if disk_format.options:
        command.extend(["-o", ",".join(disk_format.options)])
    command.extend([str(source_path), str(partial)])

    log.info(f"Generating {disk_format.label}-compatible disk {destination.name}")
    try:
        commands.run_checked_command(command, timeout=timeout, cancel_token=cancel_token)
    except PipelineCancelled:
        partial.unlink(missing_ok=True)
        raise
    except CommandError as error:
        partial.unlink(missing_ok=True)
        raise ConversionError(
            f"{disk_format.label} conversion of {source_path.name} failed: {error}"
        ) from error
    try:
        partial.replace(destination)
        entry = describe_artifact(ArtifactKind.DISK_IMAGE, destination)
    except OSError as error:
        partial.unlink(missing_ok=True)
        raise ConversionError(f"Cannot publish {destination.name}: {error}") from error
    log.success(f"{disk_format.label} disk written: {destination}")
    return entry
