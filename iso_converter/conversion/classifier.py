"""Distribution detection for source images.

Matches identifier strings read from the image against known distribution
markers. Families are evaluated in a fixed priority order and the first
family with a matching marker wins.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Union

from iso_converter.domain import DistributionIdentity, SourceImage
from iso_converter.logging import LoggerFactory

from . import commands
from .exceptions import CommandError, FatalInputError, UnrecognizedFormat
from .iso import read_labels

log = LoggerFactory.for_stage("classifier")

# Evaluated in order: debian-family, arch-family, fedora-family (case-insensitive
# substring match)
DISTRIBUTION_MARKERS: tuple[tuple[DistributionIdentity, tuple[str, ...]], ...] = (
    (DistributionIdentity.DEBIAN, ("debian", "ubuntu")),
    (DistributionIdentity.ARCH, ("arch", "manjaro", "endeavouros")),
    (DistributionIdentity.FEDORA, ("fedora", "centos", "rhel", "rocky", "almalinux")),
)

FILE_COMMAND_TIMEOUT = 30


def match_labels(labels: Iterable[str]) -> DistributionIdentity:
    """Classify identifier strings, returning UNRECOGNIZED when nothing matches."""
    lowered = [label.lower() for label in labels if label]
    for identity, markers in DISTRIBUTION_MARKERS:
        for marker in markers:
            if any(marker in label for label in lowered):
                return identity
    return DistributionIdentity.UNRECOGNIZED


def _describe_with_file_command(path: Path) -> Optional[str]:
    """Fallback signature source for images without ISO9660 descriptors."""
    if not commands.which("file"):
        return None
    try:
        output = commands.run_checked_command(
            ["file", "-b", str(path)], timeout=FILE_COMMAND_TIMEOUT
        )
    except CommandError as error:
        log.debug(f"file(1) could not describe {path}: {error}")
        return None
    return output.strip() or None


def collect_labels(path: Path) -> list[str]:
    """Gather identifier strings for an image.

    Raises:
        FatalInputError: If the image cannot be read
    """
    try:
        labels = read_labels(path)
    except OSError as error:
        raise FatalInputError(f"Cannot read source image {path}: {error}", path) from error
    if not labels:
        description = _describe_with_file_command(path)
        if description:
            labels.append(description)
    return labels


def classify(image: Union[SourceImage, Path]) -> DistributionIdentity:
    """Classify a source image by its content signatures.

    Raises:
        UnrecognizedFormat: If no known distribution marker is present
        FatalInputError: If the image cannot be read
    """
    path = image.path if isinstance(image, SourceImage) else Path(image)
    labels = collect_labels(path)
    log.debug(f"Labels for {path.name}: {labels}")
    identity = match_labels(labels)
    if identity is DistributionIdentity.UNRECOGNIZED:
        log.error(f"Unsupported distribution detected in {path.name}")
        raise UnrecognizedFormat(path, labels)
    log.info(f"Detected {identity.value} distribution in {path.name}")
    return identity
