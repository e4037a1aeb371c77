"""ISO9660 volume descriptor reading.

Reads the identifier strings that distribution builders stamp into an ISO
image (volume label, publisher, application) without mounting it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

SECTOR_SIZE = 2048
FIRST_DESCRIPTOR_SECTOR = 16
MAX_DESCRIPTORS = 32
STANDARD_IDENTIFIER = b"CD001"

TYPE_PRIMARY = 1
TYPE_SUPPLEMENTARY = 2
TYPE_TERMINATOR = 255

# (field name, start, end) offsets within a primary/supplementary descriptor
_FIELDS = (
    ("system_id", 8, 40),
    ("volume_id", 40, 72),
    ("volume_set_id", 190, 318),
    ("publisher_id", 318, 446),
    ("preparer_id", 446, 574),
    ("application_id", 574, 702),
)


@dataclass(frozen=True)
class VolumeDescriptor:
    descriptor_type: int
    system_id: str = ""
    volume_id: str = ""
    volume_set_id: str = ""
    publisher_id: str = ""
    preparer_id: str = ""
    application_id: str = ""

    def labels(self) -> list[str]:
        """Non-empty identifier strings, volume label first."""
        values = [
            self.volume_id,
            self.volume_set_id,
            self.publisher_id,
            self.preparer_id,
            self.application_id,
            self.system_id,
        ]
        return [value for value in values if value]


def _decode(raw: bytes, descriptor_type: int) -> str:
    if descriptor_type == TYPE_SUPPLEMENTARY:
        # Joliet identifiers are UCS-2 big endian
        text = raw.decode("utf-16-be", errors="ignore")
    else:
        text = raw.decode("ascii", errors="ignore")
    return text.replace("\x00", "").strip()


def parse_descriptor(block: bytes) -> Optional[VolumeDescriptor]:
    """Parse one 2048-byte volume descriptor block."""
    if len(block) < SECTOR_SIZE or block[1:6] != STANDARD_IDENTIFIER:
        return None
    descriptor_type = block[0]
    if descriptor_type not in (TYPE_PRIMARY, TYPE_SUPPLEMENTARY):
        return VolumeDescriptor(descriptor_type=descriptor_type)
    values = {
        name: _decode(block[start:end], descriptor_type) for name, start, end in _FIELDS
    }
    return VolumeDescriptor(descriptor_type=descriptor_type, **values)


def read_volume_descriptors(path: Path) -> list[VolumeDescriptor]:
    """Read the volume descriptor set of an ISO9660 image.

    Returns an empty list when the file is not an ISO9660 image.

    Raises:
        OSError: If the file cannot be read
    """
    descriptors: list[VolumeDescriptor] = []
    with open(path, "rb") as handle:
        handle.seek(FIRST_DESCRIPTOR_SECTOR * SECTOR_SIZE)
        for _ in range(MAX_DESCRIPTORS):
            block = handle.read(SECTOR_SIZE)
            descriptor = parse_descriptor(block)
            if descriptor is None:
                break
            if descriptor.descriptor_type == TYPE_TERMINATOR:
                break
            descriptors.append(descriptor)
    return descriptors


def read_labels(path: Path) -> list[str]:
    """Collect identifier strings from all primary and Joliet descriptors."""
    labels: list[str] = []
    for descriptor in read_volume_descriptors(path):
        for label in descriptor.labels():
            if label not in labels:
                labels.append(label)
    return labels
