"""File checksums for manifest entries."""

from __future__ import annotations

import hashlib
from pathlib import Path

from iso_converter.domain import ArtifactEntry, ArtifactKind

CHUNK_SIZE = 4 * 1024 * 1024


def compute_sha256(path: Path) -> str:
    """Compute the SHA256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def describe_artifact(kind: ArtifactKind, path: Path) -> ArtifactEntry:
    """Build a manifest entry for a fully written file."""
    path = Path(path)
    return ArtifactEntry(
        kind=kind,
        path=path,
        size_bytes=path.stat().st_size,
        checksum=compute_sha256(path),
    )
