"""Filesystem packaging of the workspace tree into a squashfs image.

The compressor writes to ``<name>.partial`` and the file is renamed into
place only after mksquashfs exits cleanly, so a failed or cancelled run never
leaves a half-written image under the final name.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from iso_converter.domain import ArtifactEntry, ArtifactKind, CompressionPlan, DistributionIdentity
from iso_converter.logging import LoggerFactory

from . import commands
from .cancellation import CancelToken
from .checksums import describe_artifact
from .commands import ProgressCallback
from .exceptions import CommandError, CompressionError, PipelineCancelled

log = LoggerFactory.for_stage("packaging")

PARTIAL_SUFFIX = ".partial"


def output_name(distribution: DistributionIdentity) -> str:
    return f"{distribution.value}-compressed.squashfs"


def build_command(
    mksquashfs: str, tree: Path, destination: Path, plan: CompressionPlan
) -> list[str]:
    return [
        mksquashfs,
        str(tree),
        str(destination),
        *plan.to_mksquashfs_args(),
        "-noappend",
        "-mkfs-time",
        "0",
        "-progress",
    ]


def _remove_partial(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def package(
    tree: Path,
    plan: CompressionPlan,
    output_path: Path,
    *,
    timeout: float = 3600,
    cancel_token: Optional[CancelToken] = None,
    progress_callback: Optional[ProgressCallback] = None,
    source_epoch: Optional[float] = None,
) -> ArtifactEntry:
    """Compress ``tree`` into a single squashfs image at ``output_path``.

    Args:
        tree: Extracted workspace tree
        plan: Compressor configuration
        output_path: Final image path
        timeout: Seconds before mksquashfs is killed
        cancel_token: Checked while the compressor runs
        progress_callback: Receives completion ratios between 0.0 and 1.0
        source_epoch: If given, the tree root's timestamps are pinned to it so
            repeated runs over the same input record identical metadata

    Raises:
        CompressionError: If mksquashfs is missing or fails
    """
    tree = Path(tree)
    output_path = Path(output_path)
    if not tree.is_dir():
        raise CompressionError(f"Workspace tree {tree} does not exist")
    try:
        mksquashfs = commands.require_tool("mksquashfs")
    except CommandError as error:
        raise CompressionError(str(error)) from error

    if source_epoch is not None:
        os.utime(tree, (source_epoch, source_epoch))

    partial = output_path.with_name(output_path.name + PARTIAL_SUFFIX)
    _remove_partial(partial)
    command = build_command(mksquashfs, tree, partial, plan)
    log.info(f"Generating compressed filesystem {output_path.name} ({plan.describe()})")
    try:
        commands.run_checked_with_streaming_progress(
            command,
            timeout=timeout,
            cancel_token=cancel_token,
            progress_callback=progress_callback,
            title="PACKAGING",
        )
    except CommandError as error:
        _remove_partial(partial)
        log.error("Filesystem compression failed")
        raise CompressionError(f"Filesystem compression failed: {error}") from error
    except PipelineCancelled:
        _remove_partial(partial)
        raise

    if not partial.is_file():
        raise CompressionError(f"mksquashfs reported success but wrote no {partial.name}")
    os.replace(partial, output_path)
    entry = describe_artifact(ArtifactKind.FILESYSTEM, output_path)
    log.success(f"Compressed filesystem written: {output_path} ({entry.size_bytes} bytes)")
    return entry
