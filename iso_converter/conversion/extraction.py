"""Source image extraction into the workspace.

Two attachment strategies are supported:
    - xorriso: reads the ISO9660 tree as an archive (no privileges needed)
    - loop: read-only loopback mount, then a metadata-preserving copy

Either way the read-only attachment is released before ``extract`` returns,
whether or not the copy succeeded.
"""

from __future__ import annotations

import os
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from iso_converter.domain import SourceImage
from iso_converter.logging import LoggerFactory

from . import commands
from .cancellation import CancelToken
from .exceptions import CommandError, CopyError, MountError
from .workspace import Workspace

log = LoggerFactory.for_stage("extraction")

EXTRACTION_METHODS = ("auto", "xorriso", "loop")


def resolve_method(method: str) -> str:
    """Pick a concrete extraction method.

    Raises:
        MountError: If no usable method is available
    """
    if method not in EXTRACTION_METHODS:
        raise MountError(f"Unknown extraction method: {method}")
    if method != "auto":
        return method
    if commands.which("xorriso"):
        return "xorriso"
    if commands.which("mount") and os.geteuid() == 0:
        return "loop"
    raise MountError("Neither xorriso nor root loopback mounting is available")


@contextmanager
def loop_attachment(
    image_path: Path, mountpoint: Path, *, timeout: float
) -> Generator[Path, None, None]:
    """Mount an image read-only for the duration of the block."""
    mountpoint.mkdir(parents=True, exist_ok=True)
    try:
        commands.run_checked_command(
            ["mount", "-o", "loop,ro", str(image_path), str(mountpoint)],
            timeout=timeout,
        )
    except CommandError as error:
        raise MountError(f"Cannot attach {image_path.name}: {error}") from error
    log.debug(f"Attached {image_path.name} at {mountpoint}")
    try:
        yield mountpoint
    finally:
        _detach(mountpoint, timeout=timeout)


def _detach(mountpoint: Path, *, timeout: float) -> None:
    try:
        commands.run_checked_command(["umount", str(mountpoint)], timeout=timeout)
    except CommandError as error:
        log.warning(f"umount failed for {mountpoint}, retrying lazily: {error}")
        try:
            commands.run_checked_command(["umount", "-l", str(mountpoint)], timeout=timeout)
        except CommandError as lazy_error:
            raise MountError(f"Cannot detach {mountpoint}: {lazy_error}") from lazy_error
    log.debug(f"Detached {mountpoint}")


def copy_tree(
    source: Path, destination: Path, *, cancel_token: Optional[CancelToken] = None
) -> int:
    """Copy a file tree preserving permissions, timestamps and symlinks.

    Checks for cancellation after each top-level entry.

    Returns:
        Number of top-level entries copied

    Raises:
        CopyError: If any entry cannot be copied
    """
    destination.mkdir(parents=True, exist_ok=True)
    copied = 0
    try:
        with os.scandir(source) as iterator:
            entries = sorted(iterator, key=lambda item: item.name)
        for entry in entries:
            target = destination / entry.name
            if entry.is_symlink():
                os.symlink(os.readlink(entry.path), target)
            elif entry.is_dir(follow_symlinks=False):
                shutil.copytree(
                    entry.path, target, symlinks=True, copy_function=shutil.copy2
                )
            else:
                shutil.copy2(entry.path, target, follow_symlinks=False)
            copied += 1
            if cancel_token is not None:
                cancel_token.check()
        shutil.copystat(source, destination, follow_symlinks=False)
    except (OSError, shutil.Error) as error:
        raise CopyError(f"Copy from {source} failed: {error}") from error
    return copied


def _extract_with_xorriso(
    image: SourceImage, tree: Path, *, timeout: float, cancel_token: Optional[CancelToken]
) -> None:
    command = [
        commands.require_tool("xorriso"),
        "-osirrox",
        "on",
        "-indev",
        str(image.path),
        "-extract",
        "/",
        str(tree),
    ]
    try:
        commands.run_checked_command(command, timeout=timeout, cancel_token=cancel_token)
    except CommandError as error:
        # Nothing on disk means the image never opened
        if not tree.exists() or not any(tree.iterdir()):
            raise MountError(f"Cannot read {image.path.name}: {error}") from error
        raise CopyError(f"Extraction of {image.path.name} incomplete: {error}") from error


def extract(
    image: SourceImage,
    workspace: Workspace,
    *,
    method: str = "auto",
    timeout: float = 3600,
    cancel_token: Optional[CancelToken] = None,
) -> Path:
    """Materialize the image's file tree into the workspace.

    Returns:
        The extracted tree root (``workspace.tree``)

    Raises:
        MountError: If the image cannot be attached
        CopyError: If the copy cannot complete
    """
    workspace.ensure_owner(image)
    resolved = resolve_method(method)
    log.info(f"Extracting {image.path.name} using {resolved}")

    if resolved == "xorriso":
        _extract_with_xorriso(
            image, workspace.tree, timeout=timeout, cancel_token=cancel_token
        )
    else:
        with loop_attachment(image.path, workspace.mountpoint, timeout=timeout) as mounted:
            copy_tree(mounted, workspace.tree, cancel_token=cancel_token)

    if cancel_token is not None:
        cancel_token.check()
    if not workspace.tree.is_dir():
        raise CopyError(f"Extraction of {image.path.name} produced no file tree")
    log.success(f"Extracted {image.path.name} into {workspace.tree}")
    return workspace.tree
