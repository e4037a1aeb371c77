"""Scoped scratch workspace for one conversion run.

Usage:
    with Workspace.create(source_image) as workspace:
        extract(source_image, workspace)
        ...
    # workspace.root no longer exists here, whatever happened inside
"""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Optional

from iso_converter.domain import SourceImage
from iso_converter.logging import LoggerFactory

from . import commands
from .exceptions import CommandError

log = LoggerFactory.for_stage("workspace")

WORKSPACE_PREFIX = "iso-converter-"


class Workspace:
    """Exclusively owned scratch directory tree.

    Layout:
        <root>/tree  extracted image contents (what gets packaged)
        <root>/mnt   mountpoint for loopback attachment
    """

    def __init__(self, root: Path, owner: SourceImage):
        self.root = Path(root)
        self.owner = owner
        self._released = False

    @classmethod
    def create(cls, owner: SourceImage, scratch_dir: Optional[Path] = None) -> Workspace:
        if scratch_dir is not None:
            Path(scratch_dir).mkdir(parents=True, exist_ok=True)
        root = Path(
            tempfile.mkdtemp(
                prefix=WORKSPACE_PREFIX, dir=str(scratch_dir) if scratch_dir else None
            )
        )
        log.debug(f"Created workspace {root} for {owner.path.name}")
        return cls(root, owner)

    @property
    def tree(self) -> Path:
        return self.root / "tree"

    @property
    def mountpoint(self) -> Path:
        return self.root / "mnt"

    @property
    def released(self) -> bool:
        return self._released

    def ensure_owner(self, image: SourceImage) -> None:
        """Refuse to serve a different source image than the one it was made for."""
        if self._released:
            raise RuntimeError(f"Workspace {self.root} has already been released")
        if image.path != self.owner.path:
            raise RuntimeError(
                f"Workspace {self.root} belongs to {self.owner.path}, not {image.path}"
            )

    def release(self) -> None:
        """Detach anything left mounted and remove the workspace tree.

        Safe to call more than once. If the mountpoint cannot be detached,
        everything except the mountpoint is removed and the error is logged.
        """
        if self._released:
            return
        self._released = True
        if not self.root.exists():
            return
        if not self._detach_leftover_mount():
            log.error(f"Leaving {self.mountpoint} in place, it is still mounted")
            for entry in self.root.iterdir():
                if entry != self.mountpoint:
                    _remove(entry)
            return
        _remove(self.root)
        log.debug(f"Released workspace {self.root}")

    def _detach_leftover_mount(self) -> bool:
        if not os.path.ismount(self.mountpoint):
            return True
        log.warning(f"{self.mountpoint} is still mounted, detaching lazily")
        try:
            commands.run_checked_command(["umount", "-l", str(self.mountpoint)], timeout=60)
        except CommandError as error:
            log.error(f"Cannot detach {self.mountpoint}: {error}")
            return False
        return not os.path.ismount(self.mountpoint)

    def __enter__(self) -> Workspace:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is None:
            self.release()
            return
        # keep the in-flight error as the one the caller sees
        try:
            self.release()
        except OSError as error:
            log.opt(exception=error).error(f"Workspace teardown failed for {self.root}: {error}")


def _remove(path: Path) -> None:
    if path.is_symlink() or not path.is_dir():
        path.unlink()
        return
    _make_writable(path)
    shutil.rmtree(path)


def _make_writable(root: Path) -> None:
    """Grant owner write on directories so read-only ISO trees can be removed."""
    for dirpath, dirnames, _ in os.walk(root):
        # never descend into an attached image
        dirnames[:] = [
            name for name in dirnames if not os.path.ismount(os.path.join(dirpath, name))
        ]
        for name in dirnames:
            path = os.path.join(dirpath, name)
            if os.path.islink(path):
                continue
            mode = os.stat(path).st_mode
            if not mode & stat.S_IWUSR or not mode & stat.S_IXUSR:
                os.chmod(path, mode | stat.S_IWUSR | stat.S_IXUSR | stat.S_IRUSR)
    mode = os.stat(root).st_mode
    os.chmod(root, mode | stat.S_IRWXU)
