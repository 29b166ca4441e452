"""
Filesystem helpers — snapshots, atomic writes and ownership.

Snapshots are what makes file actions reversible: the previous bytes,
mode and owner (or the symlink) are captured before a commit and
written back atomically on rollback.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


def read_text(path: Path) -> str | None:
    """Read a UTF-8 file, or None if it does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def atomic_write(
    path: Path,
    data: bytes,
    mode: int | None = None,
    uid: int | None = None,
    gid: int | None = None,
) -> None:
    """Write ``data`` to ``path`` via a sibling temp file and rename.

    Args:
        path: Target file.
        data: Full file content.
        mode: Permission bits; defaults to the existing file's mode, or 0o644.
        uid: Owner to give the new file; None keeps the creating user.
        gid: Group to give the new file; None keeps the creating group.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        mode = path.stat().st_mode & 0o7777 if path.exists() else 0o644

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp, mode)
        st = tmp.stat()
        want = (st.st_uid if uid is None else uid, st.st_gid if gid is None else gid)
        if want != (st.st_uid, st.st_gid):
            os.chown(tmp, *want)
        os.replace(tmp, path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


def chown(path: Path, user: str | None, group: str | None = None, recursive: bool = False) -> None:
    """Change ownership of a path (optionally the whole tree)."""
    if not user and not group:
        return
    shutil.chown(path, user=user, group=group)
    if recursive and path.is_dir():
        for child in path.rglob("*"):
            shutil.chown(child, user=user, group=group)


@dataclass(frozen=True)
class FileSnapshot:
    """Prior state of a file: bytes, mode and owner, a symlink, or absence."""

    path: Path
    content: bytes | None
    mode: int | None = None
    uid: int | None = None
    gid: int | None = None
    link: str | None = None

    @property
    def existed(self) -> bool:
        return self.content is not None or self.link is not None

    @classmethod
    def take(cls, path: Path) -> FileSnapshot:
        if path.is_symlink():
            return cls(path=path, content=None, link=os.readlink(path))
        if not path.exists():
            return cls(path=path, content=None)
        st = path.stat()
        return cls(
            path=path,
            content=path.read_bytes(),
            mode=st.st_mode & 0o7777,
            uid=st.st_uid,
            gid=st.st_gid,
        )

    def restore(self) -> None:
        """Put the file back exactly as it was when the snapshot was taken."""
        if self.link is not None:
            self.path.unlink(missing_ok=True)
            os.symlink(self.link, self.path)
            logger.debug("Restored %s (symlink to %s)", self.path, self.link)
            return
        if self.content is None:
            self.path.unlink(missing_ok=True)
            logger.debug("Restored %s (removed, did not exist before)", self.path)
            return
        atomic_write(self.path, self.content, mode=self.mode, uid=self.uid, gid=self.gid)
        logger.debug("Restored %s (%d bytes)", self.path, len(self.content))
