"""
Staged files — new file content parked next to its target.

A staged file lives in the target's own directory (so the final
``os.replace`` is an atomic rename on the same filesystem) under a
hidden name that no service picks up. It belongs to the transaction
until it is either committed over the target or discarded.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

STAGED_SUFFIX = ".staged"


@dataclass
class StagedFile:
    """A temp sibling of ``target`` holding the content to commit."""

    target: Path
    path: Path
    committed: bool = False
    discarded: bool = False

    @classmethod
    def create(cls, target: Path, content: str, mode: int | None = None) -> StagedFile:
        """Write ``content`` to a new staged sibling of ``target``.

        The staged file gets ``mode`` when given, otherwise the mode of
        the file it will replace (0o644 for a new file). Ownership of an
        existing target is carried over so the commit does not change it.
        """
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=target.parent,
            prefix=f".{target.name}.",
            suffix=STAGED_SUFFIX,
        )
        path = Path(tmp)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)

            existing = target.stat() if target.exists() and not target.is_symlink() else None
            if mode is None:
                mode = existing.st_mode & 0o7777 if existing else 0o644
            os.chmod(path, mode)

            if existing is not None:
                staged = path.stat()
                if (staged.st_uid, staged.st_gid) != (existing.st_uid, existing.st_gid):
                    os.chown(path, existing.st_uid, existing.st_gid)
        except OSError:
            path.unlink(missing_ok=True)
            raise

        logger.debug("Staged %s as %s", target, path.name)
        return cls(target=target, path=path)

    @property
    def pending(self) -> bool:
        return not (self.committed or self.discarded)

    def read_text(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def commit(self) -> None:
        """Atomically move the staged content over the target."""
        if not self.pending:
            return
        os.replace(self.path, self.target)
        self.committed = True
        logger.debug("Committed %s", self.target)

    def discard(self) -> None:
        """Remove the staged file, leaving the target untouched."""
        if not self.pending:
            return
        self.path.unlink(missing_ok=True)
        self.discarded = True
        logger.debug("Discarded staged %s", self.target)
