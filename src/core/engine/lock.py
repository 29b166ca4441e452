"""
Advisory run lock — one provisioning or deploy run per host.

The lock is a small JSON file created with ``O_CREAT | O_EXCL``, so
two runs racing for it cannot both win. It records who holds it.
A lock left behind by a crashed run is never removed automatically:
``vpsdeploy lock status`` shows it and ``vpsdeploy lock clear``
removes it.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError

from src.core.errors import AlreadyRunning

logger = logging.getLogger(__name__)


class LockInfo(BaseModel):
    """Contents of the lock file."""

    pid: int
    started_at: str
    command: str = ""
    host: str = ""

    @property
    def is_stale(self) -> bool:
        """Whether the holding process no longer exists on this host."""
        if self.host and self.host != socket.gethostname():
            return False
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def describe(self) -> str:
        return f"pid {self.pid}, {self.command or 'unknown command'}, since {self.started_at}"


def read_lock(path: Path) -> LockInfo | None:
    """Read the lock file, or None if nobody holds the lock.

    An unreadable or corrupt lock file is reported with pid 0 so that
    it still shows up as held.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return LockInfo.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError):
        logger.warning("Lock file %s is not valid JSON lock info", path)
        return LockInfo(pid=0, started_at="", command="<corrupt lock file>")


def clear_lock(path: Path) -> bool:
    """Remove the lock file. Returns whether there was one."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.info("Cleared lock %s", path)
    return True


class AdvisoryLock:
    """Context manager holding the run lock.

    Usage:
        with AdvisoryLock(path, "deploy next"):
            ...

    Raises:
        AlreadyRunning: The lock file already exists.
    """

    def __init__(self, path: Path, command: str = ""):
        self.path = Path(path)
        self.command = command
        self.info: LockInfo | None = None

    @property
    def held(self) -> bool:
        return self.info is not None

    def acquire(self) -> LockInfo:
        info = LockInfo(
            pid=os.getpid(),
            started_at=datetime.now(UTC).isoformat(),
            command=self.command,
            host=socket.gethostname(),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = read_lock(self.path)
            raise AlreadyRunning(str(self.path), holder.describe() if holder else "") from None

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(info.model_dump_json() + "\n")
        self.info = info
        logger.debug("Acquired lock %s", self.path)
        return info

    def release(self) -> None:
        if self.info is None:
            return
        self.path.unlink(missing_ok=True)
        self.info = None
        logger.debug("Released lock %s", self.path)

    def __enter__(self) -> AdvisoryLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
