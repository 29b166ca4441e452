"""
Idempotent actions — check, apply, optionally roll back.

Every host mutation is an action. ``check()`` is side-effect free and
tells the engine whether the mutation is still needed; ``apply()`` is
only called when it is, and raises on failure. The engine (not the
action) decides when to re-check after an apply, see ``verify``.

File-producing actions derive from ``FileAction``: their new content
is computed up front, so the transaction can stage it next to the
target, validate it, and commit it with a rename.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path

from src.adapters.shell.filesystem import FileSnapshot, chown, read_text
from src.core.engine.staging import StagedFile
from src.core.errors import ActionError
from src.core.models.action import CheckResult, Receipt

logger = logging.getLogger(__name__)


def require_ok(action: str, receipt: Receipt) -> Receipt:
    """Raise ``ActionError`` if ``receipt`` records a failed command."""
    if receipt.failed:
        detail = (receipt.error or "").strip() or f"exit status {receipt.return_code}"
        raise ActionError(action, f"`{receipt.command}` failed: {detail}")
    return receipt


class IdempotentAction(ABC):
    """A named unit of host mutation.

    Attributes:
        name: Human-readable, unique within a plan.
        required: A failing required action stops its group; a failing
            best-effort action is recorded and the group continues.
        reversible: Whether ``rollback()`` can undo ``apply()``.
        verify: Whether the engine re-runs ``check()`` after ``apply()``.
    """

    reversible: bool = False
    verify: bool = True

    def __init__(self, name: str, *, required: bool = True):
        self.name = name
        self.required = required

    @abstractmethod
    def check(self) -> CheckResult:
        """Whether the desired state already holds. Never mutates."""

    @abstractmethod
    def apply(self) -> None:
        """Bring the host into the desired state.

        Raises:
            ActionError: The underlying command or mutation failed.
        """

    def rollback(self) -> None:
        """Undo a successful ``apply()``."""
        raise NotImplementedError(f"{self.name} cannot be rolled back")

    def describe(self) -> str:
        """One-line description used in dry-run output."""
        return self.name

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name!r}>"


class FileAction(IdempotentAction):
    """An action whose whole effect is the content of one file.

    Subclasses implement ``content(current)``, the complete desired
    text given the current text (None when the file does not exist).
    The action is satisfied when the file already holds exactly that
    text (and the requested mode, if any).

    Ownership given as ``owner`` ("user" or "user:group") is applied
    after commit; it is not part of the check.
    """

    reversible = True

    def __init__(
        self,
        name: str,
        target: Path,
        *,
        mode: int | None = None,
        owner: str | None = None,
        required: bool = True,
    ):
        super().__init__(name, required=required)
        self.target = Path(target)
        self.mode = mode
        self.owner = owner
        self._snapshot: FileSnapshot | None = None

    @abstractmethod
    def content(self, current: str | None) -> str:
        """The complete desired file content."""

    def check(self) -> CheckResult:
        current = read_text(self.target)
        if current is None or current != self.content(current):
            return CheckResult.UNSATISFIED
        if self.mode is not None and self.target.stat().st_mode & 0o7777 != self.mode:
            return CheckResult.UNSATISFIED
        return CheckResult.SATISFIED

    def stage(self) -> StagedFile:
        """Snapshot the target and write the new content beside it."""
        self._snapshot = FileSnapshot.take(self.target)
        current = read_text(self.target)
        return StagedFile.create(self.target, self.content(current), mode=self.mode)

    def committed(self) -> None:
        """Hook run after the staged file replaced the target."""
        if self.owner:
            user, _, group = self.owner.partition(":")
            try:
                chown(self.target, user, group or None)
            except (LookupError, OSError) as e:
                raise ActionError(self.name, f"cannot chown {self.target} to {self.owner}: {e}") from e

    def apply(self) -> None:
        staged = self.stage()
        try:
            staged.commit()
        except OSError as e:
            staged.discard()
            raise ActionError(self.name, f"cannot write {self.target}: {e}") from e
        self.committed()

    def rollback(self) -> None:
        if self._snapshot is None:
            return
        self._snapshot.restore()
        logger.info("Rolled back %s", self.target)

    def describe(self) -> str:
        return f"{self.name} ({self.target})"
