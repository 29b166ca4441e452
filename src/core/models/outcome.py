"""
Group outcomes and the run report.

Groups are committed independently, so a run is reported as a list
of per-group outcomes; partial progress across groups is expected.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Literal

from pydantic import BaseModel, Field

from src.core.models.action import ApplyResult


class ExitCode(IntEnum):
    """Process exit codes of the CLI."""

    OK = 0
    ACTION_FAILED = 1
    # 2 is reserved for click usage errors
    PREREQUISITE_MISSING = 3
    VALIDATION_FAILED = 4
    ROLLBACK_FAILED = 5
    ALREADY_RUNNING = 6
    PRECONDITION_FAILED = 7


GroupStatus = Literal[
    "committed",         # something changed, everything held
    "unchanged",         # every action was already satisfied
    "partial",           # changed, but a best-effort step failed
    "planned",           # dry run
    "validation_failed", # staged files rejected, live state untouched
    "failed",            # a required action failed before commit
    "rolled_back",       # post-commit failure, prior state restored
    "rollback_failed",   # post-commit failure, restore did not succeed
    "uncommittable",     # post-commit failure, no rollback path
    "skipped",           # not run because an earlier group stopped the run
]


_FAILED_STATUSES = frozenset(
    {"validation_failed", "failed", "rolled_back", "rollback_failed", "uncommittable"}
)


class GroupOutcome(BaseModel):
    """Result of applying one action group."""

    name: str
    status: GroupStatus = "unchanged"
    atomic: bool = False
    required: bool = True
    prerequisite: bool = False
    results: list[ApplyResult] = Field(default_factory=list)
    activated: list[ApplyResult] = Field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    rolled_back: list[str] = Field(default_factory=list)
    rollback_errors: list[str] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status in _FAILED_STATUSES

    @property
    def needs_attention(self) -> bool:
        """Whether a human has to look at the host before re-running."""
        return self.status in ("uncommittable", "rollback_failed")

    @property
    def exit_code(self) -> ExitCode:
        if self.status in ("uncommittable", "rollback_failed"):
            return ExitCode.ROLLBACK_FAILED
        if not self.failed or not self.required:
            return ExitCode.OK
        if self.status == "validation_failed":
            return ExitCode.VALIDATION_FAILED
        if self.prerequisite or self.error_kind == "PrerequisiteMissing":
            return ExitCode.PREREQUISITE_MISSING
        if self.error_kind == "PreconditionFailed":
            return ExitCode.PRECONDITION_FAILED
        return ExitCode.ACTION_FAILED


# Most severe first; the report's exit code is the first one any group hits.
_EXIT_SEVERITY = (
    ExitCode.ROLLBACK_FAILED,
    ExitCode.VALIDATION_FAILED,
    ExitCode.PREREQUISITE_MISSING,
    ExitCode.PRECONDITION_FAILED,
    ExitCode.ACTION_FAILED,
)


class TransactionReport(BaseModel):
    """Everything a run did, group by group."""

    plan: str = ""
    dry_run: bool = False
    groups: list[GroupOutcome] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.groups)

    @property
    def failed(self) -> int:
        return sum(1 for g in self.groups if g.failed)

    @property
    def changed(self) -> int:
        return sum(1 for g in self.groups if g.status in ("committed", "partial"))

    @property
    def all_ok(self) -> bool:
        return self.failed == 0

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "ok"
        if any(g.status in ("committed", "partial", "unchanged") for g in self.groups):
            return "partial"
        return "failed"

    @property
    def exit_code(self) -> ExitCode:
        codes = {g.exit_code for g in self.groups}
        for code in _EXIT_SEVERITY:
            if code in codes:
                return code
        return ExitCode.OK

    def to_dict(self) -> dict:
        return {
            "plan": self.plan,
            "dry_run": self.dry_run,
            "status": self.status,
            "exit_code": int(self.exit_code),
            "groups": [g.model_dump(mode="json") for g in self.groups],
        }
