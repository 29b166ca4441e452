"""
Receipt and ApplyResult models — the execution contract.

Receipts are what adapters hand back for every external command:
adapters never raise, failures are captured in the receipt.
ApplyResults are what the engine records for every action it
checks or applies.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class CheckResult(str, Enum):
    """Outcome of an action's pre-check."""

    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"


class Receipt(BaseModel):
    """Result of one external command.

    Adapters NEVER raise for a failing command — the failure is
    captured here and the caller decides what it means.
    """

    command: str
    status: Literal["ok", "failed"] = "ok"
    return_code: int | None = 0

    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    output: str = ""
    error: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the command succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        """Whether the command failed."""
        return self.status == "failed"

    @classmethod
    def success(cls, command: str, output: str = "", **kwargs: Any) -> Receipt:
        """Create a success receipt."""
        return cls(command=command, status="ok", output=output, **kwargs)

    @classmethod
    def failure(cls, command: str, error: str, **kwargs: Any) -> Receipt:
        """Create a failure receipt."""
        kwargs.setdefault("return_code", None)
        return cls(command=command, status="failed", error=error, **kwargs)


ApplyStatus = Literal["applied", "already_satisfied", "failed", "pending", "skipped"]


class ApplyResult(BaseModel):
    """What happened to a single action during a run.

    ``pending`` is only produced by a dry run (the action would be
    applied); ``skipped`` marks actions that never got their turn
    because an earlier failure stopped the group or the run.
    """

    action: str
    status: ApplyStatus
    reason: str | None = None
    required: bool = True
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("applied", "already_satisfied", "pending")

    @classmethod
    def applied(cls, action: str, required: bool = True) -> ApplyResult:
        return cls(action=action, status="applied", required=required)

    @classmethod
    def satisfied(cls, action: str, required: bool = True) -> ApplyResult:
        return cls(action=action, status="already_satisfied", required=required)

    @classmethod
    def failure(
        cls,
        action: str,
        reason: str,
        required: bool = True,
        error_kind: str | None = None,
    ) -> ApplyResult:
        return cls(
            action=action,
            status="failed",
            reason=reason,
            required=required,
            error_kind=error_kind,
        )

    @classmethod
    def skip(cls, action: str, reason: str = "", required: bool = True) -> ApplyResult:
        return cls(action=action, status="skipped", reason=reason or None, required=required)
