"""
Transactional apply — run a plan group by group.

A plan is an ordered list of action groups. Each group is committed
independently:

    atomic group:
        check → stage files → validate → commit → apply deferred
        → activate → (on failure after commit) roll back or report
    sequential group:
        check → apply, one action at a time

A required group that fails stops the run; later groups are reported
as skipped. Nothing is retried: recovery is re-running the plan, which
only re-applies what ``check()`` still reports as unsatisfied.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from src.core.engine.action import FileAction, IdempotentAction
from src.core.engine.lock import AdvisoryLock
from src.core.engine.staging import StagedFile
from src.core.engine.validators import Validation
from src.core.errors import ActionError, DeployError, Uncommittable, ValidationFailed
from src.core.models.action import ApplyResult, CheckResult
from src.core.models.outcome import GroupOutcome, TransactionReport

logger = logging.getLogger(__name__)

# Failures an action may raise that the engine turns into results.
_ACTION_ERRORS = (DeployError, OSError)

Observer = Callable[[str, ApplyResult], None]


@dataclass
class ActionGroup:
    """A set of actions committed together.

    Attributes:
        atomic: Stage, validate and commit file actions together, and
            undo the group if a later step fails.
        validation: Checked against the staged files of an atomic group.
        activate: Steps run after the group changed something (reloads,
            restarts). Never run when every action was already satisfied.
        required: A failing required group stops the run.
        prerequisite: Failures mean a required tool is missing.
    """

    name: str
    actions: list[IdempotentAction] = field(default_factory=list)
    atomic: bool = False
    validation: Validation | None = None
    activate: list[IdempotentAction] = field(default_factory=list)
    required: bool = True
    prerequisite: bool = False


@dataclass
class Plan:
    """An ordered list of action groups."""

    name: str
    groups: list[ActionGroup] = field(default_factory=list)

    def add(self, group: ActionGroup) -> ActionGroup:
        self.groups.append(group)
        return group

    @property
    def total_actions(self) -> int:
        return sum(len(g.actions) + len(g.activate) for g in self.groups)

    def group(self, name: str) -> ActionGroup | None:
        return next((g for g in self.groups if g.name == name), None)


def _failure(action: IdempotentAction, exc: BaseException) -> ApplyResult:
    return ApplyResult.failure(
        action.name,
        str(exc),
        required=action.required,
        error_kind=type(exc).__name__,
    )


def _apply_and_verify(action: IdempotentAction, verify: bool = True) -> None:
    action.apply()
    if verify and action.verify and action.check() is not CheckResult.SATISFIED:
        raise ActionError(action.name, "did not take effect")


class _GroupRun:
    """Execution state of one group."""

    def __init__(self, group: ActionGroup, observer: Observer | None, verify: bool = True):
        self.group = group
        self.observer = observer
        self.verify = verify
        self.outcome = GroupOutcome(
            name=group.name,
            atomic=group.atomic,
            required=group.required,
            prerequisite=group.prerequisite,
        )

    def record(self, result: ApplyResult, activation: bool = False) -> None:
        target = self.outcome.activated if activation else self.outcome.results
        target.append(result)
        if result.status == "failed":
            logger.warning("[%s] %s failed: %s", self.group.name, result.action, result.reason)
        else:
            logger.info("[%s] %s: %s", self.group.name, result.action, result.status)
        if self.observer is not None:
            self.observer(self.group.name, result)

    def fail(self, status: str, exc: BaseException) -> GroupOutcome:
        self.outcome.status = status  # type: ignore[assignment]
        self.outcome.error = str(exc)
        self.outcome.error_kind = type(exc).__name__
        return self.outcome

    def skip_rest(self, actions: Sequence[IdempotentAction], reason: str) -> None:
        for action in actions:
            self.record(ApplyResult.skip(action.name, reason, required=action.required))

    # ── activate ────────────────────────────────────────────────

    def activate(self) -> BaseException | None:
        """Run activate steps; returns the first required failure."""
        steps = self.group.activate
        for i, step in enumerate(steps):
            try:
                if step.check() is CheckResult.SATISFIED:
                    self.record(ApplyResult.satisfied(step.name, step.required), activation=True)
                    continue
                _apply_and_verify(step, self.verify)
            except _ACTION_ERRORS as e:
                self.record(_failure(step, e), activation=True)
                if step.required:
                    for rest in steps[i + 1:]:
                        self.record(
                            ApplyResult.skip(rest.name, f"stopped after {step.name}", rest.required),
                            activation=True,
                        )
                    return e
                continue
            self.record(ApplyResult.applied(step.name, step.required), activation=True)
        return None

    def settle(self, changed: bool) -> GroupOutcome:
        """Status of a group that ran to completion."""
        best_effort_failed = any(
            r.status == "failed" for r in [*self.outcome.results, *self.outcome.activated]
        )
        if best_effort_failed:
            self.outcome.status = "partial"
        elif changed:
            self.outcome.status = "committed"
        else:
            self.outcome.status = "unchanged"
        return self.outcome

    # ── sequential ──────────────────────────────────────────────

    def run_sequential(self) -> GroupOutcome:
        changed = False
        actions = self.group.actions
        for i, action in enumerate(actions):
            try:
                if action.check() is CheckResult.SATISFIED:
                    self.record(ApplyResult.satisfied(action.name, action.required))
                    continue
                _apply_and_verify(action, self.verify)
            except _ACTION_ERRORS as e:
                self.record(_failure(action, e))
                if action.required:
                    self.skip_rest(actions[i + 1:], f"stopped after {action.name}")
                    return self.fail("failed", e)
                continue
            self.record(ApplyResult.applied(action.name, action.required))
            changed = True

        if changed:
            error = self.activate()
            if error is not None:
                return self.fail("failed", error)
        return self.settle(changed)

    # ── atomic ──────────────────────────────────────────────────

    def run_atomic(self) -> GroupOutcome:
        actions = self.group.actions
        pending: list[IdempotentAction] = []

        for i, action in enumerate(actions):
            try:
                satisfied = action.check() is CheckResult.SATISFIED
            except _ACTION_ERRORS as e:
                self.record(_failure(action, e))
                self.skip_rest([*pending, *actions[i + 1:]], f"{action.name} could not be checked")
                return self.fail("failed", e)
            if satisfied:
                self.record(ApplyResult.satisfied(action.name, action.required))
            else:
                pending.append(action)

        if not pending:
            return self.settle(changed=False)

        staged: list[tuple[FileAction, StagedFile]] = []
        deferred: list[IdempotentAction] = []
        try:
            for action in pending:
                if isinstance(action, FileAction):
                    staged.append((action, action.stage()))
                else:
                    deferred.append(action)
        except _ACTION_ERRORS as e:
            for _, item in staged:
                item.discard()
            for action in pending:
                self.record(_failure(action, e))
            return self.fail("failed", e)

        validation = self.group.validation
        if validation is not None:
            validation.group = validation.group or self.group.name
            try:
                validation.validate([item for _, item in staged])
            except (ValidationFailed, OSError) as e:
                for _, item in staged:
                    item.discard()
                reason = e.reason if isinstance(e, ValidationFailed) else str(e)
                for action in pending:
                    self.record(
                        ApplyResult.failure(action.name, reason, action.required, "ValidationFailed")
                    )
                self.outcome.status = "validation_failed"
                self.outcome.error = str(e)
                self.outcome.error_kind = "ValidationFailed"
                return self.outcome

        return self.commit(staged, deferred)

    def commit(
        self,
        staged: list[tuple[FileAction, StagedFile]],
        deferred: list[IdempotentAction],
    ) -> GroupOutcome:
        committed: list[IdempotentAction] = []
        order: list[IdempotentAction] = [a for a, _ in staged] + deferred
        failure: BaseException | None = None

        for index, (action, item) in enumerate(staged):
            try:
                item.commit()
                committed.append(action)
                action.committed()
                if self.verify and action.verify and action.check() is not CheckResult.SATISFIED:
                    raise ActionError(action.name, "did not take effect")
            except _ACTION_ERRORS as e:
                self.record(_failure(action, e))
                # Includes the failing item, whose rename may never have happened
                for _, rest in staged[index:]:
                    rest.discard()
                failure = e
                break
            self.record(ApplyResult.applied(action.name, action.required))

        if failure is None:
            for action in deferred:
                try:
                    _apply_and_verify(action, self.verify)
                except _ACTION_ERRORS as e:
                    self.record(_failure(action, e))
                    if action.required:
                        failure = e
                        break
                    continue
                committed.append(action)
                self.record(ApplyResult.applied(action.name, action.required))

        if failure is not None:
            done = {a.name for a in committed} | {r.action for r in self.outcome.results}
            self.skip_rest([a for a in order if a.name not in done], "group failed")
        else:
            failure = self.activate() if committed else None

        if failure is None:
            return self.settle(changed=bool(committed))
        return self.unwind(committed, failure)

    def unwind(self, committed: list[IdempotentAction], failure: BaseException) -> GroupOutcome:
        """Undo committed actions after a post-commit failure, if possible."""
        irreversible = [a.name for a in committed if not a.reversible]
        if irreversible:
            logger.error(
                "[%s] cannot roll back (%s); leaving host as is",
                self.group.name,
                ", ".join(irreversible),
            )
            return self.fail("uncommittable", Uncommittable(self.group.name, str(failure)))

        for action in reversed(committed):
            try:
                action.rollback()
            except (*_ACTION_ERRORS, NotImplementedError) as e:
                logger.error("[%s] rollback of %s failed: %s", self.group.name, action.name, e)
                self.outcome.rollback_errors.append(f"{action.name}: {e}")
                continue
            self.outcome.rolled_back.append(action.name)

        status = "rollback_failed" if self.outcome.rollback_errors else "rolled_back"
        return self.fail(status, failure)


def _dry_run_group(group: ActionGroup, observer: Observer | None) -> GroupOutcome:
    run = _GroupRun(group, observer)
    pending = False
    for action in group.actions:
        try:
            satisfied = action.check() is CheckResult.SATISFIED
        except _ACTION_ERRORS as e:
            run.record(_failure(action, e))
            run.outcome.status = "failed"
            run.outcome.error = str(e)
            run.outcome.error_kind = type(e).__name__
            continue
        if satisfied:
            run.record(ApplyResult.satisfied(action.name, action.required))
        else:
            run.record(
                ApplyResult(action=action.name, status="pending", reason=action.describe(),
                            required=action.required)
            )
            pending = True

    if pending:
        for step in group.activate:
            run.record(
                ApplyResult(action=step.name, status="pending", reason=step.describe(),
                            required=step.required),
                activation=True,
            )
    if run.outcome.status != "failed":
        run.outcome.status = "planned" if pending else "unchanged"
    return run.outcome


def _execute(
    plan: Plan, dry_run: bool, observer: Observer | None, verify: bool
) -> TransactionReport:
    report = TransactionReport(plan=plan.name, dry_run=dry_run)
    stopped_by: str | None = None

    for group in plan.groups:
        if stopped_by is not None:
            outcome = GroupOutcome(
                name=group.name,
                status="skipped",
                atomic=group.atomic,
                required=group.required,
                prerequisite=group.prerequisite,
                error=f"not run: '{stopped_by}' failed",
                results=[
                    ApplyResult.skip(a.name, f"'{stopped_by}' failed", a.required)
                    for a in group.actions
                ],
            )
            report.groups.append(outcome)
            continue

        logger.info("Group '%s' (%s)", group.name, "atomic" if group.atomic else "sequential")
        if dry_run:
            outcome = _dry_run_group(group, observer)
        elif group.atomic:
            outcome = _GroupRun(group, observer, verify).run_atomic()
        else:
            outcome = _GroupRun(group, observer, verify).run_sequential()
        report.groups.append(outcome)

        if outcome.failed and group.required and not dry_run:
            logger.error("Group '%s' ended %s; stopping", group.name, outcome.status)
            stopped_by = group.name

    return report


def execute_plan(
    plan: Plan,
    lock: AdvisoryLock | None = None,
    dry_run: bool = False,
    observer: Observer | None = None,
    verify: bool = True,
) -> TransactionReport:
    """Execute every group of a plan, in order.

    Args:
        plan: The plan to run.
        lock: Held for the whole run when given.
        dry_run: Only run checks; unsatisfied actions are reported
            ``pending`` and nothing on the host changes.
        observer: Called with (group name, result) as results come in.
        verify: Re-check actions after applying them. Mock runs turn
            this off since simulated commands leave no trace to check.

    Returns:
        TransactionReport with one outcome per group.

    Raises:
        AlreadyRunning: The lock is held by another run.
    """
    if lock is None:
        return _execute(plan, dry_run, observer, verify)
    with lock:
        return _execute(plan, dry_run, observer, verify)
