"""
Run use case — the shared vertical slice of provision and deploy.

    load config → pick adapters and input → ask questions → build plan
    → execute under the run lock → report

Every failure that can happen before the engine runs (bad config,
invalid answers, lock held, not root) is turned into a ``RunResult``
with an error and exit code instead of an exception.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from src.adapters.prompt import ConsoleInput, InputSource, ScriptedInput
from src.adapters.registry import AdapterRegistry
from src.core.config.loader import load_config
from src.core.engine.lock import AdvisoryLock, read_lock
from src.core.engine.transaction import Observer, Plan, execute_plan
from src.core.errors import (
    AlreadyRunning,
    ConfigError,
    MissingPlaceholder,
    PreconditionFailed,
    PrerequisiteMissing,
)
from src.core.models.config import DeployConfig
from src.core.models.outcome import ExitCode, TransactionReport
from src.core.plans.common import PlanContext

logger = logging.getLogger(__name__)

PlanBuilder = Callable[[PlanContext], Plan]


@dataclass
class RunResult:
    """Result of a provision or deploy run."""

    command: str = ""
    plan: Plan | None = None
    report: TransactionReport | None = None
    dry_run: bool = False
    mock_mode: bool = False
    error: str | None = None
    error_code: ExitCode = ExitCode.OK

    @property
    def exit_code(self) -> ExitCode:
        if self.error:
            return self.error_code
        if self.report is None:
            return ExitCode.OK
        return self.report.exit_code

    def to_dict(self) -> dict:
        result: dict = {"command": self.command, "exit_code": int(self.exit_code)}
        if self.error:
            result["error"] = self.error
            return result

        result["dry_run"] = self.dry_run
        result["mock"] = self.mock_mode
        if self.report:
            result["report"] = self.report.to_dict()
        return result


def _fail(result: RunResult, message: str, code: ExitCode) -> RunResult:
    logger.error(message)
    result.error = message
    result.error_code = code
    return result


def make_input(config: DeployConfig, assume_yes: bool) -> InputSource:
    """Scripted answers for ``--yes``, prompts otherwise; presets apply to both."""
    if assume_yes:
        return ScriptedInput(config.answers)
    return ConsoleInput(config.answers)


def run_plan(
    command: str,
    build: PlanBuilder,
    config_path: Path | None = None,
    assume_yes: bool = False,
    dry_run: bool = False,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
    input_source: InputSource | None = None,
    observer: Observer | None = None,
) -> RunResult:
    """Build a plan from answers and execute it.

    Args:
        command: Human name of the run, recorded in the lock file.
        build: Asks the questions and returns the plan.
        config_path: Optional explicit path to vpsdeploy.yml.
        assume_yes: Take defaults and presets without prompting.
        dry_run: Only check; nothing on the host changes.
        mock_mode: Simulate external commands (files are still written).
        registry: Pre-configured adapters (tests).
        input_source: Pre-configured input (tests).
        observer: Called with (group name, result) as results come in.

    Returns:
        RunResult with the report, or an error and its exit code.
    """
    result = RunResult(command=command, dry_run=dry_run, mock_mode=mock_mode)

    # ── Load config ──────────────────────────────────────────────
    try:
        config = load_config(config_path)
    except ConfigError as e:
        return _fail(result, str(e), ExitCode.PRECONDITION_FAILED)

    if registry is None:
        registry = AdapterRegistry.create(mock_mode=mock_mode)
    if input_source is None:
        input_source = make_input(config, assume_yes)

    if not (dry_run or registry.mock_mode) and os.geteuid() != 0:
        return _fail(
            result, f"'{command}' changes system files; run it as root (sudo)",
            ExitCode.PRECONDITION_FAILED,
        )

    # Fail before asking anything when another run holds the lock;
    # execute_plan still acquires it atomically.
    lock_path = Path(config.lock_file)
    holder = read_lock(lock_path)
    if holder is not None and not dry_run:
        return _fail(
            result, str(AlreadyRunning(str(lock_path), holder.describe())),
            ExitCode.ALREADY_RUNNING,
        )

    # ── Ask and plan ─────────────────────────────────────────────
    ctx = PlanContext(config=config, adapters=registry, input=input_source)
    try:
        plan = build(ctx)
    except PrerequisiteMissing as e:
        return _fail(result, str(e), ExitCode.PREREQUISITE_MISSING)
    except (PreconditionFailed, MissingPlaceholder) as e:
        return _fail(result, str(e), ExitCode.PRECONDITION_FAILED)
    result.plan = plan

    # ── Execute ──────────────────────────────────────────────────
    try:
        result.report = execute_plan(
            plan,
            lock=None if dry_run else AdvisoryLock(lock_path, command),
            dry_run=dry_run,
            observer=observer,
            verify=not registry.mock_mode,
        )
    except AlreadyRunning as e:
        return _fail(result, str(e), ExitCode.ALREADY_RUNNING)
    except PermissionError as e:
        return _fail(
            result, f"Cannot create lock file {lock_path}: {e}", ExitCode.PRECONDITION_FAILED
        )

    logger.info(
        "%s finished: %s (%d/%d groups changed)",
        command, result.report.status, result.report.changed, result.report.total,
    )
    return result
