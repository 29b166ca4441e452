"""
Provision use case — harden a fresh VPS and install the common stack.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from src.adapters.prompt import InputSource
from src.adapters.registry import AdapterRegistry
from src.core.engine.transaction import Observer, Plan
from src.core.plans.common import PlanContext
from src.core.plans.provision import build_provision_plan, collect_answers
from src.core.use_cases.run import RunResult, run_plan


def run_provision(
    config_path: Path | None = None,
    only: Sequence[str] | None = None,
    assume_yes: bool = False,
    dry_run: bool = False,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
    input_source: InputSource | None = None,
    observer: Observer | None = None,
) -> RunResult:
    """Provision this host.

    Args:
        only: Run just these steps (see ``PROVISION_STEPS``).

    See ``run_plan`` for the remaining arguments.
    """

    def build(ctx: PlanContext) -> Plan:
        return build_provision_plan(ctx, collect_answers(ctx, only))

    return run_plan(
        "provision",
        build,
        config_path=config_path,
        assume_yes=assume_yes,
        dry_run=dry_run,
        mock_mode=mock_mode,
        registry=registry,
        input_source=input_source,
        observer=observer,
    )
