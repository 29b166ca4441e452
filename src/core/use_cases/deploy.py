"""
Deploy use case — clone, build and serve one app on this host.
"""

from __future__ import annotations

from pathlib import Path

from src.adapters.prompt import InputSource
from src.adapters.registry import AdapterRegistry
from src.core.engine.transaction import Observer, Plan
from src.core.plans.common import PlanContext
from src.core.plans.deploy import build_deploy_plan, collect_answers
from src.core.use_cases.run import RunResult, run_plan


def run_deploy(
    kind: str,
    config_path: Path | None = None,
    repo: str | None = None,
    folder: str | None = None,
    domain: str | None = None,
    assume_yes: bool = False,
    dry_run: bool = False,
    mock_mode: bool = False,
    registry: AdapterRegistry | None = None,
    input_source: InputSource | None = None,
    observer: Observer | None = None,
) -> RunResult:
    """Deploy an app of the given kind (astro, next, laravel, go).

    ``repo``, ``folder`` and ``domain`` answer their questions up front.
    See ``run_plan`` for the remaining arguments.
    """

    def build(ctx: PlanContext) -> Plan:
        answers = collect_answers(ctx, kind, repo=repo, folder=folder, domain=domain)
        return build_deploy_plan(ctx, answers)

    return run_plan(
        f"deploy {kind}",
        build,
        config_path=config_path,
        assume_yes=assume_yes,
        dry_run=dry_run,
        mock_mode=mock_mode,
        registry=registry,
        input_source=input_source,
        observer=observer,
    )
