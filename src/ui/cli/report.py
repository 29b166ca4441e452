"""
Terminal output for provision and deploy runs.

Progress lines are printed as results come in (through the engine's
observer); the summary is printed once the run is over.
"""

from __future__ import annotations

import json
import sys

import click

from src.core.models.action import ApplyResult
from src.core.use_cases.run import RunResult

_RESULT_ICONS = {
    "applied": ("✓", "green"),
    "already_satisfied": ("=", "white"),
    "pending": ("→", "cyan"),
    "failed": ("✗", "red"),
    "skipped": ("⊘", "yellow"),
}

_GROUP_COLORS = {
    "committed": "green",
    "unchanged": "white",
    "planned": "cyan",
    "partial": "yellow",
    "skipped": "yellow",
}


class ProgressPrinter:
    """Observer printing one line per action result."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.current_group: str | None = None

    def __call__(self, group: str, result: ApplyResult) -> None:
        if group != self.current_group:
            self.current_group = group
            click.secho(f"\n   ▸ {group}", fg="cyan", bold=True)

        icon, color = _RESULT_ICONS.get(result.status, ("?", "white"))
        label = result.status.replace("_", " ")
        optional = "" if result.required else " (best-effort)"
        click.secho(f"     {icon} {result.action}", fg=color, nl=False)
        click.echo(f"  [{label}]{optional}")
        if result.reason and (result.status == "failed" or self.verbose):
            for line in result.reason.splitlines()[:5]:
                click.echo(f"       │ {line}")


def banner(title: str, dry_run: bool, mock: bool) -> None:
    mode_label = "[dry-run] " if dry_run else "[mock] " if mock else ""
    click.secho(f"\n⚡ {mode_label}{title}", fg="cyan", bold=True)


def print_summary(result: RunResult) -> None:
    report = result.report
    if report is None:
        return

    click.echo()
    click.secho("   Groups:", fg="white", bold=True)
    for group in report.groups:
        color = _GROUP_COLORS.get(group.status, "red")
        click.secho(f"     • {group.name}: {group.status}", fg=color)
        if group.error:
            click.echo(f"       {group.error}")
        for error in group.rollback_errors:
            click.secho(f"       rollback: {error}", fg="red")

    click.echo()
    status_color = {"ok": "green", "partial": "yellow", "failed": "red"}.get(report.status, "white")
    click.secho(
        f"   Result: {report.status} ({report.changed} changed, "
        f"{report.failed} failed, {report.total} groups)",
        fg=status_color,
        bold=True,
    )
    if any(g.needs_attention for g in report.groups):
        click.secho(
            "   ⚠️  Some changes could not be undone; check the host before re-running.",
            fg="yellow",
        )
    click.echo()


def finish(result: RunResult, as_json: bool, quiet: bool) -> None:
    """Print the outcome and exit with the run's exit code."""
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(int(result.exit_code))

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(int(result.exit_code))

    if not quiet:
        print_summary(result)
    sys.exit(int(result.exit_code))
