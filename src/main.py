"""
vpsdeploy — CLI entrypoint.

Usage:
    python -m src.main --help
    python -m src.main provision --dry-run
    python -m src.main deploy next --repo git@github.com:me/app.git
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from src import __version__
from src.core.observability.logging_config import resolve_level, setup_from_environment
from src.core.plans.deploy import APP_KINDS
from src.core.plans.provision import PROVISION_STEPS


@click.group()
@click.version_option(version=__version__, prog_name="vpsdeploy")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to vpsdeploy.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """vpsdeploy — provision a VPS and deploy apps behind nginx."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_from_environment(resolve_level(debug=debug, verbose=verbose))


def _run_options(func):
    """Options shared by provision and deploy."""
    options = [
        click.option("--quiet", "-q", is_flag=True, help="Suppress banners and the summary."),
        click.option("--yes", "-y", "assume_yes", is_flag=True,
                     help="Accept every default without prompting."),
        click.option("--dry-run", is_flag=True, help="Only check; show what would change."),
        click.option("--mock", is_flag=True, help="Simulate external commands (files are still written)."),
        click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command()
@_run_options
@click.option(
    "--only",
    multiple=True,
    type=click.Choice(PROVISION_STEPS),
    help="Run only this step (repeatable).",
)
@click.pass_context
def provision(
    ctx: click.Context,
    quiet: bool,
    assume_yes: bool,
    dry_run: bool,
    mock: bool,
    as_json: bool,
    only: tuple[str, ...],
) -> None:
    """Harden this host and install the common stack.

    Examples:

        vpsdeploy provision

        vpsdeploy provision --only ssh --only firewall --dry-run
    """
    from src.core.use_cases.provision import run_provision
    from src.ui.cli.report import ProgressPrinter, banner, finish

    show_progress = not (quiet or as_json)
    if show_progress:
        banner("provision", dry_run, mock)

    result = run_provision(
        config_path=ctx.obj.get("config_path"),
        only=list(only) or None,
        assume_yes=assume_yes,
        dry_run=dry_run,
        mock_mode=mock,
        observer=ProgressPrinter(ctx.obj.get("verbose", False)) if show_progress else None,
    )
    finish(result, as_json=as_json, quiet=quiet)


@cli.command()
@click.argument("kind", type=click.Choice(APP_KINDS))
@_run_options
@click.option("--repo", default=None, help="Git repository URL.")
@click.option("--folder", default=None, help="Folder name (default: repository name).")
@click.option("--domain", default=None, help="Domain the site is served on.")
@click.pass_context
def deploy(
    ctx: click.Context,
    kind: str,
    quiet: bool,
    assume_yes: bool,
    dry_run: bool,
    mock: bool,
    as_json: bool,
    repo: str | None,
    folder: str | None,
    domain: str | None,
) -> None:
    """Deploy an app: clone, build, publish and serve it through nginx.

    Examples:

        vpsdeploy deploy astro --repo https://github.com/me/site.git --domain example.com

        vpsdeploy deploy laravel --yes --dry-run
    """
    from src.core.use_cases.deploy import run_deploy
    from src.ui.cli.report import ProgressPrinter, banner, finish

    show_progress = not (quiet or as_json)
    if show_progress:
        banner(f"deploy {kind}", dry_run, mock)

    result = run_deploy(
        kind,
        config_path=ctx.obj.get("config_path"),
        repo=repo,
        folder=folder,
        domain=domain,
        assume_yes=assume_yes,
        dry_run=dry_run,
        mock_mode=mock,
        observer=ProgressPrinter(ctx.obj.get("verbose", False)) if show_progress else None,
    )
    finish(result, as_json=as_json, quiet=quiet)


@cli.command()
@click.argument("template")
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE",
              help="Placeholder value (repeatable).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def render(ctx: click.Context, template: str, assignments: tuple[str, ...], as_json: bool) -> None:
    """Render a template to stdout.

    TEMPLATE is a bundled template name (e.g. next.conf) or a file path.
    """
    from src.core.use_cases.render import render_template

    result = render_template(template, assignments, config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(int(result.exit_code))

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(int(result.exit_code))

    click.echo(result.text, nl=False)


# ── Register sub-command groups from src/ui/cli/ ──────────────────

from src.ui.cli.lock import lock

cli.add_command(lock)


if __name__ == "__main__":
    cli()
