"""
CLI commands for the run lock.

Thin wrappers over ``src.core.engine.lock``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from src.core.errors import ConfigError
from src.core.models.outcome import ExitCode


def _lock_path(ctx: click.Context) -> Path:
    from src.core.config.loader import load_config

    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(int(ExitCode.PRECONDITION_FAILED))
    return Path(config.lock_file)


@click.group()
def lock() -> None:
    """Run lock — inspect or clear a lock left by a crashed run."""


@lock.command("status")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def lock_status(ctx: click.Context, as_json: bool) -> None:
    """Show who holds the run lock."""
    from src.core.engine.lock import read_lock

    path = _lock_path(ctx)
    info = read_lock(path)

    if as_json:
        payload: dict = {"path": str(path), "held": info is not None}
        if info is not None:
            payload.update(info.model_dump())
            payload["stale"] = info.is_stale
        click.echo(json.dumps(payload, indent=2))
        return

    if info is None:
        click.secho(f"🔓 Not locked ({path})", fg="green")
        return

    click.secho(f"🔒 Locked: {path}", fg="yellow", bold=True)
    click.echo(f"   {info.describe()}")
    if info.host:
        click.echo(f"   Host: {info.host}")
    if info.is_stale:
        click.secho(
            "   The holding process is gone; clear it with 'vpsdeploy lock clear'.",
            fg="yellow",
        )


@lock.command("clear")
@click.option("--force", is_flag=True, help="Clear even if the holder is still running.")
@click.pass_context
def lock_clear(ctx: click.Context, force: bool) -> None:
    """Remove a stale run lock."""
    from src.core.engine.lock import clear_lock, read_lock

    path = _lock_path(ctx)
    info = read_lock(path)
    if info is None:
        click.echo(f"🔓 Not locked ({path})")
        return

    if info.pid and not info.is_stale and not force:
        click.secho(
            f"❌ Lock is held by a running process ({info.describe()}). Use --force to clear it anyway.",
            fg="red",
            err=True,
        )
        sys.exit(int(ExitCode.ALREADY_RUNNING))

    try:
        clear_lock(path)
    except OSError as e:
        click.secho(f"❌ Could not remove {path}: {e}", fg="red", err=True)
        sys.exit(int(ExitCode.ACTION_FAILED))
    click.secho(f"✅ Cleared lock {path}", fg="green")
