"""
Shell command runner — execute host commands and capture output.

This is the most fundamental adapter: every other adapter (apt,
systemd, git, ...) runs its commands through it.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path

from src.adapters.base import CommandRunner
from src.core.models.action import Receipt

logger = logging.getLogger(__name__)


def format_command(argv: Sequence[str]) -> str:
    """Render an argv list the way a user would type it."""
    return shlex.join(str(a) for a in argv)


class SubprocessRunner(CommandRunner):
    """Run commands with ``subprocess.run`` (no shell)."""

    def run(
        self,
        argv: Sequence[str],
        cwd: str | Path | None = None,
        timeout: int = 300,
        env: Mapping[str, str] | None = None,
    ) -> Receipt:
        command = format_command(argv)
        logger.debug("Executing: %s (cwd=%s)", command, cwd or ".")
        start = time.monotonic()

        run_env = None
        if env:
            run_env = {**os.environ, **env}

        try:
            result = subprocess.run(
                [str(a) for a in argv],
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=run_env,
            )
        except subprocess.TimeoutExpired:
            return Receipt.failure(
                command=command,
                error=f"Command timed out after {timeout}s",
                metadata={"timeout": timeout},
            )
        except FileNotFoundError:
            return Receipt.failure(
                command=command,
                error=f"Command not found: {argv[0]}",
                return_code=127,
            )
        except OSError as e:
            return Receipt.failure(command=command, error=f"Command execution error: {e}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        output = result.stdout.strip()
        stderr = result.stderr.strip()

        if result.returncode == 0:
            return Receipt.success(
                command=command,
                output=output,
                return_code=0,
                duration_ms=elapsed_ms,
                metadata={"stderr": stderr} if stderr else {},
            )

        logger.debug("Command failed (%d): %s", result.returncode, command)
        return Receipt.failure(
            command=command,
            error=stderr or f"Command exited with code {result.returncode}",
            output=output,
            return_code=result.returncode,
            duration_ms=elapsed_ms,
        )

    def which(self, command: str) -> str | None:
        return shutil.which(command)
