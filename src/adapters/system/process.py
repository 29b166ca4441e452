"""
Process manager adapters — supervisor and pm2.

Both only ever act as activate steps after a config file changed, so
they expose just the handful of verbs the deploy plans need.
"""

from __future__ import annotations

import logging
from pathlib import Path

from src.adapters.base import CommandRunner
from src.core.models.action import Receipt

logger = logging.getLogger(__name__)


class SupervisorControl:
    """supervisorctl: pick up changed program configs and restart them."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def reread(self) -> Receipt:
        return self.runner.run(["supervisorctl", "reread"], timeout=60)

    def update(self) -> Receipt:
        return self.runner.run(["supervisorctl", "update"], timeout=60)

    def restart(self, program: str) -> Receipt:
        return self.runner.run(["supervisorctl", "restart", f"{program}:*"], timeout=120)


class Pm2Control:
    """pm2: run Node apps from an ecosystem file."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def start_or_reload(self, ecosystem: Path) -> Receipt:
        return self.runner.run(
            ["pm2", "startOrReload", str(ecosystem)],
            cwd=ecosystem.parent,
            timeout=120,
        )

    def save(self) -> Receipt:
        return self.runner.run(["pm2", "save"], timeout=60)
