"""
Adapter registry — the set of host collaborators a run talks to.

Actions never construct adapters themselves; a plan is built against
one registry, so switching the registry to mock mode switches every
command the run would issue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.adapters.base import CommandRunner, PackageManager, ServiceManager, SourceControl
from src.adapters.mock import MockPackageManager, MockRunner, MockSourceControl
from src.adapters.shell.command import SubprocessRunner
from src.adapters.system.apt import AptPackageManager
from src.adapters.system.process import Pm2Control, SupervisorControl
from src.adapters.system.systemd import SystemdServiceManager
from src.adapters.vcs.git import GitSource

logger = logging.getLogger(__name__)


@dataclass
class AdapterRegistry:
    """Bundle of host adapters sharing one command runner."""

    runner: CommandRunner
    packages: PackageManager
    services: ServiceManager
    supervisor: SupervisorControl
    pm2: Pm2Control
    vcs: SourceControl
    mock_mode: bool = False

    @classmethod
    def create(cls, mock_mode: bool = False) -> AdapterRegistry:
        """Build the real adapters, or the mock set when ``mock_mode``.

        Mock mode still writes files to the configured paths; only
        commands (apt, systemctl, git, ...) are simulated.
        """
        if mock_mode:
            logger.debug("Using mock adapters")
            return cls.for_runner(MockRunner(), mock_mode=True)
        return cls.for_runner(SubprocessRunner())

    @classmethod
    def for_runner(cls, runner: CommandRunner, mock_mode: bool = False) -> AdapterRegistry:
        if isinstance(runner, MockRunner):
            packages: PackageManager = MockPackageManager(runner)
            vcs: SourceControl = MockSourceControl(runner)
            mock_mode = True
        else:
            packages = AptPackageManager(runner)
            vcs = GitSource(runner)
        return cls(
            runner=runner,
            packages=packages,
            services=SystemdServiceManager(runner),
            supervisor=SupervisorControl(runner),
            pm2=Pm2Control(runner),
            vcs=vcs,
            mock_mode=mock_mode,
        )
