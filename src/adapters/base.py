"""
Adapter base — the contract between the engine and the host.

Actions only talk to the host through these interfaces, never
directly through ``subprocess``. Every command an adapter runs goes
through a ``CommandRunner``, so swapping the runner (mock mode, tests)
swaps the whole host.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path

from src.core.models.action import Receipt


class CommandRunner(ABC):
    """Runs external commands and returns receipts.

    Implementations NEVER raise for a failing command — the failure is
    captured in the Receipt with status='failed'.
    """

    @abstractmethod
    def run(
        self,
        argv: Sequence[str],
        cwd: str | Path | None = None,
        timeout: int = 300,
        env: Mapping[str, str] | None = None,
    ) -> Receipt:
        """Run ``argv`` and wait for it to finish."""

    @abstractmethod
    def which(self, command: str) -> str | None:
        """Resolve a command on PATH, or None if absent."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class PackageManager(ABC):
    """System package manager (apt on Debian/Ubuntu)."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    @abstractmethod
    def is_installed(self, name: str) -> bool:
        """Whether a package is installed. Fast, never raises."""

    @abstractmethod
    def install(self, *names: str) -> Receipt:
        """Install one or more packages."""


class ServiceManager(ABC):
    """Service supervisor (systemd)."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    @abstractmethod
    def is_active(self, service: str) -> bool:
        """Whether the service is running."""

    @abstractmethod
    def is_enabled(self, service: str) -> bool:
        """Whether the service starts at boot."""

    @abstractmethod
    def reload(self, service: str) -> Receipt:
        """Reload configuration without a restart."""

    @abstractmethod
    def restart(self, service: str) -> Receipt:
        """Restart the service."""

    @abstractmethod
    def enable(self, service: str) -> Receipt:
        """Enable the service at boot."""

    @abstractmethod
    def start(self, service: str) -> Receipt:
        """Start the service."""

    @abstractmethod
    def daemon_reload(self) -> Receipt:
        """Re-read unit files."""


class SourceControl(ABC):
    """Fetches application source code."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    @abstractmethod
    def is_accessible(self, url: str) -> bool:
        """Whether the repository can be reached with current credentials."""

    @abstractmethod
    def origin_of(self, dest: Path) -> str | None:
        """The origin URL of an existing checkout, or None."""

    @abstractmethod
    def clone(self, url: str, dest: Path, overwrite: bool = False) -> Receipt:
        """Clone ``url`` into ``dest``.

        Fails for an inaccessible URL, and for a non-empty ``dest``
        unless ``overwrite`` was explicitly authorized.
        """
