"""
Mock runner — universal test double for every host command.

Used in mock mode to simulate the host without executing anything.
By default every command succeeds with empty output and every command
is on PATH. Responses can be scripted per command: the most recently
registered key that occurs in the rendered command line wins.

MockPackageManager and MockSourceControl keep just enough state (installed
packages, cloned checkouts) for post-apply checks to pass in mock mode.
"""

from __future__ import annotations

import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from src.adapters.base import CommandRunner, PackageManager, SourceControl
from src.adapters.shell.command import format_command
from src.core.models.action import Receipt


@dataclass
class MockCall:
    """One recorded invocation."""

    argv: list[str]
    command: str
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class MockRunner(CommandRunner):
    """Records commands and returns scripted receipts."""

    def __init__(self, default_output: str = ""):
        self._default_output = default_output
        self._responses: dict[str, Receipt] = {}
        self._missing: set[str] = set()
        self._call_log: list[MockCall] = []

    @property
    def call_log(self) -> list[MockCall]:
        """All invocations this mock has received."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    @property
    def commands(self) -> list[str]:
        """Rendered command lines, in call order."""
        return [c.command for c in self._call_log]

    def ran(self, fragment: str) -> bool:
        """Whether any recorded command line contains ``fragment``."""
        return any(fragment in c for c in self.commands)

    def set_response(self, key: str, receipt: Receipt) -> None:
        """Return ``receipt`` for commands containing ``key``."""
        self._responses.pop(key, None)
        self._responses[key] = receipt

    def set_output(self, key: str, output: str) -> None:
        """Succeed with ``output`` for commands containing ``key``."""
        self.set_response(key, Receipt.success(command=key, output=output))

    def set_failure(self, key: str, error: str = "Mock failure", return_code: int = 1) -> None:
        """Fail commands containing ``key``."""
        self.set_response(key, Receipt.failure(command=key, error=error, return_code=return_code))

    def clear_response(self, key: str) -> None:
        self._responses.pop(key, None)

    def set_missing(self, *commands: str) -> None:
        """Make ``which`` report these commands as absent."""
        self._missing.update(commands)

    def set_present(self, *commands: str) -> None:
        self._missing.difference_update(commands)

    def run(
        self,
        argv: Sequence[str],
        cwd: str | Path | None = None,
        timeout: int = 300,
        env: Mapping[str, str] | None = None,
    ) -> Receipt:
        command = format_command(argv)
        self._call_log.append(
            MockCall(
                argv=[str(a) for a in argv],
                command=command,
                cwd=str(cwd) if cwd else None,
                env=dict(env or {}),
            )
        )

        for key in reversed(list(self._responses)):
            if key in command:
                scripted = self._responses[key]
                return scripted.model_copy(update={"command": command})

        return Receipt.success(
            command=command,
            output=self._default_output,
            metadata={"mock": True},
        )

    def which(self, command: str) -> str | None:
        if command in self._missing:
            return None
        return f"/usr/bin/{command}"

    def reset(self) -> None:
        """Clear call log and scripted responses."""
        self._call_log.clear()
        self._responses.clear()
        self._missing.clear()


class MockPackageManager(PackageManager):
    """In-memory package database; ``install`` marks packages installed."""

    def __init__(self, runner: CommandRunner, installed: set[str] | None = None):
        super().__init__(runner)
        self.installed: set[str] = set(installed or ())
        self._broken: set[str] = set()

    def set_broken(self, *names: str) -> None:
        """Make installing these packages fail."""
        self._broken.update(names)

    def is_installed(self, name: str) -> bool:
        return name in self.installed

    def install(self, *names: str) -> Receipt:
        receipt = self.runner.run(["apt-get", "install", "-y", *names])
        broken = [n for n in names if n in self._broken]
        if broken:
            return Receipt.failure(
                command=receipt.command,
                error=f"E: Unable to locate package {broken[0]}",
                return_code=100,
            )
        if receipt.ok:
            self.installed.update(names)
        return receipt


class MockSourceControl(SourceControl):
    """Fake git: ``clone`` creates an empty checkout that remembers its origin."""

    def __init__(self, runner: CommandRunner, inaccessible: set[str] | None = None):
        super().__init__(runner)
        self.inaccessible: set[str] = set(inaccessible or ())

    def is_accessible(self, url: str) -> bool:
        return url not in self.inaccessible

    def origin_of(self, dest: Path) -> str | None:
        marker = dest / ".git" / "mock-origin"
        return marker.read_text(encoding="utf-8").strip() if marker.is_file() else None

    def clone(self, url: str, dest: Path, overwrite: bool = False) -> Receipt:
        command = f"git clone {url} {dest}"
        if dest.exists() and any(dest.iterdir()):
            if not overwrite:
                return Receipt.failure(
                    command=command,
                    error=f"Destination {dest} exists and is not empty (overwrite not authorized)",
                )
            shutil.rmtree(dest)
        if not self.is_accessible(url):
            return Receipt.failure(command=command, error=f"Cannot access repository {url}")
        receipt = self.runner.run(["git", "clone", url, str(dest)])
        if receipt.ok:
            (dest / ".git").mkdir(parents=True, exist_ok=True)
            (dest / ".git" / "mock-origin").write_text(url + "\n", encoding="utf-8")
        return receipt
