"""
Apt adapter — Debian/Ubuntu package management.

Uses the apt/dpkg CLIs — never python-apt. The package index is
refreshed at most once per adapter instance (once per run).
"""

from __future__ import annotations

import logging

from src.adapters.base import CommandRunner, PackageManager
from src.core.models.action import Receipt

logger = logging.getLogger(__name__)

_NONINTERACTIVE = {"DEBIAN_FRONTEND": "noninteractive"}


class AptPackageManager(PackageManager):
    """Install and query packages with apt-get / dpkg-query."""

    def __init__(self, runner: CommandRunner, timeout: int = 900):
        super().__init__(runner)
        self.timeout = timeout
        self._index_updated = False

    def is_installed(self, name: str) -> bool:
        receipt = self.runner.run(
            ["dpkg-query", "-W", "-f=${Status}", name],
            timeout=30,
        )
        # "install ok installed" — anything else (deinstall, half-configured) is not
        return receipt.ok and receipt.output.strip().endswith("ok installed")

    def update_index(self) -> Receipt:
        receipt = self.runner.run(
            ["apt-get", "update", "-y"],
            timeout=self.timeout,
            env=_NONINTERACTIVE,
        )
        if receipt.ok:
            self._index_updated = True
        else:
            logger.warning("apt-get update failed: %s", receipt.error)
        return receipt

    def install(self, *names: str) -> Receipt:
        if not self._index_updated:
            self.update_index()
        logger.info("Installing packages: %s", " ".join(names))
        return self.runner.run(
            ["apt-get", "install", "-y", "--no-install-recommends", *names],
            timeout=self.timeout,
            env=_NONINTERACTIVE,
        )
