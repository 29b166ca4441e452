"""
Git adapter — fetch application source.

Uses the git CLI — never raw API calls. Cloning into a non-empty
directory is refused unless the caller explicitly authorized an
overwrite.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from src.adapters.base import SourceControl
from src.core.models.action import Receipt

logger = logging.getLogger(__name__)


class GitSource(SourceControl):
    """Clone and inspect git checkouts."""

    def is_accessible(self, url: str) -> bool:
        receipt = self.runner.run(
            ["git", "ls-remote", "--exit-code", "--heads", url],
            timeout=60,
            env={"GIT_TERMINAL_PROMPT": "0"},
        )
        return receipt.ok

    def origin_of(self, dest: Path) -> str | None:
        if not (dest / ".git").exists():
            return None
        receipt = self.runner.run(["git", "-C", str(dest), "remote", "get-url", "origin"], timeout=15)
        return receipt.output.strip() if receipt.ok else None

    def clone(self, url: str, dest: Path, overwrite: bool = False) -> Receipt:
        command = f"git clone {url} {dest}"

        if dest.exists() and any(dest.iterdir()):
            if not overwrite:
                return Receipt.failure(
                    command=command,
                    error=f"Destination {dest} exists and is not empty (overwrite not authorized)",
                )
            logger.info("Removing existing %s before re-clone", dest)
            shutil.rmtree(dest)

        if not self.is_accessible(url):
            return Receipt.failure(
                command=command,
                error=f"Cannot access repository {url}. Check URL, permissions, or SSH key.",
            )

        dest.parent.mkdir(parents=True, exist_ok=True)
        return self.runner.run(
            ["git", "clone", url, str(dest)],
            timeout=600,
            env={"GIT_TERMINAL_PROMPT": "0"},
        )
