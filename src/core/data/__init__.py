"""
Central data registry for static catalogs and bundled templates.

Loads catalogs from ``src/core/data/catalogs/`` once at first access
and caches them for the process lifetime. Plans read app-kind
definitions and the command → package table from here instead of
hard-coding them.

Usage::

    from src.core.data import get_registry

    registry = get_registry()
    kind = registry.app_kinds["next"]          # dict
    spec = registry.command_packages["php"]     # {"packages": [...]}
"""

from __future__ import annotations

import json
import logging
from functools import cached_property
from pathlib import Path

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).parent

TEMPLATES_DIR = _DATA_DIR / "templates"


def _load_json(relative_path: str) -> dict:
    """Load a JSON file relative to the data directory."""
    path = _DATA_DIR / relative_path
    if not path.exists():
        logger.warning("Data file not found: %s", path)
        return {}
    with open(path, encoding="utf-8") as f:
        return json.load(f)


class DataRegistry:
    """Registry for the static catalogs shipped with vpsdeploy."""

    @cached_property
    def app_kinds(self) -> dict[str, dict]:
        """Deployable app kinds (astro, next, laravel, go) and their build recipe."""
        data = _load_json("catalogs/app_kinds.json")
        logger.debug("Loaded %d app kinds", len(data))
        return data

    @cached_property
    def command_packages(self) -> dict[str, dict]:
        """Command name → how to install it (apt packages or an install command)."""
        data = _load_json("catalogs/command_packages.json")
        logger.debug("Loaded %d command install recipes", len(data))
        return data

    def bundled_templates(self) -> list[str]:
        """Names of the templates bundled with the package."""
        return sorted(p.name for p in TEMPLATES_DIR.iterdir() if p.is_file())


# ── Module-level singleton ───────────────────────────────────────

_registry: DataRegistry | None = None


def get_registry() -> DataRegistry:
    """Return the process-level DataRegistry singleton."""
    global _registry  # noqa: PLW0603
    if _registry is None:
        _registry = DataRegistry()
    return _registry
