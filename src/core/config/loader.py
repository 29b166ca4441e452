"""
Configuration loader — reads vpsdeploy.yml into a DeployConfig.

A missing config file is not an error: every setting has a default
for a stock Debian/Ubuntu host. An explicitly given path must exist.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from src.core.errors import ConfigError
from src.core.models.config import DeployConfig

logger = logging.getLogger(__name__)

CONFIG_FILE = "vpsdeploy.yml"
ENV_LOCK_FILE = "VPSDEPLOY_LOCK_FILE"


def find_config_file(start_dir: Path | None = None) -> Path | None:
    """Search for vpsdeploy.yml from ``start_dir`` (default: cwd) upward."""
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(path: Path | None = None) -> DeployConfig:
    """Load and validate the deploy configuration.

    Args:
        path: Explicit config path. If None, searches upward from cwd
            and falls back to defaults when nothing is found.

    Raises:
        ConfigError: If an explicit file is missing, or any file found
            is unreadable or invalid.
    """
    if path is not None and not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    if path is None:
        path = find_config_file()

    if path is None:
        logger.debug("No %s found, using defaults", CONFIG_FILE)
        data: dict = {}
    else:
        data = _read_yaml(path)

    env_lock = os.environ.get(ENV_LOCK_FILE)
    if env_lock:
        data["lock_file"] = env_lock

    try:
        config = DeployConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path or 'defaults'}: {e}") from e

    if path is not None:
        config = _resolve_relative(config, path.parent.resolve())
        logger.info("Loaded config from %s", path)
    return config


def _read_yaml(path: Path) -> dict:
    logger.debug("Loading config from %s", path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def _resolve_relative(config: DeployConfig, base: Path) -> DeployConfig:
    """Make template dirs and the workspace relative to the config file."""
    template_dirs = [str(base / d) if not Path(d).is_absolute() else d for d in config.template_dirs]
    workspace = config.paths.workspace
    if not Path(workspace).is_absolute():
        workspace = str(base / workspace)
    paths = config.paths.model_copy(update={"workspace": workspace})
    return config.model_copy(update={"template_dirs": template_dirs, "paths": paths})
