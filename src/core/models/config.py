"""
DeployConfig model — host paths, defaults and preset answers.

Loaded from vpsdeploy.yml. Every field has a default that matches a
stock Debian/Ubuntu VPS, so running without a config file is valid.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class PathsConfig(BaseModel):
    """Where things live on the target host."""

    nginx_sites_available: str = "/etc/nginx/sites-available"
    nginx_sites_enabled: str = "/etc/nginx/sites-enabled"
    nginx_mime_types: str = "/etc/nginx/mime.types"
    web_root: str = "/var/www"
    systemd_dir: str = "/etc/systemd/system"
    supervisor_dir: str = "/etc/supervisor/conf.d"
    php_fpm_pool: str = ""          # empty = /etc/php/<php_version>/fpm/pool.d/www.conf
    sshd_config: str = "/etc/ssh/sshd_config"
    fail2ban_jail: str = "/etc/fail2ban/jail.local"
    apt_auto_upgrades: str = "/etc/apt/apt.conf.d/20auto-upgrades"
    hosts_file: str = "/etc/hosts"
    fstab: str = "/etc/fstab"
    swap_file: str = "/swapfile"
    sudoers_dir: str = "/etc/sudoers.d"
    go_cache: str = "/var/cache"    # GOCACHE / GOMODCACHE parent for systemd Go apps
    workspace: str = "."            # where repositories are cloned


DEFAULT_BASE_PACKAGES = [
    "curl",
    "git",
    "unzip",
    "rsync",
    "ca-certificates",
]


class DeployConfig(BaseModel):
    """Root configuration for a provisioning or deploy run."""

    lock_file: str = "/run/lock/vpsdeploy.lock"
    template_dirs: list[str] = Field(default_factory=list)

    web_user: str = "www-data"
    web_group: str = "www-data"
    php_version: str = "8.4"

    base_packages: list[str] = Field(default_factory=lambda: list(DEFAULT_BASE_PACKAGES))
    paths: PathsConfig = Field(default_factory=PathsConfig)

    # Preset answers, keyed like the prompts (e.g. ``domain``, ``ssh_port``)
    answers: dict[str, str] = Field(default_factory=dict)

    @field_validator("answers", mode="before")
    @classmethod
    def _stringify_answers(cls, value: Any) -> Any:
        # YAML turns `ssh_port: 2204` and `redis: yes` into int/bool
        if isinstance(value, dict):
            out: dict[str, str] = {}
            for key, val in value.items():
                if isinstance(val, bool):
                    out[str(key)] = "y" if val else "n"
                elif val is None:
                    out[str(key)] = ""
                else:
                    out[str(key)] = str(val)
            return out
        return value

    @property
    def php_fpm_pool_path(self) -> Path:
        if self.paths.php_fpm_pool:
            return Path(self.paths.php_fpm_pool)
        return Path(f"/etc/php/{self.php_version}/fpm/pool.d/www.conf")

    @property
    def php_fpm_service(self) -> str:
        return f"php{self.php_version}-fpm"

    @property
    def php_fpm_socket(self) -> str:
        return f"/run/php/php{self.php_version}-fpm.sock"

    @property
    def web_owner(self) -> str:
        return f"{self.web_user}:{self.web_group}"
