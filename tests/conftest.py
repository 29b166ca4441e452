"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest
import yaml

from src.adapters.mock import MockRunner
from src.adapters.registry import AdapterRegistry
from src.core.config.loader import ENV_LOCK_FILE
from src.core.models.config import DeployConfig, PathsConfig


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def runner() -> MockRunner:
    """A mock command runner: every command succeeds, every tool is on PATH."""
    return MockRunner()


@pytest.fixture
def adapters(runner: MockRunner) -> AdapterRegistry:
    """Mock adapters sharing ``runner``."""
    return AdapterRegistry.for_runner(runner)


@pytest.fixture
def host(tmp_path: Path) -> Path:
    """A fake filesystem root with the directories a stock VPS has."""
    root = tmp_path / "host"
    for directory in (
        "etc/nginx/sites-available",
        "etc/nginx/sites-enabled",
        "etc/ssh",
        "etc/systemd/system",
        "etc/supervisor/conf.d",
        "etc/php/8.4/fpm/pool.d",
        "etc/sudoers.d",
        "var/www",
        "srv",
    ):
        (root / directory).mkdir(parents=True)
    (root / "etc/ssh/sshd_config").write_text(
        "Include /etc/ssh/sshd_config.d/*.conf\n#Port 22\nPasswordAuthentication yes\n"
    )
    (root / "etc/php/8.4/fpm/pool.d/www.conf").write_text(
        "[www]\nuser = nobody\ngroup = nobody\n;listen.owner = nobody\npm = static\n"
    )
    (root / "etc/hosts").write_text("127.0.0.1 localhost\n127.0.1.1 old-name\n")
    (root / "etc/fstab").write_text("UUID=1234 / ext4 defaults 0 1\n")
    return root


@pytest.fixture
def config(host: Path) -> DeployConfig:
    """A config pointing every host path into ``host``."""
    return DeployConfig(
        lock_file=str(host / "run/lock/vpsdeploy.lock"),
        paths=PathsConfig(
            nginx_sites_available=str(host / "etc/nginx/sites-available"),
            nginx_sites_enabled=str(host / "etc/nginx/sites-enabled"),
            nginx_mime_types=str(host / "etc/nginx/mime.types"),
            web_root=str(host / "var/www"),
            systemd_dir=str(host / "etc/systemd/system"),
            supervisor_dir=str(host / "etc/supervisor/conf.d"),
            php_fpm_pool=str(host / "etc/php/8.4/fpm/pool.d/www.conf"),
            sshd_config=str(host / "etc/ssh/sshd_config"),
            fail2ban_jail=str(host / "etc/fail2ban/jail.local"),
            apt_auto_upgrades=str(host / "etc/apt/apt.conf.d/20auto-upgrades"),
            go_cache=str(host / "var/cache"),
            workspace=str(host / "srv"),
            hosts_file=str(host / "etc/hosts"),
            fstab=str(host / "etc/fstab"),
            swap_file=str(host / "swapfile"),
            sudoers_dir=str(host / "etc/sudoers.d"),
        ),
    )


@pytest.fixture
def config_file(config: DeployConfig, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """``config`` written out as a vpsdeploy.yml."""
    monkeypatch.delenv(ENV_LOCK_FILE, raising=False)
    path = tmp_path / "vpsdeploy.yml"
    path.write_text(yaml.safe_dump(config.model_dump()), encoding="utf-8")
    return path
