"""
Systemd adapter — service control through systemctl.
"""

from __future__ import annotations

from src.adapters.base import ServiceManager
from src.core.models.action import Receipt


class SystemdServiceManager(ServiceManager):
    """Start, enable, reload and query units with systemctl."""

    def is_active(self, service: str) -> bool:
        return self.runner.run(["systemctl", "is-active", "--quiet", service], timeout=15).ok

    def is_enabled(self, service: str) -> bool:
        return self.runner.run(["systemctl", "is-enabled", "--quiet", service], timeout=15).ok

    def reload(self, service: str) -> Receipt:
        return self._systemctl("reload", service)

    def restart(self, service: str) -> Receipt:
        return self._systemctl("restart", service)

    def enable(self, service: str) -> Receipt:
        return self._systemctl("enable", service)

    def start(self, service: str) -> Receipt:
        return self._systemctl("start", service)

    def daemon_reload(self) -> Receipt:
        return self.runner.run(["systemctl", "daemon-reload"], timeout=60)

    def _systemctl(self, verb: str, service: str) -> Receipt:
        return self.runner.run(["systemctl", verb, service], timeout=120)
