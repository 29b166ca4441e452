"""
Plan building blocks shared by provision and deploy.

Plans are policy: they turn answers into action groups. Everything
here is about getting valid answers (validators, prompts) and about
the groups every plan needs (installing missing tools).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from src.adapters.prompt import InputSource
from src.adapters.registry import AdapterRegistry
from src.core.data import DataRegistry, get_registry
from src.core.engine.actions import EnsureCommand
from src.core.engine.template import load_template, render_text
from src.core.engine.transaction import ActionGroup
from src.core.errors import PreconditionFailed
from src.core.models.config import DeployConfig
from src.core.models.template import Template

logger = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 2204

# ── Input validation ────────────────────────────────────────────

_DOMAIN = re.compile(r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?\.[A-Za-z]{2,}$")
_GIT_URL = re.compile(r"^(?:https://|git://|git@[A-Za-z0-9.-]+:)[A-Za-z0-9./_-]+$")
_FOLDER_FORBIDDEN = re.compile(r"[/\\*]")
_HOSTNAME_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_TIMEZONE = re.compile(r"^(?:UTC|[A-Z][A-Za-z_]+(?:/[A-Za-z0-9_+-]+){1,2})$")
_USERNAME = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")


def validate_domain(value: str) -> str:
    value = value.strip().lower()
    if not value:
        raise PreconditionFailed("A domain is required")
    if not _DOMAIN.match(value):
        raise PreconditionFailed(
            f"Invalid domain '{value}' (must have a valid TLD like .com, .net)"
        )
    return value


def validate_folder_name(value: str) -> str:
    value = value.strip()
    if not value or value in (".", "..") or _FOLDER_FORBIDDEN.search(value):
        raise PreconditionFailed(f"Invalid folder name '{value}' (cannot contain /, \\, *)")
    return value


def validate_git_url(value: str) -> str:
    value = value.strip()
    if not value:
        raise PreconditionFailed("A git repository URL is required")
    if not _GIT_URL.match(value):
        raise PreconditionFailed(
            f"Invalid git URL '{value}'. Must be an HTTPS, git:// or SSH URL "
            "(e.g. git@github.com:user/repo.git)"
        )
    return value


def validate_port(value: str) -> str:
    value = value.strip()
    if not value.isdigit() or not 1024 <= int(value) <= 65535:
        raise PreconditionFailed(f"Invalid port '{value}'. Must be between 1024 and 65535")
    return str(int(value))


def validate_hostname(value: str) -> str:
    value = value.strip().lower()
    labels = value.split(".")
    if not value or len(value) > 253 or not all(_HOSTNAME_LABEL.match(label) for label in labels):
        raise PreconditionFailed(
            f"Invalid hostname '{value}' (letters, digits and hyphens, e.g. web-1)"
        )
    return value


def validate_timezone(value: str) -> str:
    value = value.strip()
    if not _TIMEZONE.match(value):
        raise PreconditionFailed(
            f"Invalid timezone '{value}' (use a tz database name like Europe/Paris)"
        )
    return value


def validate_username(value: str) -> str:
    value = value.strip()
    if not _USERNAME.match(value) or value == "root":
        raise PreconditionFailed(
            f"Invalid user name '{value}' (lower-case letters, digits, - and _)"
        )
    return value


def validate_swap_size(value: str) -> str:
    value = value.strip().upper().removesuffix("G")
    if not value.isdigit() or not 1 <= int(value) <= 64:
        raise PreconditionFailed(f"Invalid swap size '{value}'. Must be 1 to 64 (GB)")
    return str(int(value))


def default_folder(git_url: str) -> str:
    """``basename <url> .git``."""
    name = git_url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name[:-4] if name.endswith(".git") else name


def pem_files_valid(key_path: Path, cert_path: Path) -> bool:
    """Whether both files exist and look like a PEM key and certificate."""
    try:
        key = key_path.read_text(encoding="utf-8", errors="replace")
        cert = cert_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return bool(re.search(r"BEGIN.*PRIVATE KEY", key)) and "BEGIN CERTIFICATE" in cert


# ── Plan context ────────────────────────────────────────────────


@dataclass
class PlanContext:
    """Everything a plan builder needs: config, adapters, answers."""

    config: DeployConfig
    adapters: AdapterRegistry
    input: InputSource
    catalog: DataRegistry = field(default_factory=get_registry)
    allow_install: bool = True

    def ask(
        self,
        key: str,
        prompt: str,
        default: str = "",
        validate: Callable[[str], str] | None = None,
        secret: bool = False,
    ) -> str:
        while True:
            answer = self.input.ask(key, prompt, default=default, secret=secret)
            if validate is None:
                return answer.strip()
            try:
                return validate(answer)
            except PreconditionFailed as e:
                if not self.input.interactive:
                    raise
                self.input.reject(key, str(e))

    def confirm(self, key: str, prompt: str, default: bool = True) -> bool:
        return self.input.confirm(key, prompt, default=default)

    def template(self, name: str) -> Template:
        return load_template(name, self.config.template_dirs)

    @property
    def php_subs(self) -> dict[str, str]:
        return {"PHP_VERSION": self.config.php_version}

    def ensure_command(self, command: str) -> EnsureCommand:
        """EnsureCommand for ``command`` using the install catalog.

        A command that is missing right now is only installed if the
        operator agrees (``install_<command>``, default yes).
        """
        recipe = self.catalog.command_packages.get(command, {})
        provides = [render_text(p, self.php_subs) for p in recipe.get("packages", [])]
        allow = self.allow_install
        if allow and self.adapters.runner.which(command) is None:
            allow = self.confirm(
                f"install_{command}", f"{command} is not installed. Install it now?", True
            )
        return EnsureCommand(
            self.adapters.runner,
            self.adapters.packages,
            command,
            provides=provides,
            install_command=recipe.get("command"),
            allow_install=allow,
        )

    def prerequisites(self, commands: Sequence[str], name: str = "prerequisites") -> ActionGroup:
        """A sequential group making sure every command is available."""
        return ActionGroup(
            name=name,
            actions=[self.ensure_command(c) for c in commands],
            prerequisite=True,
        )
