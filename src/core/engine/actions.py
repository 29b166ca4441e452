"""
Concrete actions — the host mutations provisioning and deploy plans use.

Each action talks to the host only through the adapters it was built
with, so the same plan runs against the real host or the mock set.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping, Sequence
from pathlib import Path

from src.adapters.base import CommandRunner, PackageManager, ServiceManager, SourceControl
from src.adapters.shell.filesystem import FileSnapshot, chown
from src.adapters.system.process import Pm2Control, SupervisorControl
from src.core.engine.action import FileAction, IdempotentAction, require_ok
from src.core.engine.template import render
from src.core.errors import ActionError, PreconditionFailed, PrerequisiteMissing
from src.core.models.action import CheckResult, Receipt
from src.core.models.template import Template

logger = logging.getLogger(__name__)

_SATISFIED = CheckResult.SATISFIED
_UNSATISFIED = CheckResult.UNSATISFIED


# ── Packages and tools ──────────────────────────────────────────


class EnsurePackage(IdempotentAction):
    """Install system packages that are not installed yet."""

    def __init__(
        self,
        packages: PackageManager,
        *names: str,
        name: str | None = None,
        required: bool = True,
    ):
        super().__init__(name or f"install {' '.join(names)}", required=required)
        self.packages = packages
        self.names = names

    def missing(self) -> list[str]:
        return [n for n in self.names if not self.packages.is_installed(n)]

    def check(self) -> CheckResult:
        return _UNSATISFIED if self.missing() else _SATISFIED

    def apply(self) -> None:
        missing = self.missing()
        logger.info("Installing %s", ", ".join(missing))
        require_ok(self.name, self.packages.install(*missing))


class EnsureCommand(IdempotentAction):
    """Make sure a command is on PATH, installing its provider if allowed.

    The provider is either a list of system packages or an install
    command (``corepack enable pnpm``, ``npm install -g pm2``).
    """

    def __init__(
        self,
        runner: CommandRunner,
        packages: PackageManager,
        command: str,
        *,
        provides: Sequence[str] = (),
        install_command: Sequence[str] | None = None,
        allow_install: bool = True,
        required: bool = True,
    ):
        super().__init__(f"ensure {command}", required=required)
        self.runner = runner
        self.packages = packages
        self.command = command
        self.provides = list(provides)
        self.install_command = list(install_command) if install_command else None
        self.allow_install = allow_install

    def check(self) -> CheckResult:
        return _SATISFIED if self.runner.which(self.command) else _UNSATISFIED

    def apply(self) -> None:
        if not self.allow_install:
            raise PrerequisiteMissing(f"{self.command} is required but not installed")
        if self.provides:
            logger.info("Installing %s for %s", ", ".join(self.provides), self.command)
            require_ok(self.name, self.packages.install(*self.provides))
        elif self.install_command:
            require_ok(self.name, self.runner.run(self.install_command, timeout=900))
        else:
            raise PrerequisiteMissing(f"{self.command} is required and no installer is known")

    def describe(self) -> str:
        via = " ".join(self.provides) or " ".join(self.install_command or []) or "nothing"
        return f"{self.name} (via {via})"


# ── Filesystem ──────────────────────────────────────────────────


class EnsureDirectory(IdempotentAction):
    """Create a directory (and parents) with optional mode and owner."""

    reversible = True

    def __init__(
        self,
        path: Path,
        *,
        owner: str | None = None,
        mode: int | None = None,
        required: bool = True,
    ):
        super().__init__(f"directory {path}", required=required)
        self.path = Path(path)
        self.owner = owner
        self.mode = mode
        self._created = False

    def check(self) -> CheckResult:
        if not self.path.is_dir():
            return _UNSATISFIED
        if self.mode is not None and self.path.stat().st_mode & 0o7777 != self.mode:
            return _UNSATISFIED
        return _SATISFIED

    def apply(self) -> None:
        try:
            if not self.path.exists():
                self.path.mkdir(parents=True)
                self._created = True
            if self.mode is not None:
                os.chmod(self.path, self.mode)
            if self.owner:
                user, _, group = self.owner.partition(":")
                chown(self.path, user, group or None)
        except (LookupError, OSError) as e:
            raise ActionError(self.name, str(e)) from e

    def rollback(self) -> None:
        if self._created and self.path.is_dir() and not any(self.path.iterdir()):
            self.path.rmdir()


class RenderFile(FileAction):
    """Write a rendered template to ``target``."""

    def __init__(
        self,
        target: Path,
        template: Template,
        substitutions: Mapping[str, str],
        *,
        mode: int | None = None,
        owner: str | None = None,
        name: str | None = None,
        required: bool = True,
    ):
        super().__init__(
            name or f"render {Path(target).name}",
            target,
            mode=mode,
            owner=owner,
            required=required,
        )
        self.template = template
        self.substitutions = dict(substitutions)

    def content(self, current: str | None) -> str:
        return render(self.template, self.substitutions)


def _env_line(key: str, value: str) -> str:
    if value and re.search(r"[\s#\"']", value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'{key}="{escaped}"'
    return f"{key}={value}"


class SetEnvValues(FileAction):
    """Upsert ``KEY=value`` lines in a dotenv file.

    An existing ``KEY=`` line is replaced in place; keys not present
    are appended in the order given. Everything else is left untouched.
    When ``seed`` names an existing file (``.env.example``) and the
    target does not exist yet, the seed is the starting content.
    """

    def __init__(
        self,
        target: Path,
        values: Mapping[str, str],
        *,
        seed: Path | None = None,
        owner: str | None = None,
        name: str | None = None,
        required: bool = True,
    ):
        super().__init__(
            name or f"configure {Path(target).name}",
            target,
            owner=owner,
            required=required,
        )
        self.values = dict(values)
        self.seed = seed

    def content(self, current: str | None) -> str:
        if current is None and self.seed is not None and self.seed.is_file():
            current = self.seed.read_text(encoding="utf-8")
        lines = (current or "").splitlines()
        remaining = dict(self.values)

        for i, line in enumerate(lines):
            match = re.match(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=", line)
            if match and match.group(1) in remaining:
                key = match.group(1)
                lines[i] = _env_line(key, remaining.pop(key))

        lines.extend(_env_line(k, v) for k, v in remaining.items())
        return "\n".join(lines) + "\n" if lines else ""


class SetDirectives(FileAction):
    """Set ``key<sep>value`` directives in a config file.

    Used for sshd_config (``Port 2204``, separator ``" "``) and php-fpm
    pools (``listen.owner = www-data``, separator ``" = "``). The first
    active occurrence of a key is replaced; failing that, the first
    commented-out occurrence is uncommented and replaced; failing that,
    the directive is appended.
    """

    def __init__(
        self,
        target: Path,
        directives: Mapping[str, str],
        *,
        separator: str = " ",
        comment: str = "#",
        name: str | None = None,
        required: bool = True,
    ):
        super().__init__(
            name or f"configure {Path(target).name}",
            target,
            required=required,
        )
        self.directives = dict(directives)
        self.separator = separator
        self.comment = comment

    def _pattern(self, key: str, commented: bool) -> re.Pattern[str]:
        prefix = rf"\s*{re.escape(self.comment)}+\s*" if commented else r"\s*"
        return re.compile(rf"^{prefix}{re.escape(key)}(?:\s*=\s*|\s+|$)")

    def content(self, current: str | None) -> str:
        if current is None:
            raise PreconditionFailed(f"{self.target} does not exist")
        lines = current.splitlines()

        for key, value in self.directives.items():
            wanted = f"{key}{self.separator}{value}"
            for commented in (False, True):
                pattern = self._pattern(key, commented)
                index = next((i for i, line in enumerate(lines) if pattern.match(line)), None)
                if index is not None:
                    lines[index] = wanted
                    break
            else:
                lines.append(wanted)

        return "\n".join(lines) + "\n"


class EnsureSymlink(IdempotentAction):
    """Point ``link`` at ``target`` (``ln -sf``)."""

    reversible = True

    def __init__(self, link: Path, target: Path, *, required: bool = True):
        super().__init__(f"link {Path(link).name}", required=required)
        self.link = Path(link)
        self.target = Path(target)
        self._snapshot: FileSnapshot | None = None

    def check(self) -> CheckResult:
        if self.link.is_symlink() and os.readlink(self.link) == str(self.target):
            return _SATISFIED
        return _UNSATISFIED

    def apply(self) -> None:
        if self.link.is_dir() and not self.link.is_symlink():
            raise PreconditionFailed(f"{self.link} is a directory")
        self._snapshot = FileSnapshot.take(self.link)

        tmp = self.link.with_name(f".{self.link.name}.link")
        try:
            self.link.parent.mkdir(parents=True, exist_ok=True)
            tmp.unlink(missing_ok=True)
            tmp.symlink_to(self.target)
            os.replace(tmp, self.link)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ActionError(self.name, str(e)) from e

    def rollback(self) -> None:
        if self._snapshot is not None:
            self._snapshot.restore()

    def describe(self) -> str:
        return f"{self.name} -> {self.target}"


# ── Source and build ────────────────────────────────────────────


class CloneRepository(IdempotentAction):
    """Clone a repository unless ``dest`` is already a checkout of it.

    With ``overwrite`` an existing non-empty ``dest`` is deleted and
    cloned afresh (once per run), which is how a redeploy picks up new
    commits.
    """

    def __init__(
        self,
        vcs: SourceControl,
        url: str,
        dest: Path,
        *,
        overwrite: bool = False,
        required: bool = True,
    ):
        super().__init__(f"clone {url}", required=required)
        self.vcs = vcs
        self.url = url
        self.dest = Path(dest)
        self.overwrite = overwrite
        self._cloned = False

    def check(self) -> CheckResult:
        if self.overwrite and not self._cloned and self.dest.exists() and any(self.dest.iterdir()):
            return _UNSATISFIED
        return _SATISFIED if self.vcs.origin_of(self.dest) == self.url else _UNSATISFIED

    def apply(self) -> None:
        if self.dest.exists() and any(self.dest.iterdir()) and not self.overwrite:
            raise PreconditionFailed(
                f"{self.dest} exists and is not empty; re-run and allow overwriting it"
            )
        if not self.vcs.is_accessible(self.url):
            raise PreconditionFailed(
                f"Cannot access repository {self.url}. Check URL, permissions, or SSH key."
            )
        require_ok(self.name, self.vcs.clone(self.url, self.dest, overwrite=self.overwrite))
        self._cloned = True

    def describe(self) -> str:
        return f"{self.name} into {self.dest}"


class RunCommand(IdempotentAction):
    """Run a command, unless ``creates`` exists or ``unless`` succeeds.

    Without either guard the command always runs and nothing is
    re-checked afterwards.
    """

    def __init__(
        self,
        runner: CommandRunner,
        name: str,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        creates: Path | None = None,
        unless: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        timeout: int = 900,
        required: bool = True,
    ):
        super().__init__(name, required=required)
        self.runner = runner
        self.argv = list(argv)
        self.cwd = cwd
        self.creates = creates
        self.unless = list(unless) if unless else None
        self.env = dict(env) if env else None
        self.timeout = timeout
        self.verify = creates is not None or unless is not None

    def check(self) -> CheckResult:
        if self.creates is not None and self.creates.exists():
            return _SATISFIED
        if self.unless is not None and self.runner.run(self.unless, cwd=self.cwd, timeout=60).ok:
            return _SATISFIED
        return _UNSATISFIED

    def apply(self) -> None:
        require_ok(
            self.name,
            self.runner.run(self.argv, cwd=self.cwd, timeout=self.timeout, env=self.env),
        )

    def describe(self) -> str:
        return f"{self.name}: {' '.join(self.argv)}"


# ── Services and process managers ───────────────────────────────


SERVICE_OPERATIONS = ("reload", "restart", "enable", "start", "daemon-reload")


class ServiceAction(IdempotentAction):
    """A systemd operation on a service.

    ``service`` may be a tuple of candidate unit names (``("ssh",
    "sshd")``); the first one the operation succeeds on wins. ``enable``
    and ``start`` are checked; the others always run.
    """

    def __init__(
        self,
        services: ServiceManager,
        service: str | Sequence[str],
        operation: str,
        *,
        required: bool = True,
    ):
        if operation not in SERVICE_OPERATIONS:
            raise ValueError(f"Unknown service operation: {operation}")
        candidates = (service,) if isinstance(service, str) else tuple(service)
        if not candidates:
            raise ValueError("ServiceAction needs at least one service name")
        label = "systemd" if operation == "daemon-reload" else "/".join(candidates)
        super().__init__(f"{operation} {label}", required=required)
        self.services = services
        self.candidates = candidates
        self.operation = operation
        self.verify = operation in ("enable", "start")

    def check(self) -> CheckResult:
        if self.operation == "enable":
            state_of = self.services.is_enabled
        elif self.operation == "start":
            state_of = self.services.is_active
        else:
            return _UNSATISFIED
        return _SATISFIED if any(state_of(s) for s in self.candidates) else _UNSATISFIED

    def apply(self) -> None:
        if self.operation == "daemon-reload":
            require_ok(self.name, self.services.daemon_reload())
            return

        verb = getattr(self.services, self.operation)
        for service in self.candidates:
            receipt = verb(service)
            if receipt.ok:
                return
        require_ok(self.name, receipt)


class SupervisorUpdate(IdempotentAction):
    """``supervisorctl reread`` + ``update`` after a program config changed."""

    verify = False

    def __init__(self, supervisor: SupervisorControl, program: str, *, required: bool = True):
        super().__init__(f"supervisor update {program}", required=required)
        self.supervisor = supervisor
        self.program = program

    def check(self) -> CheckResult:
        return _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.supervisor.reread())
        require_ok(self.name, self.supervisor.update())


class SupervisorRestart(IdempotentAction):
    """``supervisorctl restart <program>:*``."""

    verify = False

    def __init__(self, supervisor: SupervisorControl, program: str, *, required: bool = False):
        super().__init__(f"supervisor restart {program}", required=required)
        self.supervisor = supervisor
        self.program = program

    def check(self) -> CheckResult:
        return _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.supervisor.restart(self.program))


class Pm2Start(IdempotentAction):
    """Start or reload the apps of a pm2 ecosystem file."""

    verify = False

    def __init__(self, pm2: Pm2Control, ecosystem: Path, *, required: bool = True):
        super().__init__(f"pm2 start {Path(ecosystem).name}", required=required)
        self.pm2 = pm2
        self.ecosystem = Path(ecosystem)

    def check(self) -> CheckResult:
        return _UNSATISFIED

    def apply(self) -> None:
        if not self.ecosystem.is_file():
            raise PreconditionFailed(f"{self.ecosystem} not found; cannot start pm2")
        require_ok(self.name, self.pm2.start_or_reload(self.ecosystem))


class Pm2Save(IdempotentAction):
    """Persist the pm2 process list (best-effort by default)."""

    verify = False

    def __init__(self, pm2: Pm2Control, *, required: bool = False):
        super().__init__("pm2 save", required=required)
        self.pm2 = pm2

    def check(self) -> CheckResult:
        return _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.pm2.save())


# ── Firewall ────────────────────────────────────────────────────


def _ufw_status(runner: CommandRunner) -> str:
    receipt = runner.run(["ufw", "status"], timeout=30)
    return receipt.output if receipt.ok else ""


class UfwAllow(IdempotentAction):
    """Allow a port or application profile through ufw.

    ufw exits non-zero when a rule cannot be added, so the apply is
    trusted without a re-check.
    """

    verify = False

    def __init__(self, runner: CommandRunner, rule: str, *, required: bool = True):
        super().__init__(f"ufw allow {rule}", required=required)
        self.runner = runner
        self.rule = rule

    def check(self) -> CheckResult:
        for line in _ufw_status(self.runner).splitlines():
            fields = line.split()
            if fields and fields[0] == self.rule and "ALLOW" in fields:
                return _SATISFIED
        return _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.runner.run(["ufw", "allow", self.rule], timeout=60))


class UfwEnable(IdempotentAction):
    """Turn the firewall on (``ufw --force enable``)."""

    verify = False

    def __init__(self, runner: CommandRunner, *, required: bool = True):
        super().__init__("ufw enable", required=required)
        self.runner = runner

    def check(self) -> CheckResult:
        return _SATISFIED if "Status: active" in _ufw_status(self.runner) else _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.runner.run(["ufw", "--force", "enable"], timeout=60))


# ── Host basics ─────────────────────────────────────────────────


def _value_of(runner: CommandRunner, argv: Sequence[str]) -> str:
    receipt = runner.run(argv, timeout=30)
    return receipt.output.strip() if receipt.ok else ""


class SetTimezone(IdempotentAction):
    """``timedatectl set-timezone``."""

    def __init__(self, runner: CommandRunner, timezone: str, *, required: bool = True):
        super().__init__(f"timezone {timezone}", required=required)
        self.runner = runner
        self.timezone = timezone

    def check(self) -> CheckResult:
        current = _value_of(self.runner, ["timedatectl", "show", "-p", "Timezone", "--value"])
        return _SATISFIED if current == self.timezone else _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.runner.run(["timedatectl", "set-timezone", self.timezone], timeout=60))


class EnableNtp(IdempotentAction):
    """Turn on network time sync (``timedatectl set-ntp true``)."""

    def __init__(self, runner: CommandRunner, *, required: bool = True):
        super().__init__("enable NTP", required=required)
        self.runner = runner

    def check(self) -> CheckResult:
        current = _value_of(self.runner, ["timedatectl", "show", "-p", "NTP", "--value"])
        return _SATISFIED if current == "yes" else _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.runner.run(["timedatectl", "set-ntp", "true"], timeout=60))


class SetHostname(IdempotentAction):
    """``hostnamectl set-hostname`` (static hostname)."""

    def __init__(self, runner: CommandRunner, hostname: str, *, required: bool = True):
        super().__init__(f"hostname {hostname}", required=required)
        self.runner = runner
        self.hostname = hostname

    def check(self) -> CheckResult:
        current = _value_of(self.runner, ["hostnamectl", "--static"])
        return _SATISFIED if current == self.hostname else _UNSATISFIED

    def apply(self) -> None:
        require_ok(self.name, self.runner.run(["hostnamectl", "set-hostname", self.hostname], timeout=60))


class EnsureSwapFile(IdempotentAction):
    """Create, format and enable a swap file.

    Satisfied when ``swapon --show`` lists the file. An existing file
    is reused as is (no resize); the fstab entry is a separate action.
    """

    def __init__(self, runner: CommandRunner, path: Path, size_gb: int, *, required: bool = True):
        super().__init__(f"swap {Path(path).name} ({size_gb}G)", required=required)
        self.runner = runner
        self.path = Path(path)
        self.size_gb = size_gb

    def check(self) -> CheckResult:
        active = _value_of(self.runner, ["swapon", "--show=NAME", "--noheadings"]).split()
        return _SATISFIED if str(self.path) in active else _UNSATISFIED

    def apply(self) -> None:
        path = str(self.path)
        if not self.path.exists():
            require_ok(self.name, self.runner.run(["fallocate", "-l", f"{self.size_gb}G", path], timeout=300))
        require_ok(self.name, self.runner.run(["chmod", "600", path], timeout=30))
        require_ok(self.name, self.runner.run(["mkswap", path], timeout=120))
        require_ok(self.name, self.runner.run(["swapon", path], timeout=120))


class EnsureSudoUser(IdempotentAction):
    """A login user that is a member of the ``sudo`` group.

    New users get no password (``adduser --disabled-password``); they
    log in with SSH keys.
    """

    def __init__(self, runner: CommandRunner, user: str, *, required: bool = True):
        super().__init__(f"sudo user {user}", required=required)
        self.runner = runner
        self.user = user

    def _exists(self) -> bool:
        return self.runner.run(["getent", "passwd", self.user], timeout=30).ok

    def _in_sudo_group(self) -> bool:
        return "sudo" in _value_of(self.runner, ["id", "-nG", self.user]).split()

    def check(self) -> CheckResult:
        return _SATISFIED if self._exists() and self._in_sudo_group() else _UNSATISFIED

    def apply(self) -> None:
        if not self._exists():
            require_ok(
                self.name,
                self.runner.run(["adduser", "--gecos", "", "--disabled-password", self.user], timeout=120),
            )
        require_ok(self.name, self.runner.run(["usermod", "-aG", "sudo", self.user], timeout=60))


# ── Database ────────────────────────────────────────────────────


_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class EnsurePostgresDatabase(IdempotentAction):
    """Create a PostgreSQL role and a database owned by it.

    Runs ``psql`` as the ``postgres`` system user. Names must be plain
    lower-case identifiers so they can be used unquoted.
    """

    verify = False

    def __init__(
        self,
        runner: CommandRunner,
        database: str,
        user: str,
        password: str,
        *,
        required: bool = True,
    ):
        for label, value in (("database", database), ("user", user)):
            if not _IDENTIFIER.match(value):
                raise PreconditionFailed(f"Invalid PostgreSQL {label} name: {value!r}")
        super().__init__(f"postgres database {database}", required=required)
        self.runner = runner
        self.database = database
        self.user = user
        self.password = password

    def _psql(self, sql: str) -> Receipt:
        return self.runner.run(
            ["sudo", "-u", "postgres", "psql", "-v", "ON_ERROR_STOP=1", "-tAc", sql],
            timeout=60,
        )

    def _exists(self, sql: str) -> bool:
        receipt = self._psql(sql)
        return receipt.ok and receipt.output.strip() == "1"

    def _role_exists(self) -> bool:
        return self._exists(f"SELECT 1 FROM pg_roles WHERE rolname = {_literal(self.user)}")

    def _database_exists(self) -> bool:
        return self._exists(f"SELECT 1 FROM pg_database WHERE datname = {_literal(self.database)}")

    def check(self) -> CheckResult:
        return _SATISFIED if self._role_exists() and self._database_exists() else _UNSATISFIED

    def apply(self) -> None:
        if not self._role_exists():
            require_ok(
                self.name,
                self._psql(f"CREATE USER {self.user} WITH PASSWORD {_literal(self.password)}"),
            )
        if not self._database_exists():
            require_ok(self.name, self._psql(f"CREATE DATABASE {self.database} OWNER {self.user}"))
        require_ok(
            self.name,
            self._psql(f"GRANT ALL PRIVILEGES ON DATABASE {self.database} TO {self.user}"),
        )
