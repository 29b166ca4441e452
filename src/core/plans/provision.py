"""
Provision plan — first-time hardening and stack setup of a fresh VPS.

Steps, in the order they run:

    packages   base packages (curl, git, rsync, ...)
    user       a non-root sudo user (optionally password-less sudo)
    firewall   ufw with the SSH and web ports open
    ssh        sshd_config: port, key-only login (validated with sshd -t)
    fail2ban   fail2ban with a jail for the SSH port
    timezone   system timezone
    hostname   static hostname and its /etc/hosts entry
    swap       a swap file, enabled now and from /etc/fstab
    ntp        network time sync
    stack      nginx, PHP-FPM, composer, Node.js + pnpm, supervisor,
               redis, PostgreSQL (each optional)
    upgrades   unattended security upgrades

The firewall is opened for the new SSH port before sshd moves to it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from src.core.engine.actions import (
    EnableNtp,
    EnsurePackage,
    EnsureSudoUser,
    EnsureSwapFile,
    RenderFile,
    RunCommand,
    ServiceAction,
    SetDirectives,
    SetHostname,
    SetTimezone,
    UfwAllow,
    UfwEnable,
)
from src.core.engine.transaction import ActionGroup, Plan
from src.core.engine.validators import CommandValidation, ConfigTreeValidation
from src.core.errors import PreconditionFailed
from src.core.plans.common import (
    DEFAULT_SSH_PORT,
    PlanContext,
    validate_hostname,
    validate_port,
    validate_swap_size,
    validate_timezone,
    validate_username,
)

logger = logging.getLogger(__name__)

PROVISION_STEPS = (
    "packages",
    "user",
    "firewall",
    "ssh",
    "fail2ban",
    "timezone",
    "hostname",
    "swap",
    "ntp",
    "stack",
    "upgrades",
)

STACK_COMPONENTS = ("nginx", "php", "composer", "node", "supervisor", "redis", "postgresql")

_STEP_PROMPTS = {
    "packages": "Install base packages?",
    "user": "Create a non-root user with sudo privileges?",
    "firewall": "Set up UFW (Uncomplicated Firewall)?",
    "ssh": "Harden SSH (custom port, key-only login)?",
    "fail2ban": "Install Fail2Ban (protect against brute-force attacks)?",
    "timezone": "Set the timezone?",
    "hostname": "Set a new hostname?",
    "swap": "Create a swap file (recommended for low RAM VPS)?",
    "ntp": "Enable NTP time synchronization?",
    "stack": "Install the common stack (nginx / php / node / ...)?",
    "upgrades": "Enable unattended upgrades (automatic security updates)?",
}

_PHP_EXTENSIONS = ("common", "curl", "gd", "mbstring", "xml", "zip", "bcmath", "intl", "pgsql")


@dataclass
class ProvisionAnswers:
    """Everything the provision plan asked for."""

    steps: list[str] = field(default_factory=list)
    ssh_port: str = str(DEFAULT_SSH_PORT)
    disable_password: bool = True
    bantime: str = "1h"
    maxretry: str = "5"
    user: str = "vps-user"
    user_nopasswd: bool = True
    timezone: str = "UTC"
    hostname: str = ""
    swap_size: str = "2"
    stack: list[str] = field(default_factory=list)


def _current(ctx: PlanContext, argv: list[str]) -> str:
    """Current host value, used as the default answer (empty if unknown)."""
    receipt = ctx.adapters.runner.run(argv, timeout=30)
    return receipt.output.strip() if receipt.ok else ""


def collect_answers(ctx: PlanContext, only: Sequence[str] | None = None) -> ProvisionAnswers:
    """Ask every provisioning question up front.

    Args:
        only: Restrict to these steps (no step confirmation is asked).

    Raises:
        PreconditionFailed: Unknown step or invalid answer.
    """
    answers = ProvisionAnswers()

    if only:
        unknown = [s for s in only if s not in PROVISION_STEPS]
        if unknown:
            raise PreconditionFailed(
                f"Unknown provision step(s): {', '.join(unknown)}. "
                f"Choose from: {', '.join(PROVISION_STEPS)}"
            )
        answers.steps = [s for s in PROVISION_STEPS if s in only]
    else:
        answers.steps = [
            s for s in PROVISION_STEPS if ctx.confirm(f"step_{s}", _STEP_PROMPTS[s], True)
        ]

    if "ssh" in answers.steps or "firewall" in answers.steps or "fail2ban" in answers.steps:
        answers.ssh_port = ctx.ask(
            "ssh_port",
            "SSH port (recommended: 2222, 2233, 2244, ...)",
            default=str(DEFAULT_SSH_PORT),
            validate=validate_port,
        )
    if "ssh" in answers.steps:
        answers.disable_password = ctx.confirm(
            "disable_password",
            "Disable password login (key-only authentication)? "
            "Make sure your public key is in ~/.ssh/authorized_keys",
            True,
        )
    if "fail2ban" in answers.steps:
        answers.bantime = ctx.ask("bantime", "Fail2Ban ban time", default="1h")
        answers.maxretry = ctx.ask("maxretry", "Fail2Ban max retries", default="5")
    if "user" in answers.steps:
        answers.user = ctx.ask(
            "user", "New non-root username", default=answers.user, validate=validate_username
        )
        answers.user_nopasswd = ctx.confirm(
            "user_nopasswd", f"Let {answers.user} run sudo without a password?", True
        )
    if "timezone" in answers.steps:
        answers.timezone = ctx.ask(
            "timezone",
            "Timezone (e.g. Europe/Paris, Asia/Ho_Chi_Minh)",
            default=_current(ctx, ["timedatectl", "show", "-p", "Timezone", "--value"]) or "UTC",
            validate=validate_timezone,
        )
    if "hostname" in answers.steps:
        answers.hostname = ctx.ask(
            "hostname",
            "Hostname (e.g. web-1)",
            default=_current(ctx, ["hostnamectl", "--static"]) or "vps-server",
            validate=validate_hostname,
        )
    if "swap" in answers.steps:
        answers.swap_size = ctx.ask(
            "swap_size", "Swap size in GB", default=answers.swap_size, validate=validate_swap_size
        )
    if "stack" in answers.steps:
        answers.stack = [
            c for c in STACK_COMPONENTS if ctx.confirm(f"stack_{c}", f"Install {c}?", True)
        ]

    return answers


# ── Groups ──────────────────────────────────────────────────────


def _packages_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    pkgs = ctx.adapters.packages
    return [ActionGroup(
        name="packages",
        actions=[EnsurePackage(pkgs, *ctx.config.base_packages, name="install base packages")],
    )]


def _firewall_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    runner = ctx.adapters.runner
    rules = ["OpenSSH", f"{answers.ssh_port}/tcp", "80/tcp", "443/tcp"]
    return [ActionGroup(
        name="firewall",
        actions=[
            ctx.ensure_command("ufw"),
            *[UfwAllow(runner, rule) for rule in rules],
            UfwEnable(runner),
        ],
        activate=[RunCommand(runner, "ufw reload", ["ufw", "reload"], required=False)],
    )]


def _ssh_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    directives = {"Port": answers.ssh_port}
    if answers.disable_password:
        directives["PasswordAuthentication"] = "no"
        directives["PubkeyAuthentication"] = "yes"

    runner = ctx.adapters.runner
    return [ActionGroup(
        name="ssh",
        atomic=True,
        actions=[SetDirectives(Path(ctx.config.paths.sshd_config), directives, name="configure sshd")],
        validation=CommandValidation(runner, ["sshd", "-t", "-f", "{path}"]),
        activate=[ServiceAction(ctx.adapters.services, ("ssh", "sshd"), "restart")],
    )]


def _fail2ban_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    services = ctx.adapters.services
    jail = RenderFile(
        Path(ctx.config.paths.fail2ban_jail),
        ctx.template("jail.local"),
        {"SSH_PORT": answers.ssh_port, "BANTIME": answers.bantime, "MAXRETRY": answers.maxretry},
        mode=0o644,
    )
    return [
        ActionGroup(
            name="fail2ban",
            actions=[
                ctx.ensure_command("fail2ban-client"),
                ServiceAction(services, "fail2ban", "enable"),
                ServiceAction(services, "fail2ban", "start"),
            ],
        ),
        ActionGroup(
            name="fail2ban-jail",
            atomic=True,
            actions=[jail],
            validation=ConfigTreeValidation(ctx.adapters.runner, ["fail2ban-client", "-c", "{dir}", "-t"]),
            activate=[ServiceAction(services, "fail2ban", "restart")],
        ),
    ]


def _user_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    runner = ctx.adapters.runner
    groups = [ActionGroup(name="user", actions=[EnsureSudoUser(runner, answers.user)])]
    if answers.user_nopasswd:
        groups.append(ActionGroup(
            name="user-sudoers",
            atomic=True,
            actions=[RenderFile(
                Path(ctx.config.paths.sudoers_dir) / answers.user,
                ctx.template("sudoers-nopasswd"),
                {"USER": answers.user},
                mode=0o440,
                name=f"password-less sudo for {answers.user}",
            )],
            validation=CommandValidation(runner, ["visudo", "-c", "-q", "-f", "{path}"]),
        ))
    return groups


def _timezone_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    return [ActionGroup(name="timezone", actions=[SetTimezone(ctx.adapters.runner, answers.timezone)])]


def _hostname_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    return [ActionGroup(
        name="hostname",
        actions=[
            SetHostname(ctx.adapters.runner, answers.hostname),
            SetDirectives(
                Path(ctx.config.paths.hosts_file),
                {"127.0.1.1": answers.hostname},
                name="hosts entry",
            ),
        ],
    )]


def _swap_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    swap_file = ctx.config.paths.swap_file
    return [ActionGroup(
        name="swap",
        actions=[
            EnsureSwapFile(ctx.adapters.runner, Path(swap_file), int(answers.swap_size)),
            SetDirectives(
                Path(ctx.config.paths.fstab),
                {swap_file: "none swap sw 0 0"},
                name="fstab swap entry",
            ),
        ],
    )]


def _ntp_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    return [ActionGroup(name="ntp", actions=[EnableNtp(ctx.adapters.runner)])]


def _service_up(ctx: PlanContext, service: str) -> list[ServiceAction]:
    services = ctx.adapters.services
    return [ServiceAction(services, service, "enable"), ServiceAction(services, service, "start")]


def _stack_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    pkgs = ctx.adapters.packages
    runner = ctx.adapters.runner
    php = ctx.config.php_version
    groups: list[ActionGroup] = []

    for component in answers.stack:
        actions: list = []
        if component == "nginx":
            actions = [EnsurePackage(pkgs, "nginx"), *_service_up(ctx, "nginx")]
        elif component == "php":
            actions = [
                RunCommand(
                    runner,
                    "add ondrej/php repository",
                    ["add-apt-repository", "-y", "ppa:ondrej/php"],
                    unless=["apt-cache", "show", f"php{php}-fpm"],
                ),
                EnsurePackage(
                    pkgs,
                    f"php{php}-fpm",
                    f"php{php}-cli",
                    *(f"php{php}-{ext}" for ext in _PHP_EXTENSIONS),
                    name=f"install php{php}",
                ),
                *_service_up(ctx, ctx.config.php_fpm_service),
            ]
        elif component == "composer":
            actions = [ctx.ensure_command("composer")]
        elif component == "node":
            actions = [EnsurePackage(pkgs, "nodejs", "npm"), ctx.ensure_command("pnpm")]
        elif component == "supervisor":
            actions = [EnsurePackage(pkgs, "supervisor"), *_service_up(ctx, "supervisor")]
        elif component == "redis":
            actions = [EnsurePackage(pkgs, "redis-server"), *_service_up(ctx, "redis-server")]
        elif component == "postgresql":
            actions = [
                EnsurePackage(pkgs, "postgresql", "postgresql-contrib"),
                *_service_up(ctx, "postgresql"),
            ]
        groups.append(ActionGroup(name=f"stack-{component}", actions=actions))

    return groups


def _upgrades_groups(ctx: PlanContext, answers: ProvisionAnswers) -> list[ActionGroup]:
    auto = RenderFile(
        Path(ctx.config.paths.apt_auto_upgrades),
        ctx.template("20auto-upgrades"),
        {"UNATTENDED_UPGRADE": "1", "AUTOCLEAN_DAYS": "7"},
        mode=0o644,
    )
    return [ActionGroup(
        name="upgrades",
        actions=[EnsurePackage(ctx.adapters.packages, "unattended-upgrades"), auto],
    )]


_BUILDERS = {
    "packages": _packages_groups,
    "user": _user_groups,
    "firewall": _firewall_groups,
    "ssh": _ssh_groups,
    "fail2ban": _fail2ban_groups,
    "timezone": _timezone_groups,
    "hostname": _hostname_groups,
    "swap": _swap_groups,
    "ntp": _ntp_groups,
    "stack": _stack_groups,
    "upgrades": _upgrades_groups,
}


def build_provision_plan(ctx: PlanContext, answers: ProvisionAnswers) -> Plan:
    """Turn provisioning answers into an ordered plan."""
    plan = Plan(name="provision")
    for step in PROVISION_STEPS:
        if step in answers.steps:
            for group in _BUILDERS[step](ctx, answers):
                plan.add(group)
    logger.info("Provision plan: %d groups, %d actions", len(plan.groups), plan.total_actions)
    return plan
