"""
Deploy plans — clone, build and publish one app behind nginx.

Shared shape for every app kind:

    prerequisites → [database] → source → environment → build
    → publish → nginx → [kind-specific runtime] → [certbot]

What differs between kinds (build commands, publish dir, nginx
template, app port) lives in ``catalogs/app_kinds.json``; the
runtime groups (systemd for Go, php-fpm + supervisor for Laravel, pm2
for Next.js) are built here.
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

from src.adapters.shell.filesystem import read_text
from src.core.engine.actions import (
    CloneRepository,
    EnsureDirectory,
    EnsurePackage,
    EnsurePostgresDatabase,
    EnsureSymlink,
    Pm2Save,
    Pm2Start,
    RenderFile,
    RunCommand,
    ServiceAction,
    SetDirectives,
    SetEnvValues,
    SupervisorRestart,
    SupervisorUpdate,
)
from src.core.engine.template import render, render_text
from src.core.engine.transaction import ActionGroup, Plan
from src.core.engine.validators import NginxValidation
from src.core.errors import PreconditionFailed
from src.core.plans.common import (
    PlanContext,
    default_folder,
    pem_files_valid,
    validate_domain,
    validate_folder_name,
    validate_git_url,
)

logger = logging.getLogger(__name__)

APP_KINDS = ("astro", "next", "laravel", "go")


@dataclass
class DeployAnswers:
    """Everything a deploy plan asked for."""

    kind: str
    git_url: str = ""
    folder: str = ""
    overwrite: bool = False
    domain: str = ""
    ssl_key: str = ""
    ssl_cert: str = ""
    certbot: bool = False
    database: dict[str, str] | None = None
    env: dict[str, str] = field(default_factory=dict)
    generate_app_key: bool = False
    go_main: str = "cmd/web/main.go"
    systemd: bool = True
    php_fpm: bool = True
    queue_worker: bool = False

    @property
    def manual_ssl(self) -> bool:
        return bool(self.ssl_key and self.ssl_cert)

    @property
    def https(self) -> bool:
        return self.manual_ssl or self.certbot


@dataclass
class DeployLayout:
    """Where one deployed app lives on the host."""

    checkout: Path
    web_path: Path
    site_file: Path
    site_link: Path

    @classmethod
    def for_app(cls, ctx: PlanContext, folder: str) -> DeployLayout:
        paths = ctx.config.paths
        return cls(
            checkout=Path(paths.workspace) / folder,
            web_path=Path(paths.web_root) / folder,
            site_file=Path(paths.nginx_sites_available) / f"{folder}.conf",
            site_link=Path(paths.nginx_sites_enabled) / f"{folder}.conf",
        )


# ── Questions ───────────────────────────────────────────────────


def _ask_database(ctx: PlanContext, kind: str) -> dict[str, str] | None:
    default_name = "lara" if kind == "laravel" else "next"
    if not ctx.confirm("create_database", "Create a PostgreSQL database and user?", False):
        return None
    return {
        "name": ctx.ask("db_name", "Database name", default=default_name),
        "user": ctx.ask("db_user", "Database user", default=f"{default_name}_user"),
        "password": ctx.ask(
            "db_password",
            "Database password (default: random)",
            default=secrets.token_urlsafe(18),
            secret=True,
        ),
    }


def _existing_env(ctx: PlanContext, folder: str) -> dict[str, str]:
    """KEY=value pairs of an existing checkout's .env (re-deploys)."""
    text = read_text(DeployLayout.for_app(ctx, folder).checkout / ".env") or ""
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip() and not key.lstrip().startswith("#"):
            values[key.strip()] = value.strip().strip('"')
    return values


def _ask_next_env(ctx: PlanContext, answers: DeployAnswers) -> dict[str, str]:
    env: dict[str, str] = {}
    existing = _existing_env(ctx, answers.folder)
    db = answers.database
    if db:
        default_url = (
            f"postgresql://{db['user']}:{quote(db['password'], safe='')}@127.0.0.1:5432/{db['name']}"
        )
    else:
        default_url = existing.get("POSTGRES_URL") or "postgresql://next_user@127.0.0.1:5432/next"

    if ctx.confirm("configure_postgres_url", "Configure POSTGRES_URL now?", True):
        env["POSTGRES_URL"] = ctx.ask("postgres_url", "POSTGRES_URL", default=default_url)

    if existing.get("AUTH_SECRET"):
        # Carried over explicitly: an overwrite re-clone deletes the old .env
        logger.debug("Keeping existing AUTH_SECRET")
        env["AUTH_SECRET"] = existing["AUTH_SECRET"]
    elif ctx.confirm("generate_auth_secret", "Generate AUTH_SECRET (32 random bytes)?", True):
        env["AUTH_SECRET"] = base64.b64encode(secrets.token_bytes(32)).decode("ascii")

    default_auth_url = f"https://{answers.domain}" if answers.https else f"http://{answers.domain}"
    env["AUTH_URL"] = ctx.ask("auth_url", "AUTH_URL", default=default_auth_url)
    return env


def _ask_laravel_env(ctx: PlanContext, answers: DeployAnswers) -> dict[str, str]:
    db = answers.database or {}
    env = {
        "DB_CONNECTION": ctx.ask("db_connection", "DB_CONNECTION", default="pgsql"),
        "DB_HOST": ctx.ask("db_host", "DB_HOST", default="127.0.0.1"),
        "DB_PORT": ctx.ask("db_port", "DB_PORT", default="5432"),
        "DB_DATABASE": ctx.ask("db_database", "DB_DATABASE", default=db.get("name", "lara")),
        "DB_USERNAME": ctx.ask("db_username", "DB_USERNAME", default=db.get("user", "lara_user")),
        "DB_PASSWORD": ctx.ask(
            "db_env_password", "DB_PASSWORD", default=db.get("password", ""), secret=True
        ),
        "APP_ENV": ctx.ask("app_env", "APP_ENV", default="production"),
        "APP_DEBUG": ctx.ask("app_debug", "APP_DEBUG", default="false"),
        "APP_URL": f"https://{answers.domain}" if answers.https else f"http://{answers.domain}",
    }
    if ctx.adapters.runner.which("redis-server"):
        logger.info("Redis detected, configuring Laravel to use it")
        env.update({
            "CACHE_STORE": "redis",
            "QUEUE_CONNECTION": "redis",
            "SESSION_DRIVER": "redis",
            "REDIS_HOST": ctx.ask("redis_host", "REDIS_HOST", default="127.0.0.1"),
            "REDIS_PASSWORD": ctx.ask("redis_password", "REDIS_PASSWORD", default="null"),
            "REDIS_PORT": ctx.ask("redis_port", "REDIS_PORT", default="6379"),
        })
    existing_key = _existing_env(ctx, answers.folder).get("APP_KEY", "")
    if existing_key.startswith("base64:"):
        logger.debug("Keeping existing APP_KEY")
        env["APP_KEY"] = existing_key
    return env


def _ask_ssl(ctx: PlanContext, answers: DeployAnswers) -> None:
    if ctx.confirm("ssl_manual", "Do you have existing SSL key and cert files (e.g. from Cloudflare)?", True):
        key = ctx.ask("ssl_key", "Path to private key (origin.key)")
        cert = ctx.ask("ssl_cert", "Path to full certificate (origin.crt)")
        if key and cert and pem_files_valid(Path(key), Path(cert)):
            answers.ssl_key, answers.ssl_cert = key, cert
            return
        logger.warning("SSL files missing or not in PEM format; skipping manual SSL")

    answers.certbot = ctx.confirm(
        "certbot", "Use Certbot to obtain a free SSL certificate?", True
    )


def collect_answers(
    ctx: PlanContext,
    kind: str,
    repo: str | None = None,
    folder: str | None = None,
    domain: str | None = None,
) -> DeployAnswers:
    """Ask every deploy question up front.

    Explicit ``repo``/``folder``/``domain`` values skip their prompts.

    Raises:
        PreconditionFailed: Unknown kind or invalid answer.
    """
    if kind not in ctx.catalog.app_kinds:
        raise PreconditionFailed(
            f"Unknown app kind '{kind}'. Choose from: {', '.join(sorted(ctx.catalog.app_kinds))}"
        )
    answers = DeployAnswers(kind=kind)

    if kind in ("next", "laravel"):
        answers.database = _ask_database(ctx, kind)

    answers.git_url = validate_git_url(repo) if repo else ctx.ask(
        "git_url", "Git repository URL", validate=validate_git_url
    )
    answers.folder = validate_folder_name(folder) if folder else ctx.ask(
        "folder",
        "Folder name to clone into",
        default=default_folder(answers.git_url),
        validate=validate_folder_name,
    )

    checkout = DeployLayout.for_app(ctx, answers.folder).checkout
    if checkout.exists() and any(checkout.iterdir()):
        answers.overwrite = ctx.confirm(
            "overwrite", f"Folder {checkout} exists. Delete and re-clone?", False
        )

    answers.domain = validate_domain(domain) if domain else ctx.ask(
        "domain", "Domain for this site (e.g. example.com)", validate=validate_domain
    )
    _ask_ssl(ctx, answers)

    if kind == "next":
        answers.env = _ask_next_env(ctx, answers)
    elif kind == "laravel":
        answers.env = _ask_laravel_env(ctx, answers)
        if "APP_KEY" not in answers.env:
            answers.generate_app_key = ctx.confirm("generate_app_key", "Generate APP_KEY if missing?", True)
        answers.php_fpm = ctx.confirm(
            "php_fpm", f"Configure the php{ctx.config.php_version}-fpm pool?", True
        )
        if ctx.adapters.runner.which("supervisorctl"):
            answers.queue_worker = ctx.confirm(
                "queue_worker", "Set up Supervisor for Laravel queue workers?", True
            )
    elif kind == "go":
        answers.go_main = ctx.ask("go_main", "Path to the main Go file", default=answers.go_main)
        answers.systemd = ctx.confirm("systemd", "Create a systemd service for the Go app?", True)

    return answers


# ── Groups ──────────────────────────────────────────────────────


def _prerequisites(ctx: PlanContext, kind: dict) -> ActionGroup:
    group = ctx.prerequisites(kind["prerequisites"])
    extensions = kind.get("php_extensions")
    if extensions:
        php = ctx.config.php_version
        group.actions.append(EnsurePackage(
            ctx.adapters.packages,
            *(f"php{php}-{ext}" for ext in extensions),
            name=f"install php{php} extensions",
        ))
    return group


def _build_steps(ctx: PlanContext, steps: list[dict], cwd: Path, subs: dict[str, str]) -> list[RunCommand]:
    actions = []
    for step in steps:
        argv = [render_text(a, subs) for a in step["argv"]]
        creates = cwd / step["creates"] if step.get("creates") else None
        actions.append(RunCommand(ctx.adapters.runner, " ".join(argv[:2]), argv, cwd=cwd, creates=creates))
    return actions


def _environment(ctx: PlanContext, answers: DeployAnswers, layout: DeployLayout) -> ActionGroup | None:
    env_file = layout.checkout / ".env"
    seed = layout.checkout / ".env.example"
    actions: list = []

    if answers.kind in ("next", "laravel", "go"):
        actions.append(SetEnvValues(env_file, answers.env, seed=seed, name="configure .env"))
    if answers.kind == "laravel" and answers.generate_app_key:
        actions.append(RunCommand(
            ctx.adapters.runner,
            "generate APP_KEY",
            ["php", "artisan", "key:generate", "--force"],
            cwd=layout.checkout,
            unless=["grep", "-q", "^APP_KEY=base64:", str(env_file)],
        ))
    return ActionGroup(name="environment", actions=actions) if actions else None


def _publish(ctx: PlanContext, answers: DeployAnswers, kind: dict, layout: DeployLayout) -> ActionGroup:
    runner = ctx.adapters.runner
    source = layout.checkout / kind["publish"]
    actions: list = [
        EnsureDirectory(layout.web_path),
        RunCommand(
            runner,
            f"sync to {layout.web_path}",
            ["rsync", "-a", "--delete", "--exclude", ".git", f"{source}/", f"{layout.web_path}/"],
        ),
    ]
    if answers.kind == "laravel":
        for cache in ("config:cache", "route:cache", "view:cache"):
            actions.append(RunCommand(
                runner, f"artisan {cache}", ["php", "artisan", cache], cwd=layout.web_path
            ))
    if answers.kind == "go":
        actions.append(EnsureDirectory(layout.web_path / "dbs", mode=0o775))
    actions.append(RunCommand(
        runner,
        f"chown {layout.web_path}",
        ["chown", "-R", ctx.config.web_owner, str(layout.web_path)],
    ))
    return ActionGroup(name="publish", actions=actions)


def _nginx(ctx: PlanContext, answers: DeployAnswers, kind: dict, layout: DeployLayout) -> ActionGroup:
    ssl_block = ""
    if answers.manual_ssl:
        ssl_block = render(
            ctx.template("ssl.snippet"),
            {"SSL_CERT_PATH": answers.ssl_cert, "SSL_KEY_PATH": answers.ssl_key},
        ).rstrip("\n")

    subs = {
        "DOMAIN": answers.domain,
        "ROOT_PATH": str(layout.web_path),
        "FOLDER_NAME": answers.folder,
        "APP_PORT": kind.get("app_port", ""),
        "PHP_FPM_SOCK": ctx.config.php_fpm_socket,
        "SSL_BLOCK": ssl_block,
    }
    runner = ctx.adapters.runner
    return ActionGroup(
        name="nginx",
        atomic=True,
        actions=[
            RenderFile(layout.site_file, ctx.template(kind["nginx_template"]), subs, mode=0o644,
                       name=f"nginx site {answers.folder}"),
            EnsureSymlink(layout.site_link, layout.site_file),
        ],
        validation=NginxValidation(runner, ctx.config.paths.nginx_mime_types),
        activate=[ServiceAction(ctx.adapters.services, "nginx", "reload")],
    )


def _go_runtime(ctx: PlanContext, answers: DeployAnswers, layout: DeployLayout) -> list[ActionGroup]:
    if not answers.systemd:
        return []
    cfg = ctx.config
    cache = Path(cfg.paths.go_cache)
    services = ctx.adapters.services
    unit = Path(cfg.paths.systemd_dir) / f"{answers.folder}.service"
    return [
        ActionGroup(
            name="go-cache",
            actions=[
                EnsureDirectory(cache / "go-build", owner=cfg.web_owner, mode=0o775),
                EnsureDirectory(cache / "go-mod", owner=cfg.web_owner, mode=0o775),
            ],
        ),
        ActionGroup(
            name="systemd",
            atomic=True,
            actions=[RenderFile(
                unit,
                ctx.template("go.service"),
                {
                    "APP_NAME": answers.folder,
                    "USER": cfg.web_user,
                    "GROUP": cfg.web_group,
                    "APP_PATH": str(layout.web_path),
                    "GO_CACHE": str(cache),
                },
                mode=0o644,
            )],
            activate=[
                ServiceAction(services, unit.name, "daemon-reload"),
                ServiceAction(services, unit.name, "enable"),
                ServiceAction(services, unit.name, "restart"),
            ],
        ),
    ]


def _laravel_runtime(ctx: PlanContext, answers: DeployAnswers, layout: DeployLayout) -> list[ActionGroup]:
    cfg = ctx.config
    groups: list[ActionGroup] = []
    if answers.php_fpm:
        pool = {
            "user": cfg.web_user,
            "group": cfg.web_group,
            "listen": cfg.php_fpm_socket,
            "listen.owner": cfg.web_user,
            "listen.group": cfg.web_group,
            "listen.mode": "0660",
            "pm": "dynamic",
        }
        groups.append(ActionGroup(
            name="php-fpm",
            atomic=True,
            actions=[SetDirectives(cfg.php_fpm_pool_path, pool, separator=" = ", comment=";",
                                   name=f"configure {cfg.php_fpm_service} pool")],
            activate=[ServiceAction(ctx.adapters.services, cfg.php_fpm_service, "restart")],
        ))
    if answers.queue_worker:
        program = f"{answers.folder}-worker"
        groups.append(ActionGroup(
            name="queue-worker",
            atomic=True,
            actions=[RenderFile(
                Path(cfg.paths.supervisor_dir) / f"{program}.conf",
                ctx.template("laravel-worker.conf"),
                {"PROGRAM": program, "APP_PATH": str(layout.web_path), "USER": cfg.web_user},
                mode=0o644,
            )],
            activate=[
                SupervisorUpdate(ctx.adapters.supervisor, program),
                SupervisorRestart(ctx.adapters.supervisor, program),
            ],
        ))
    return groups


def _next_runtime(ctx: PlanContext, answers: DeployAnswers, layout: DeployLayout) -> list[ActionGroup]:
    pm2 = ctx.adapters.pm2
    return [ActionGroup(
        name="pm2",
        actions=[Pm2Start(pm2, layout.checkout / "ecosystem.config.js"), Pm2Save(pm2)],
    )]


def _certbot(ctx: PlanContext, answers: DeployAnswers) -> ActionGroup:
    domain = answers.domain
    return ActionGroup(
        name="certbot",
        required=False,
        actions=[
            ctx.ensure_command("certbot"),
            RunCommand(
                ctx.adapters.runner,
                f"certbot {domain}",
                [
                    "certbot", "--nginx", "-d", domain, "--non-interactive",
                    "--agree-tos", "--email", f"admin@{domain}",
                ],
                required=False,
            ),
        ],
    )


def build_deploy_plan(ctx: PlanContext, answers: DeployAnswers) -> Plan:
    """Turn deploy answers into an ordered plan."""
    kind = ctx.catalog.app_kinds[answers.kind]
    layout = DeployLayout.for_app(ctx, answers.folder)
    plan = Plan(name=f"deploy {answers.kind}")

    plan.add(_prerequisites(ctx, kind))
    if answers.database:
        db = answers.database
        plan.add(ActionGroup(
            name="database",
            actions=[EnsurePostgresDatabase(ctx.adapters.runner, db["name"], db["user"], db["password"])],
        ))
    plan.add(ActionGroup(
        name="source",
        actions=[CloneRepository(ctx.adapters.vcs, answers.git_url, layout.checkout,
                                 overwrite=answers.overwrite)],
    ))

    environment = _environment(ctx, answers, layout)
    if environment is not None:
        plan.add(environment)

    subs = {"GO_MAIN": answers.go_main}
    plan.add(ActionGroup(
        name="build",
        actions=_build_steps(ctx, [*kind["install"], *kind["build"]], layout.checkout, subs),
    ))
    plan.add(_publish(ctx, answers, kind, layout))
    plan.add(_nginx(ctx, answers, kind, layout))

    runtime = {"go": _go_runtime, "laravel": _laravel_runtime, "next": _next_runtime}.get(answers.kind)
    if runtime is not None:
        for group in runtime(ctx, answers, layout):
            plan.add(group)

    if answers.certbot:
        plan.add(_certbot(ctx, answers))

    logger.info("Deploy plan: %d groups, %d actions", len(plan.groups), plan.total_actions)
    return plan
