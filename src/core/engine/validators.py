"""
Validation hooks — check staged files before they go live.

A validation runs between staging and commit of an atomic group. It
only ever sees the staged copies; the live configuration is not
touched until every staged file passed.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from src.adapters.base import CommandRunner
from src.core.engine.staging import STAGED_SUFFIX, StagedFile
from src.core.errors import ValidationFailed

logger = logging.getLogger(__name__)


class Validation(ABC):
    """A check over a group's staged files."""

    def __init__(self, runner: CommandRunner, group: str = ""):
        self.runner = runner
        self.group = group

    @abstractmethod
    def validate(self, staged: Sequence[StagedFile]) -> None:
        """Raise ``ValidationFailed`` if the staged files are not acceptable."""

    def _fail(self, reason: str) -> ValidationFailed:
        return ValidationFailed(self.group, reason.strip() or "validation command failed")


class CommandValidation(Validation):
    """Run a checker command once per staged file.

    ``{path}`` in ``argv`` is replaced by the staged file's path, e.g.
    ``["sshd", "-t", "-f", "{path}"]``.
    """

    def __init__(self, runner: CommandRunner, argv: Sequence[str], group: str = ""):
        super().__init__(runner, group)
        self.argv = list(argv)

    def validate(self, staged: Sequence[StagedFile]) -> None:
        for item in staged:
            argv = [a.replace("{path}", str(item.path)) for a in self.argv]
            receipt = self.runner.run(argv, timeout=60)
            if receipt.failed:
                logger.warning("Validation of %s failed: %s", item.target, receipt.error)
                raise self._fail(receipt.error or f"{argv[0]} rejected {item.target}")


class NginxValidation(Validation):
    """``nginx -t`` against staged site files, without touching /etc/nginx.

    The staged server blocks are included from a throwaway nginx.conf
    whose pid and error log live in a temp directory, so the test
    neither needs nor disturbs the running configuration.
    """

    def __init__(self, runner: CommandRunner, mime_types: str = "/etc/nginx/mime.types", group: str = ""):
        super().__init__(runner, group)
        self.mime_types = mime_types

    def wrapper_config(self, staged: Sequence[StagedFile], workdir: Path) -> str:
        includes = "\n".join(f"    include {item.path};" for item in staged)
        mime = f"    include {self.mime_types};\n" if Path(self.mime_types).is_file() else ""
        return (
            f"pid {workdir / 'nginx.pid'};\n"
            f"error_log {workdir / 'error.log'};\n"
            "events {}\n"
            "http {\n"
            f"{mime}"
            f"{includes}\n"
            "}\n"
        )

    def validate(self, staged: Sequence[StagedFile]) -> None:
        if not staged:
            return
        with tempfile.TemporaryDirectory(prefix="vpsdeploy-nginx-") as tmp:
            workdir = Path(tmp)
            conf = workdir / "nginx.conf"
            conf.write_text(self.wrapper_config(staged, workdir), encoding="utf-8")
            receipt = self.runner.run(["nginx", "-t", "-q", "-c", str(conf)], timeout=60)
        if receipt.failed:
            logger.warning("nginx rejected staged config: %s", receipt.error)
            raise self._fail(receipt.error or "nginx -t failed")


class ConfigTreeValidation(Validation):
    """Run a checker over a scratch copy of the target's config directory.

    For tools that only test a whole configuration directory, such as
    ``fail2ban-client -c {dir} -t``. The directory holding the staged
    targets is copied to a temp location with the staged content in
    place of each target; ``{dir}`` in ``argv`` names that copy.
    Staged files of one validation must share a directory.
    """

    def __init__(self, runner: CommandRunner, argv: Sequence[str], group: str = ""):
        super().__init__(runner, group)
        self.argv = list(argv)

    def scratch_tree(self, staged: Sequence[StagedFile], workdir: Path) -> Path:
        config_dir = staged[0].target.parent
        tree = workdir / config_dir.name
        if config_dir.is_dir():
            shutil.copytree(
                config_dir,
                tree,
                symlinks=True,
                ignore=shutil.ignore_patterns(f"*{STAGED_SUFFIX}"),
            )
        else:
            tree.mkdir(parents=True)
        for item in staged:
            shutil.copyfile(item.path, tree / item.target.name)
        return tree

    def validate(self, staged: Sequence[StagedFile]) -> None:
        if not staged:
            return
        with tempfile.TemporaryDirectory(prefix="vpsdeploy-check-") as tmp:
            tree = self.scratch_tree(staged, Path(tmp))
            argv = [a.replace("{dir}", str(tree)) for a in self.argv]
            receipt = self.runner.run(argv, timeout=60)
        if receipt.failed:
            logger.warning("%s rejected staged config: %s", argv[0], receipt.error)
            raise self._fail(receipt.error or f"{argv[0]} rejected the staged config")
