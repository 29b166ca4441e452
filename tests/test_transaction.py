"""
Tests for transactional apply — groups, staging, validation, rollback.
"""

import os
from pathlib import Path

import pytest

from src.adapters.mock import MockRunner
from src.core.engine.action import IdempotentAction
from src.core.engine.actions import EnsureSymlink, RenderFile, SetDirectives
from src.core.engine.lock import AdvisoryLock
from src.core.engine.staging import STAGED_SUFFIX, StagedFile
from src.core.engine.transaction import ActionGroup, Plan, execute_plan
from src.core.engine.validators import (
    CommandValidation,
    ConfigTreeValidation,
    NginxValidation,
    Validation,
)
from src.core.errors import ActionError, AlreadyRunning, PreconditionFailed
from src.core.models.action import CheckResult
from src.core.models.outcome import ExitCode
from src.core.models.template import Template


class FakeAction(IdempotentAction):
    """In-memory action recording what the engine asked of it."""

    def __init__(
        self,
        name: str,
        log: list[str],
        *,
        satisfied: bool = False,
        error: Exception | None = None,
        rollback_error: Exception | None = None,
        reversible: bool = False,
        sticks: bool = True,
        required: bool = True,
    ):
        super().__init__(name, required=required)
        self.log = log
        self.done = satisfied
        self.error = error
        self.rollback_error = rollback_error
        self.reversible = reversible
        self.sticks = sticks

    def check(self) -> CheckResult:
        return CheckResult.SATISFIED if self.done else CheckResult.UNSATISFIED

    def apply(self) -> None:
        self.log.append(f"apply {self.name}")
        if self.error is not None:
            raise self.error
        self.done = self.sticks

    def rollback(self) -> None:
        self.log.append(f"rollback {self.name}")
        if self.rollback_error is not None:
            raise self.rollback_error
        self.done = False


def _render(target: Path, text: str) -> RenderFile:
    return RenderFile(target, Template.from_text(text), {})


def _staged_leftovers(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.endswith(STAGED_SUFFIX)]


# ── Sequential groups ────────────────────────────────────────────────


class TestSequentialGroup:
    def test_applies_only_unsatisfied(self):
        log: list[str] = []
        group = ActionGroup(name="g", actions=[
            FakeAction("a", log, satisfied=True),
            FakeAction("b", log),
        ])
        report = execute_plan(Plan(name="p", groups=[group]))
        outcome = report.groups[0]
        assert outcome.status == "committed"
        assert [r.status for r in outcome.results] == ["already_satisfied", "applied"]
        assert log == ["apply b"]
        assert report.exit_code is ExitCode.OK

    def test_second_run_changes_nothing(self):
        log: list[str] = []
        group = ActionGroup(
            name="g",
            actions=[FakeAction("a", log), FakeAction("b", log)],
            activate=[FakeAction("reload", log)],
        )
        plan = Plan(name="p", groups=[group])
        execute_plan(plan)
        log.clear()

        report = execute_plan(plan)
        outcome = report.groups[0]
        assert outcome.status == "unchanged"
        assert all(r.status == "already_satisfied" for r in outcome.results)
        assert outcome.activated == []
        assert log == []

    def test_required_failure_stops_group_and_run(self):
        log: list[str] = []
        plan = Plan(name="p", groups=[
            ActionGroup(name="first", actions=[
                FakeAction("a", log, error=ActionError("a", "boom")),
                FakeAction("b", log),
            ]),
            ActionGroup(name="second", actions=[FakeAction("c", log)]),
        ])
        report = execute_plan(plan)
        first, second = report.groups
        assert first.status == "failed"
        assert [r.status for r in first.results] == ["failed", "skipped"]
        assert second.status == "skipped"
        assert log == ["apply a"]
        assert report.exit_code is ExitCode.ACTION_FAILED
        assert report.status == "failed"

    def test_best_effort_failure_continues(self):
        log: list[str] = []
        group = ActionGroup(name="g", actions=[
            FakeAction("save", log, error=ActionError("save", "pm2 not running"), required=False),
            FakeAction("b", log),
        ])
        report = execute_plan(Plan(name="p", groups=[group]))
        outcome = report.groups[0]
        assert outcome.status == "partial"
        assert log == ["apply save", "apply b"]
        assert report.exit_code is ExitCode.OK

    def test_optional_group_failure_does_not_stop_run(self):
        log: list[str] = []
        plan = Plan(name="p", groups=[
            ActionGroup(name="certbot", required=False,
                        actions=[FakeAction("certbot", log, error=ActionError("certbot", "rate limited"))]),
            ActionGroup(name="after", actions=[FakeAction("x", log)]),
        ])
        report = execute_plan(plan)
        assert [g.status for g in report.groups] == ["failed", "committed"]
        assert report.exit_code is ExitCode.OK
        assert report.status == "partial"

    def test_apply_that_does_not_take_effect(self):
        log: list[str] = []
        group = ActionGroup(name="g", actions=[FakeAction("a", log, sticks=False)])
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "failed"
        assert "did not take effect" in outcome.results[0].reason

    def test_verify_can_be_turned_off(self):
        log: list[str] = []
        group = ActionGroup(name="g", actions=[FakeAction("a", log, sticks=False)])
        outcome = execute_plan(Plan(name="p", groups=[group]), verify=False).groups[0]
        assert outcome.status == "committed"

    def test_activate_failure_fails_group(self):
        log: list[str] = []
        group = ActionGroup(
            name="g",
            actions=[FakeAction("a", log)],
            activate=[FakeAction("restart", log, error=ActionError("restart", "failed"), sticks=False)],
        )
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "failed"
        assert outcome.activated[0].status == "failed"

    def test_precondition_and_prerequisite_exit_codes(self):
        log: list[str] = []
        precondition = Plan(name="p", groups=[ActionGroup(name="g", actions=[
            FakeAction("clone", log, error=PreconditionFailed("not empty")),
        ])])
        assert execute_plan(precondition).exit_code is ExitCode.PRECONDITION_FAILED

        prerequisite = Plan(name="p", groups=[ActionGroup(name="prerequisites", prerequisite=True, actions=[
            FakeAction("ensure go", log, error=ActionError("ensure go", "apt failed")),
        ])])
        assert execute_plan(prerequisite).exit_code is ExitCode.PREREQUISITE_MISSING

    def test_os_error_becomes_failed_result(self):
        log: list[str] = []
        group = ActionGroup(name="g", actions=[FakeAction("a", log, error=PermissionError("denied"))])
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "failed"
        assert outcome.error_kind == "PermissionError"


# ── Atomic groups ────────────────────────────────────────────────────


class TestAtomicGroup:
    def test_commits_staged_files_and_activates(self, tmp_path: Path):
        log: list[str] = []
        site = tmp_path / "site.conf"
        group = ActionGroup(
            name="nginx",
            atomic=True,
            actions=[_render(site, "server {}\n"), EnsureSymlink(tmp_path / "enabled.conf", site)],
            activate=[FakeAction("reload nginx", log)],
        )
        report = execute_plan(Plan(name="p", groups=[group]))
        outcome = report.groups[0]
        assert outcome.status == "committed"
        assert site.read_text() == "server {}\n"
        assert (tmp_path / "enabled.conf").is_symlink()
        assert log == ["apply reload nginx"]
        assert _staged_leftovers(tmp_path) == []

    def test_validation_failure_leaves_live_state_untouched(self, tmp_path: Path):
        runner = MockRunner()
        runner.set_failure("sshd -t", error="line 3: Bad configuration option: Prot")
        sshd = tmp_path / "sshd_config"
        sshd.write_text("Port 22\n")
        log: list[str] = []
        group = ActionGroup(
            name="ssh",
            atomic=True,
            actions=[_render(sshd, "Prot 2204\n")],
            validation=CommandValidation(runner, ["sshd", "-t", "-f", "{path}"]),
            activate=[FakeAction("restart ssh", log)],
        )
        report = execute_plan(Plan(name="p", groups=[group]))
        outcome = report.groups[0]
        assert outcome.status == "validation_failed"
        assert outcome.results[0].status == "failed"
        assert "Bad configuration option" in outcome.results[0].reason
        assert sshd.read_text() == "Port 22\n"
        assert _staged_leftovers(tmp_path) == []
        assert log == []
        assert report.exit_code is ExitCode.VALIDATION_FAILED

    def test_validation_sees_staged_path(self, tmp_path: Path):
        runner = MockRunner()
        group = ActionGroup(
            name="ssh",
            atomic=True,
            actions=[_render(tmp_path / "sshd_config", "Port 2204\n")],
            validation=CommandValidation(runner, ["sshd", "-t", "-f", "{path}"]),
        )
        execute_plan(Plan(name="p", groups=[group]))
        checked = Path(runner.call_log[0].argv[-1])
        assert checked.parent == tmp_path
        assert checked.name.endswith(STAGED_SUFFIX)

    def test_activate_failure_rolls_back_byte_identical(self, tmp_path: Path):
        log: list[str] = []
        existing = tmp_path / "jail.local"
        existing.write_bytes(b"[sshd]\nport = 22\n")
        new = tmp_path / "worker.conf"
        group = ActionGroup(
            name="g",
            atomic=True,
            actions=[_render(existing, "[sshd]\nport = 2204\n"), _render(new, "[program:x]\n")],
            activate=[FakeAction("restart", log, error=ActionError("restart", "job failed"))],
        )
        report = execute_plan(Plan(name="p", groups=[group]))
        outcome = report.groups[0]
        assert outcome.status == "rolled_back"
        assert existing.read_bytes() == b"[sshd]\nport = 22\n"
        assert not new.exists()
        assert outcome.rolled_back == [f"render {new.name}", f"render {existing.name}"]
        assert report.exit_code is ExitCode.ACTION_FAILED

    def test_commit_only_group_is_uncommittable(self, tmp_path: Path):
        log: list[str] = []
        target = tmp_path / "unit.service"
        group = ActionGroup(
            name="g",
            atomic=True,
            actions=[_render(target, "[Service]\n"), FakeAction("install", log)],
            activate=[FakeAction("restart", log, error=ActionError("restart", "failed"))],
        )
        report = execute_plan(Plan(name="p", groups=[group]))
        outcome = report.groups[0]
        assert outcome.status == "uncommittable"
        assert outcome.needs_attention
        assert target.read_text() == "[Service]\n"
        assert not any(entry.startswith("rollback") for entry in log)
        assert report.exit_code is ExitCode.ROLLBACK_FAILED

    def test_rollback_failure_is_reported(self, tmp_path: Path):
        log: list[str] = []
        group = ActionGroup(
            name="g",
            atomic=True,
            actions=[FakeAction("a", log, reversible=True, rollback_error=OSError("read-only fs"))],
            activate=[FakeAction("restart", log, error=ActionError("restart", "failed"))],
        )
        report = execute_plan(Plan(name="p", groups=[group]))
        outcome = report.groups[0]
        assert outcome.status == "rollback_failed"
        assert outcome.rollback_errors == ["a: read-only fs"]
        assert report.exit_code is ExitCode.ROLLBACK_FAILED

    def test_failed_deferred_action_rolls_back_files(self, tmp_path: Path):
        log: list[str] = []
        target = tmp_path / "site.conf"
        group = ActionGroup(
            name="g",
            atomic=True,
            actions=[_render(target, "x\n"), FakeAction("link", log, error=ActionError("link", "EPERM"))],
        )
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "rolled_back"
        assert not target.exists()

    def test_satisfied_group_runs_no_activation(self, tmp_path: Path):
        log: list[str] = []
        target = tmp_path / "site.conf"
        target.write_text("same\n")
        group = ActionGroup(
            name="g",
            atomic=True,
            actions=[_render(target, "same\n")],
            activate=[FakeAction("reload", log)],
        )
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "unchanged"
        assert log == []

    def test_staging_error_fails_group(self, tmp_path: Path):
        missing = tmp_path / "no-such-file"
        group = ActionGroup(name="g", atomic=True, actions=[SetDirectives(missing, {"Port": "2204"})])
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "failed"
        assert outcome.error_kind == "PreconditionFailed"
        assert _staged_leftovers(tmp_path) == []

    def test_failed_commit_discards_its_staged_file(self, tmp_path: Path):
        first, second = tmp_path / "a.conf", tmp_path / "b.conf"

        class TargetBecomesDirectory(Validation):
            def validate(self, staged):
                second.mkdir()
                (second / "keep").write_text("x")

        group = ActionGroup(
            name="g",
            atomic=True,
            actions=[_render(first, "a\n"), _render(second, "b\n")],
            validation=TargetBecomesDirectory(MockRunner()),
        )
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "rolled_back"
        assert outcome.results[1].status == "failed"
        assert not first.exists()
        assert _staged_leftovers(tmp_path) == []

    @pytest.mark.skipif(os.geteuid() != 0, reason="chown to another user needs root")
    def test_rollback_restores_owner(self, tmp_path: Path):
        target = tmp_path / "www.conf"
        target.write_text("old\n")
        target.chmod(0o640)
        os.chown(target, 65534, 65534)
        group = ActionGroup(
            name="php-fpm",
            atomic=True,
            actions=[_render(target, "new\n")],
            activate=[FakeAction("restart", [], error=ActionError("restart", "failed"))],
        )
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "rolled_back"
        st = target.stat()
        assert target.read_text() == "old\n"
        assert (st.st_uid, st.st_gid) == (65534, 65534)
        assert st.st_mode & 0o7777 == 0o640

    def test_rollback_restores_replaced_symlink(self, tmp_path: Path):
        real = tmp_path / "shared.env"
        real.write_text("A=1\n")
        target = tmp_path / ".env"
        target.symlink_to(real)
        group = ActionGroup(
            name="g",
            atomic=True,
            actions=[_render(target, "A=2\n")],
            activate=[FakeAction("restart", [], error=ActionError("restart", "failed"))],
        )
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "rolled_back"
        assert target.is_symlink()
        assert os.readlink(target) == str(real)
        assert real.read_text() == "A=1\n"


# ── Dry run ──────────────────────────────────────────────────────────


class TestDryRun:
    def test_only_checks(self, tmp_path: Path):
        log: list[str] = []
        target = tmp_path / "site.conf"
        plan = Plan(name="p", groups=[
            ActionGroup(name="g", atomic=True, actions=[_render(target, "x\n")],
                        activate=[FakeAction("reload", log)]),
            ActionGroup(name="h", actions=[FakeAction("done", log, satisfied=True)]),
        ])
        report = execute_plan(plan, dry_run=True)
        g, h = report.groups
        assert g.status == "planned"
        assert g.results[0].status == "pending"
        assert g.activated[0].status == "pending"
        assert h.status == "unchanged"
        assert not target.exists()
        assert log == []
        assert report.dry_run


# ── Lock ─────────────────────────────────────────────────────────────


class TestRunLock:
    def test_held_lock_refuses_to_run(self, tmp_path: Path):
        log: list[str] = []
        lock_path = tmp_path / "vpsdeploy.lock"
        plan = Plan(name="p", groups=[ActionGroup(name="g", actions=[FakeAction("a", log)])])
        with AdvisoryLock(lock_path, "deploy next"):
            with pytest.raises(AlreadyRunning, match="deploy next"):
                execute_plan(plan, lock=AdvisoryLock(lock_path, "provision"))
        assert log == []

    def test_lock_released_after_run(self, tmp_path: Path):
        lock_path = tmp_path / "vpsdeploy.lock"
        execute_plan(Plan(name="p"), lock=AdvisoryLock(lock_path, "provision"))
        assert not lock_path.exists()

    def test_lock_released_on_unexpected_error(self, tmp_path: Path):
        lock_path = tmp_path / "vpsdeploy.lock"
        log: list[str] = []
        plan = Plan(name="p", groups=[
            ActionGroup(name="g", actions=[FakeAction("a", log, error=RuntimeError("bug"))]),
        ])
        with pytest.raises(RuntimeError):
            execute_plan(plan, lock=AdvisoryLock(lock_path, "provision"))
        assert not lock_path.exists()


# ── Staging and validators ───────────────────────────────────────────


class TestStagedFile:
    def test_commit_replaces_target_keeping_mode(self, tmp_path: Path):
        target = tmp_path / "f.conf"
        target.write_text("old")
        target.chmod(0o600)
        staged = StagedFile.create(target, "new")
        assert staged.path.parent == tmp_path
        assert target.read_text() == "old"
        staged.commit()
        assert target.read_text() == "new"
        assert target.stat().st_mode & 0o7777 == 0o600
        assert not staged.pending

    def test_discard_removes_staged_file(self, tmp_path: Path):
        staged = StagedFile.create(tmp_path / "f.conf", "new")
        staged.discard()
        assert not staged.path.exists()
        assert not (tmp_path / "f.conf").exists()

    def test_new_file_default_mode(self, tmp_path: Path):
        staged = StagedFile.create(tmp_path / "f.conf", "new")
        assert staged.path.stat().st_mode & 0o7777 == 0o644
        assert staged.read_text() == "new"


class TestNginxValidation:
    def test_wrapper_includes_staged_files(self, tmp_path: Path):
        mime = tmp_path / "mime.types"
        mime.write_text("types {}\n")
        staged = StagedFile.create(tmp_path / "site.conf", "server {}\n")
        text = NginxValidation(MockRunner(), str(mime)).wrapper_config([staged], tmp_path)
        assert f"include {staged.path};" in text
        assert f"include {mime};" in text
        assert "events {}" in text

    def test_missing_mime_types_is_skipped(self, tmp_path: Path):
        staged = StagedFile.create(tmp_path / "site.conf", "server {}\n")
        text = NginxValidation(MockRunner(), str(tmp_path / "absent")).wrapper_config([staged], tmp_path)
        assert "absent" not in text

    def test_runs_nginx_t(self, tmp_path: Path):
        runner = MockRunner()
        staged = StagedFile.create(tmp_path / "site.conf", "server {}\n")
        NginxValidation(runner).validate([staged])
        assert runner.call_log[0].argv[:4] == ["nginx", "-t", "-q", "-c"]


class TestConfigTreeValidation:
    def test_scratch_copy_holds_staged_content(self, tmp_path: Path):
        config_dir = tmp_path / "fail2ban"
        config_dir.mkdir()
        (config_dir / "fail2ban.conf").write_text("[Definition]\n")
        (config_dir / "jail.local").write_text("[sshd]\nport = 22\n")
        staged = StagedFile.create(config_dir / "jail.local", "[sshd]\nport = 2204\n")

        tree = ConfigTreeValidation(MockRunner(), ["true"]).scratch_tree([staged], tmp_path / "work")
        assert (tree / "jail.local").read_text() == "[sshd]\nport = 2204\n"
        assert (tree / "fail2ban.conf").read_text() == "[Definition]\n"
        assert not _staged_leftovers(tree)
        assert (config_dir / "jail.local").read_text() == "[sshd]\nport = 22\n"

    def test_only_the_staged_file_in_a_fresh_dir(self, tmp_path: Path):
        staged = StagedFile.create(tmp_path / "etc/fail2ban/jail.local", "[sshd]\n")
        tree = ConfigTreeValidation(MockRunner(), ["true"]).scratch_tree([staged], tmp_path / "work")
        assert [p.name for p in tree.iterdir()] == ["jail.local"]

    def test_rejected_jail_is_not_committed(self, tmp_path: Path):
        runner = MockRunner()
        runner.set_failure("fail2ban-client", error="Bad value substitution")
        jail = tmp_path / "jail.local"
        jail.write_text("[sshd]\nport = 22\n")
        log: list[str] = []
        group = ActionGroup(
            name="fail2ban-jail",
            atomic=True,
            actions=[_render(jail, "[sshd]\nport = %(\n")],
            validation=ConfigTreeValidation(runner, ["fail2ban-client", "-c", "{dir}", "-t"]),
            activate=[FakeAction("restart fail2ban", log)],
        )
        outcome = execute_plan(Plan(name="p", groups=[group])).groups[0]
        assert outcome.status == "validation_failed"
        assert jail.read_text() == "[sshd]\nport = 22\n"
        assert log == []
        argv = runner.call_log[0].argv
        assert argv[:2] == ["fail2ban-client", "-c"]
        assert argv[2] != str(tmp_path)
