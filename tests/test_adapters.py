"""
Tests for the host adapters, the mock runner, and input sources.
"""

import os
from pathlib import Path

import pytest

from src.adapters.mock import MockPackageManager, MockRunner, MockSourceControl
from src.adapters.prompt import ConsoleInput, ScriptedInput, parse_bool
from src.adapters.registry import AdapterRegistry
from src.adapters.shell.command import SubprocessRunner, format_command
from src.adapters.shell.filesystem import FileSnapshot, atomic_write, read_text
from src.adapters.system.apt import AptPackageManager
from src.adapters.system.process import Pm2Control, SupervisorControl
from src.adapters.system.systemd import SystemdServiceManager
from src.adapters.vcs.git import GitSource
from src.core.models.action import Receipt

# ── Mock runner ──────────────────────────────────────────────────────


class TestMockRunner:
    def test_default_success(self):
        runner = MockRunner()
        receipt = runner.run(["nginx", "-t"])
        assert receipt.ok
        assert receipt.command == "nginx -t"
        assert runner.call_count == 1

    def test_set_failure(self):
        runner = MockRunner()
        runner.set_failure("certbot", error="Too many certificates")
        receipt = runner.run(["certbot", "--nginx", "-d", "example.com"])
        assert receipt.failed
        assert receipt.error == "Too many certificates"
        assert receipt.command == "certbot --nginx -d example.com"

    def test_latest_key_wins(self):
        runner = MockRunner()
        runner.set_failure("systemctl")
        runner.set_output("systemctl is-active", "active")
        assert runner.run(["systemctl", "is-active", "nginx"]).output == "active"
        assert runner.run(["systemctl", "restart", "nginx"]).failed

    def test_re_registering_moves_key_to_front(self):
        runner = MockRunner()
        runner.set_output("systemctl is-active", "active")
        runner.set_failure("systemctl")
        runner.set_output("systemctl is-active", "again")
        assert runner.run(["systemctl", "is-active", "x"]).output == "again"

    def test_call_log_and_ran(self, tmp_path: Path):
        runner = MockRunner()
        runner.run(["pnpm", "install"], cwd=tmp_path, env={"CI": "1"})
        call = runner.call_log[0]
        assert call.argv == ["pnpm", "install"]
        assert call.cwd == str(tmp_path)
        assert call.env == {"CI": "1"}
        assert runner.ran("pnpm install")
        assert not runner.ran("composer")

    def test_which(self):
        runner = MockRunner()
        assert runner.which("go") == "/usr/bin/go"
        runner.set_missing("go")
        assert runner.which("go") is None
        runner.set_present("go")
        assert runner.which("go") == "/usr/bin/go"

    def test_reset(self):
        runner = MockRunner()
        runner.set_failure("x")
        runner.set_missing("y")
        runner.run(["x"])
        runner.reset()
        assert runner.call_count == 0
        assert runner.run(["x"]).ok
        assert runner.which("y")


class TestMockPackageManager:
    def test_install_marks_installed(self):
        packages = MockPackageManager(MockRunner())
        assert not packages.is_installed("nginx")
        assert packages.install("nginx", "rsync").ok
        assert packages.is_installed("nginx")
        assert packages.is_installed("rsync")

    def test_broken_package(self):
        packages = MockPackageManager(MockRunner())
        packages.set_broken("php8.4-nope")
        receipt = packages.install("php8.4-fpm", "php8.4-nope")
        assert receipt.failed
        assert "php8.4-nope" in receipt.error
        assert not packages.is_installed("php8.4-fpm")


class TestMockSourceControl:
    def test_clone_records_origin(self, tmp_path: Path):
        runner = MockRunner()
        vcs = MockSourceControl(runner)
        dest = tmp_path / "app"
        assert vcs.clone("git@example.com:me/app.git", dest).ok
        assert vcs.origin_of(dest) == "git@example.com:me/app.git"
        assert runner.ran("git clone git@example.com:me/app.git")

    def test_refuses_non_empty_destination(self, tmp_path: Path):
        dest = tmp_path / "app"
        dest.mkdir()
        (dest / "keep.txt").write_text("x")
        receipt = MockSourceControl(MockRunner()).clone("u", dest)
        assert receipt.failed
        assert (dest / "keep.txt").exists()

    def test_inaccessible(self, tmp_path: Path):
        vcs = MockSourceControl(MockRunner(), inaccessible={"u"})
        assert vcs.clone("u", tmp_path / "app").failed


# ── Subprocess runner ────────────────────────────────────────────────


class TestSubprocessRunner:
    def test_echo(self, tmp_path: Path):
        receipt = SubprocessRunner().run(["echo", "hello"], cwd=tmp_path)
        assert receipt.ok
        assert receipt.output == "hello"
        assert receipt.return_code == 0

    def test_failure(self):
        receipt = SubprocessRunner().run(["false"])
        assert receipt.failed
        assert receipt.return_code == 1

    def test_captures_stderr(self):
        receipt = SubprocessRunner().run(["ls", "/definitely/not/here"])
        assert receipt.failed
        assert receipt.error

    def test_missing_command(self):
        receipt = SubprocessRunner().run(["vpsdeploy-no-such-binary"])
        assert receipt.failed
        assert receipt.return_code == 127

    def test_timeout(self):
        receipt = SubprocessRunner().run(["sleep", "5"], timeout=1)
        assert receipt.failed
        assert "timed out" in receipt.error

    def test_env_is_merged(self):
        receipt = SubprocessRunner().run(["sh", "-c", "echo $VPSDEPLOY_TEST"], env={"VPSDEPLOY_TEST": "yes"})
        assert receipt.output == "yes"

    def test_which(self):
        assert SubprocessRunner().which("sh")
        assert SubprocessRunner().which("vpsdeploy-no-such-binary") is None


class TestFormatCommand:
    def test_quotes_when_needed(self):
        assert format_command(["echo", "a b"]) == "echo 'a b'"
        assert format_command(["ls", Path("/tmp")]) == "ls /tmp"


# ── Filesystem helpers ───────────────────────────────────────────────


class TestFilesystem:
    def test_read_text_missing(self, tmp_path: Path):
        assert read_text(tmp_path / "nope") is None

    def test_atomic_write_keeps_mode(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_text("old")
        path.chmod(0o600)
        atomic_write(path, b"new")
        assert path.read_bytes() == b"new"
        assert path.stat().st_mode & 0o7777 == 0o600
        assert [p.name for p in tmp_path.iterdir()] == ["f"]

    def test_snapshot_restore(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_bytes(b"\x00original\n")
        path.chmod(0o640)
        snapshot = FileSnapshot.take(path)
        path.write_bytes(b"changed")
        path.chmod(0o644)
        snapshot.restore()
        assert path.read_bytes() == b"\x00original\n"
        assert path.stat().st_mode & 0o7777 == 0o640

    def test_snapshot_records_owner(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_text("x")
        snapshot = FileSnapshot.take(path)
        assert (snapshot.uid, snapshot.gid) == (path.stat().st_uid, path.stat().st_gid)

    @pytest.mark.skipif(os.geteuid() != 0, reason="chown needs root")
    def test_snapshot_restores_owner(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_text("original")
        os.chown(path, 65534, 65534)
        snapshot = FileSnapshot.take(path)
        atomic_write(path, b"changed", uid=0, gid=0)
        assert path.stat().st_uid == 0
        snapshot.restore()
        assert (path.stat().st_uid, path.stat().st_gid) == (65534, 65534)
        assert path.read_text() == "original"

    def test_snapshot_restores_symlink(self, tmp_path: Path):
        (tmp_path / "real.conf").write_text("real")
        link = tmp_path / "site.conf"
        link.symlink_to("real.conf")
        snapshot = FileSnapshot.take(link)
        assert snapshot.existed
        assert snapshot.link == "real.conf"
        link.unlink()
        link.write_text("replacement")
        snapshot.restore()
        assert link.is_symlink()
        assert os.readlink(link) == "real.conf"
        assert (tmp_path / "real.conf").read_text() == "real"

    def test_snapshot_of_absent_file_removes_it(self, tmp_path: Path):
        path = tmp_path / "f"
        snapshot = FileSnapshot.take(path)
        assert not snapshot.existed
        path.write_text("new")
        snapshot.restore()
        assert not path.exists()


# ── System adapters ──────────────────────────────────────────────────


class TestApt:
    def test_is_installed(self):
        runner = MockRunner()
        runner.set_output("dpkg-query", "install ok installed")
        assert AptPackageManager(runner).is_installed("nginx")

    def test_deinstalled_is_not_installed(self):
        runner = MockRunner()
        runner.set_output("dpkg-query", "deinstall ok config-files")
        assert not AptPackageManager(runner).is_installed("nginx")

    def test_index_updated_once(self):
        runner = MockRunner()
        apt = AptPackageManager(runner)
        apt.install("nginx")
        apt.install("rsync")
        assert runner.commands.count("apt-get update -y") == 1
        assert runner.commands[-1] == "apt-get install -y --no-install-recommends rsync"
        assert runner.call_log[-1].env == {"DEBIAN_FRONTEND": "noninteractive"}

    def test_failed_update_is_retried(self):
        runner = MockRunner()
        runner.set_failure("apt-get update")
        apt = AptPackageManager(runner)
        apt.install("nginx")
        apt.install("rsync")
        assert runner.commands.count("apt-get update -y") == 2


class TestSystemd:
    def test_queries(self):
        runner = MockRunner()
        systemd = SystemdServiceManager(runner)
        assert systemd.is_active("nginx")
        runner.set_failure("is-enabled")
        assert not systemd.is_enabled("nginx")
        assert runner.commands == [
            "systemctl is-active --quiet nginx",
            "systemctl is-enabled --quiet nginx",
        ]

    def test_verbs(self):
        runner = MockRunner()
        systemd = SystemdServiceManager(runner)
        systemd.reload("nginx")
        systemd.restart("php8.4-fpm")
        systemd.enable("app")
        systemd.start("app")
        systemd.daemon_reload()
        assert runner.commands == [
            "systemctl reload nginx",
            "systemctl restart php8.4-fpm",
            "systemctl enable app",
            "systemctl start app",
            "systemctl daemon-reload",
        ]


class TestProcessControl:
    def test_supervisor(self):
        runner = MockRunner()
        supervisor = SupervisorControl(runner)
        supervisor.reread()
        supervisor.update()
        supervisor.restart("shop-worker")
        assert runner.commands[-1] == "supervisorctl restart 'shop-worker:*'"

    def test_pm2_runs_from_ecosystem_dir(self, tmp_path: Path):
        runner = MockRunner()
        Pm2Control(runner).start_or_reload(tmp_path / "ecosystem.config.js")
        assert runner.call_log[0].cwd == str(tmp_path)


class TestGitSource:
    def test_refuses_non_empty_destination(self, tmp_path: Path):
        runner = MockRunner()
        (tmp_path / "file").write_text("x")
        receipt = GitSource(runner).clone("git@example.com:me/app.git", tmp_path)
        assert receipt.failed
        assert "overwrite not authorized" in receipt.error
        assert runner.call_count == 0

    def test_overwrite_removes_checkout(self, tmp_path: Path):
        runner = MockRunner()
        dest = tmp_path / "app"
        dest.mkdir()
        (dest / "old").write_text("x")
        assert GitSource(runner).clone("u", dest, overwrite=True).ok
        assert not (dest / "old").exists()
        assert runner.commands[-1] == f"git clone u {dest}"

    def test_inaccessible(self, tmp_path: Path):
        runner = MockRunner()
        runner.set_failure("ls-remote")
        receipt = GitSource(runner).clone("u", tmp_path / "app")
        assert receipt.failed
        assert "Cannot access repository" in receipt.error

    def test_origin_of(self, tmp_path: Path):
        runner = MockRunner()
        runner.set_output("remote get-url", "git@example.com:me/app.git\n")
        git = GitSource(runner)
        assert git.origin_of(tmp_path) is None
        (tmp_path / ".git").mkdir()
        assert git.origin_of(tmp_path) == "git@example.com:me/app.git"


# ── Registry ─────────────────────────────────────────────────────────


class TestAdapterRegistry:
    def test_create_real(self):
        registry = AdapterRegistry.create()
        assert isinstance(registry.runner, SubprocessRunner)
        assert isinstance(registry.packages, AptPackageManager)
        assert isinstance(registry.vcs, GitSource)
        assert not registry.mock_mode

    def test_create_mock(self):
        registry = AdapterRegistry.create(mock_mode=True)
        assert isinstance(registry.runner, MockRunner)
        assert isinstance(registry.packages, MockPackageManager)
        assert registry.mock_mode

    def test_for_mock_runner_shares_runner(self, runner: MockRunner):
        registry = AdapterRegistry.for_runner(runner)
        assert registry.mock_mode
        registry.services.restart("nginx")
        registry.pm2.save()
        assert runner.commands == ["systemctl restart nginx", "pm2 save"]


# ── Input sources ────────────────────────────────────────────────────


class TestParseBool:
    @pytest.mark.parametrize("value", ["y", "YES", "true", "1", " on "])
    def test_true(self, value: str):
        assert parse_bool(value, default=False) is True

    @pytest.mark.parametrize("value", ["n", "No", "false", "0", "off"])
    def test_false(self, value: str):
        assert parse_bool(value, default=True) is False

    def test_unknown_uses_default(self):
        assert parse_bool("", default=True) is True
        assert parse_bool("maybe", default=False) is False


class TestScriptedInput:
    def test_answers_and_defaults(self):
        source = ScriptedInput({"domain": "example.com", "ssh_port": ""})
        assert source.ask("domain", "Domain") == "example.com"
        assert source.ask("ssh_port", "SSH port", default="2204") == "2204"
        assert source.ask("folder", "Folder", default="app") == "app"
        assert source.asked == ["domain", "ssh_port", "folder"]

    def test_confirm(self):
        source = ScriptedInput({"certbot": "n"})
        assert source.confirm("certbot", "Run certbot?") is False
        assert source.confirm("overwrite", "Overwrite?", default=False) is False
        assert not source.interactive


class TestConsoleInput:
    def test_presets_skip_prompt(self):
        source = ConsoleInput({"domain": "example.com", "certbot": "no"})
        assert source.interactive
        assert source.ask("domain", "Domain") == "example.com"
        assert source.confirm("certbot", "Run certbot?") is False

    def test_reject_drops_preset(self, monkeypatch: pytest.MonkeyPatch):
        source = ConsoleInput({"ssh_port": "99999"})
        source.reject("ssh_port", "port out of range")
        monkeypatch.setattr("click.prompt", lambda *a, **kw: " 2204 ")
        assert source.ask("ssh_port", "SSH port") == "2204"


class TestReceipt:
    def test_failure_has_no_return_code_by_default(self):
        receipt = Receipt.failure(command="x", error="boom")
        assert receipt.failed
        assert receipt.return_code is None
