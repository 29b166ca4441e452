"""
Tests for the advisory run lock.
"""

import json
import os
import socket
from pathlib import Path

import pytest

from src.core.engine.lock import AdvisoryLock, LockInfo, clear_lock, read_lock
from src.core.errors import AlreadyRunning

# A pid above any kernel's pid_max
_DEAD_PID = 4194304 + 1000


class TestAdvisoryLock:
    def test_acquire_writes_holder(self, tmp_path: Path):
        path = tmp_path / "run" / "vpsdeploy.lock"
        lock = AdvisoryLock(path, "provision")
        info = lock.acquire()
        assert lock.held
        assert info.pid == os.getpid()
        on_disk = json.loads(path.read_text())
        assert on_disk["command"] == "provision"
        assert on_disk["host"] == socket.gethostname()
        lock.release()
        assert not path.exists()
        assert not lock.held

    def test_second_lock_is_refused(self, tmp_path: Path):
        path = tmp_path / "vpsdeploy.lock"
        with AdvisoryLock(path, "deploy laravel"):
            with pytest.raises(AlreadyRunning) as exc_info:
                AdvisoryLock(path, "provision").acquire()
        assert "deploy laravel" in exc_info.value.holder
        assert exc_info.value.lock_path == str(path)

    def test_context_manager_releases_on_error(self, tmp_path: Path):
        path = tmp_path / "vpsdeploy.lock"
        with pytest.raises(ValueError):
            with AdvisoryLock(path):
                raise ValueError("boom")
        assert not path.exists()

    def test_release_without_acquire_keeps_foreign_lock(self, tmp_path: Path):
        path = tmp_path / "vpsdeploy.lock"
        path.write_text("{}")
        AdvisoryLock(path).release()
        assert path.exists()


class TestReadLock:
    def test_no_lock(self, tmp_path: Path):
        assert read_lock(tmp_path / "vpsdeploy.lock") is None

    def test_reads_holder(self, tmp_path: Path):
        path = tmp_path / "vpsdeploy.lock"
        with AdvisoryLock(path, "deploy go"):
            info = read_lock(path)
        assert info is not None
        assert info.command == "deploy go"
        assert "deploy go" in info.describe()

    def test_corrupt_lock_still_counts_as_held(self, tmp_path: Path):
        path = tmp_path / "vpsdeploy.lock"
        path.write_text("not json")
        info = read_lock(path)
        assert info is not None
        assert info.pid == 0

    def test_clear(self, tmp_path: Path):
        path = tmp_path / "vpsdeploy.lock"
        path.write_text("{}")
        assert clear_lock(path) is True
        assert clear_lock(path) is False


class TestStaleness:
    def test_live_process_is_not_stale(self):
        info = LockInfo(pid=os.getpid(), started_at="", host=socket.gethostname())
        assert not info.is_stale

    def test_dead_process_is_stale(self):
        info = LockInfo(pid=_DEAD_PID, started_at="", host=socket.gethostname())
        assert info.is_stale

    def test_other_host_is_never_stale(self):
        info = LockInfo(pid=_DEAD_PID, started_at="", host="some-other-host.invalid")
        assert not info.is_stale
