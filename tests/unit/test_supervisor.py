"""Tests for SystemdSupervisor against a scripted command runner."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import FakeRunner
from deployforge.core.errors import ErrorKind, StartError
from deployforge.core.runner import CommandTimeoutError
from deployforge.core.supervisor import SystemdSupervisor


@pytest.fixture
def systemd(runner: FakeRunner, tmp_dir: Path) -> SystemdSupervisor:
    (tmp_dir / "units").mkdir()
    return SystemdSupervisor(runner, tmp_dir / "units")


class TestUnitFiles:
    def test_register_writes_reloads_and_enables(self, systemd, runner, tmp_dir):
        systemd.register_unit("hora-police", b"[Unit]\n")
        path = tmp_dir / "units/hora-police.service"
        assert path.read_bytes() == b"[Unit]\n"
        assert path.stat().st_mode & 0o777 == 0o644
        assert runner.commands("systemctl") == [
            ["systemctl", "daemon-reload"],
            ["systemctl", "reset-failed"],
            ["systemctl", "enable", "hora-police.service"],
        ]

    def test_read_missing_unit(self, systemd):
        assert systemd.read_unit("hora-police") is None

    def test_unregister(self, systemd, runner, tmp_dir):
        systemd.register_unit("hora-police", b"[Unit]\n")
        systemd.unregister_unit("hora-police")
        assert not (tmp_dir / "units/hora-police.service").exists()
        assert ["systemctl", "disable", "hora-police.service"] in runner.calls

    def test_enable_failure_is_tolerated(self, systemd, runner):
        runner.on("systemctl", "enable", returncode=1, stderr="Failed to enable unit")
        systemd.register_unit("hora-police", b"[Unit]\n")


class TestLifecycle:
    def test_restart_failure_raises_start_error(self, systemd, runner):
        runner.on(
            "systemctl", "restart",
            returncode=1,
            stderr="Job for hora-police.service failed because the control process exited",
        )
        with pytest.raises(StartError) as exc_info:
            systemd.restart("hora-police")
        assert exc_info.value.kind == ErrorKind.START_FAILED
        assert "control process exited" in exc_info.value.message

    def test_stop_failure_is_tolerated(self, systemd, runner):
        runner.on("systemctl", "stop", returncode=5, stderr="Unit hora-police.service not loaded.")
        systemd.stop("hora-police")

    def test_missing_systemctl(self, systemd, runner):
        runner.on("systemctl", raises=FileNotFoundError(2, "systemctl"))
        with pytest.raises(StartError):
            systemd.start("hora-police")

    @pytest.mark.parametrize("stdout,expected", [
        ("active\n", "active"),
        ("failed\n", "failed"),
        ("activating\n", "activating"),
        ("", "unknown"),
    ])
    def test_state(self, systemd, runner, stdout, expected):
        runner.on("systemctl", "is-active", returncode=0 if expected == "active" else 3, stdout=stdout)
        assert systemd.state("hora-police") == expected
        assert systemd.is_active("hora-police") is (expected == "active")

    def test_state_when_systemctl_hangs(self, systemd, runner):
        runner.on("systemctl", "is-active", raises=CommandTimeoutError(["systemctl"], 90))
        assert systemd.state("hora-police") == "unknown"


class TestRecentLogs:
    def test_tail(self, systemd, runner):
        runner.on("journalctl", stdout="line one\nline two\n")
        assert systemd.recent_logs("hora-police", 50) == ["line one", "line two"]
        (argv,) = runner.commands("journalctl")
        assert argv[:5] == ["journalctl", "-u", "hora-police.service", "-n", "50"]
        assert "--since" not in argv

    def test_since_is_passed_as_epoch(self, systemd, runner):
        since = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)
        systemd.recent_logs("hora-police", 10, since=since)
        (argv,) = runner.commands("journalctl")
        assert argv[-2:] == ["--since", f"@{int(since.timestamp())}"]

    def test_journal_unavailable(self, systemd, runner):
        runner.on("journalctl", raises=FileNotFoundError(2, "journalctl"))
        assert systemd.recent_logs("hora-police", 10) == []
