"""Tests for post-install verification and the fatal log scan."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeSupervisor, make_elf
from deployforge.core.cancellation import CancellationToken
from deployforge.core.errors import DeploymentCancelled, ErrorKind
from deployforge.core.verifier import Verifier, scan_logs
from deployforge.models.reports import ProbeOutcome


@pytest.fixture
def verifier(probe, supervisor: FakeSupervisor, config) -> Verifier:
    return Verifier(
        probe, supervisor, config.install_path, config.service_name, poll_interval=0.01
    )


def _start(config, supervisor: FakeSupervisor, payload: bytes) -> datetime:
    config.install_path.parent.mkdir(parents=True, exist_ok=True)
    config.install_path.write_bytes(make_elf(payload=payload))
    os.chmod(config.install_path, 0o755)
    started = datetime.now(timezone.utc)
    supervisor.restart(config.service_name)
    return started


class TestScanLogs:
    def test_no_match(self):
        assert scan_logs(["Started hora-police.service.", "scanning 42 processes"]) == ([], [], [])

    def test_reasons_follow_table_order_without_duplicates(self):
        lines = [
            "hora-police: Permission denied",
            "status=203/EXEC",
            "Failed at step NAMESPACE spawning: status=226/NAMESPACE",
        ]
        reasons, patterns, hits = scan_logs(lines)
        assert reasons == [ErrorKind.SANDBOX_REJECTED, ErrorKind.NOT_EXECUTABLE]
        assert patterns == ["226/NAMESPACE", "203/EXEC", "Permission denied"]
        assert len(hits) == 3

    def test_start_limit_is_crash_loop(self):
        reasons, _, _ = scan_logs(["unit entered failed state: start-limit-hit"])
        assert reasons == [ErrorKind.CRASH_LOOP]


class TestVerify:
    def test_healthy_service_passes(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0")
        report = verifier.verify(0.2, since=since)
        assert report.passed
        assert report.binary_ok and report.service_active and report.probe_ok
        assert report.reasons == []

    def test_sandbox_rejection_despite_good_probe(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0 SANDBOX")
        report = verifier.verify(0.2, since=since)
        assert report.probe_ok
        assert not report.binary_ok
        assert not report.service_active
        assert report.primary_reason == ErrorKind.SANDBOX_REJECTED
        assert "226/NAMESPACE" in report.matched_patterns
        assert "226/NAMESPACE" in report.excerpt

    def test_failure_after_first_active_is_caught(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0 LATE")

        report = verifier.verify(0.2, since=since)

        assert not report.passed
        assert report.service_state == "failed"
        assert report.primary_reason == ErrorKind.SANDBOX_REJECTED
        assert "226/NAMESPACE" in report.matched_patterns

    def test_active_unit_is_polled_through_the_settle_window(
        self, probe, supervisor, config
    ):
        verifier = Verifier(
            probe, supervisor, config.install_path, config.service_name,
            poll_interval=0.01, settle=0.05,
        )
        since = _start(config, supervisor, b"version=1.0.0")
        polls = []
        state = supervisor.state
        supervisor.state = lambda name: polls.append(name) or state(name)

        report = verifier.verify(1.0, since=since)

        assert report.passed
        assert len(polls) > 1

    def test_fatal_pattern_fails_an_active_service(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0")
        supervisor.log(
            "hora-police: error while loading shared libraries: libbpf.so.1: cannot open shared object file"
        )
        report = verifier.verify(0.2, since=since)
        assert report.service_active and report.probe_ok
        assert not report.binary_ok
        assert not report.passed
        assert report.primary_reason == ErrorKind.MISSING_DEPENDENCY

    def test_crash_loop(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0 CRASH")
        report = verifier.verify(0.2, since=since)
        assert report.probe_outcome == ProbeOutcome.CRASH
        assert report.reasons == [ErrorKind.CRASH_LOOP, ErrorKind.CRASH]
        assert report.service_state == "failed"

    def test_never_active_is_service_inactive(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0 HANG")
        report = verifier.verify(0.1, since=since)
        assert report.service_state == "activating"
        assert report.reasons == [ErrorKind.SERVICE_INACTIVE]

    def test_probe_failure_detail_in_excerpt(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0 NOLIB")
        report = verifier.verify(0.2, since=since)
        assert ErrorKind.MISSING_DEPENDENCY in report.reasons
        assert report.excerpt.startswith("probe: ")

    def test_log_lines_before_since_are_ignored(self, verifier, config, supervisor):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        supervisor.journal.append((old, "status=226/NAMESPACE"))
        since = _start(config, supervisor, b"version=1.0.0")
        assert verifier.verify(0.2, since=since).passed

    def test_without_since_the_whole_tail_is_scanned(self, verifier, config, supervisor):
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        supervisor.journal.append((old, "status=226/NAMESPACE"))
        _start(config, supervisor, b"version=1.0.0")
        assert not verifier.verify(0.2).passed

    def test_cancelled_while_waiting(self, verifier, config, supervisor):
        since = _start(config, supervisor, b"version=1.0.0 HANG")
        token = CancellationToken()
        token.cancel("received SIGTERM")
        with pytest.raises(DeploymentCancelled) as exc_info:
            verifier.verify(5.0, since=since, cancel=token)
        assert exc_info.value.stage == "verifying"

    def test_missing_binary(self, verifier, config, supervisor):
        supervisor.restart(config.service_name)
        report = verifier.verify(0.1)
        assert report.probe_outcome == ProbeOutcome.NOT_EXECUTABLE
        assert report.reasons[0] == ErrorKind.NOT_EXECUTABLE
