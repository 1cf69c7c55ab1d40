"""Tests for HealthProbe classification and binary diagnostics."""

from __future__ import annotations

import errno
import os
from pathlib import Path

import pytest

from conftest import HOST_ARCH, FakeRunner, make_elf
from deployforge.core.errors import ErrorKind
from deployforge.core.health_probe import (
    HealthProbe,
    check_native,
    extract_version,
    parse_elf_header,
)
from deployforge.models.reports import ProbeOutcome


def _binary(tmp_dir: Path, data: bytes, mode: int = 0o755) -> Path:
    path = tmp_dir / "hora-police"
    path.write_bytes(data)
    os.chmod(path, mode)
    return path


class TestElfParsing:
    @pytest.mark.parametrize("arch", ["x86_64", "aarch64", "arm", "riscv64"])
    def test_machine_is_decoded(self, arch):
        info = parse_elf_header(make_elf(arch))
        assert info is not None
        assert info.architecture == arch
        assert info.bits == 64
        assert info.little_endian

    def test_not_elf(self):
        assert parse_elf_header(b"#!/bin/sh\necho hi\n") is None
        assert parse_elf_header(b"\x7fELF") is None

    def test_check_native_accepts_host_arch(self):
        assert check_native(make_elf("x86_64"), "x86_64") == (None, "x86_64")

    def test_check_native_rejects_foreign_arch(self):
        kind, detail = check_native(make_elf("aarch64"), "x86_64")
        assert kind == ErrorKind.ARCHITECTURE_MISMATCH
        assert "aarch64" in detail

    def test_check_native_rejects_non_elf(self):
        kind, _ = check_native(b"<html>404</html>", "x86_64")
        assert kind == ErrorKind.INVALID_ARTIFACT

    def test_extract_version(self):
        assert extract_version("hora-police 0.4.2 (abc123)") == "0.4.2"
        assert extract_version("no version here") is None


class TestProbe:
    def test_ok(self, probe: HealthProbe, tmp_dir):
        result = probe.probe(_binary(tmp_dir, make_elf(payload=b"version=2.1.0")))
        assert result.outcome == ProbeOutcome.OK
        assert "2.1.0" in result.stdout

    def test_missing_file(self, probe: HealthProbe, tmp_dir):
        result = probe.probe(tmp_dir / "absent")
        assert result.outcome == ProbeOutcome.NOT_EXECUTABLE

    def test_no_execute_bit(self, probe: HealthProbe, tmp_dir):
        result = probe.probe(_binary(tmp_dir, make_elf(), mode=0o644))
        assert result.outcome == ProbeOutcome.NOT_EXECUTABLE

    def test_wrong_architecture_is_not_executed(self, probe: HealthProbe, runner: FakeRunner, tmp_dir):
        result = probe.probe(_binary(tmp_dir, make_elf("aarch64")))
        assert result.outcome == ProbeOutcome.WRONG_ARCHITECTURE
        assert runner.calls == []

    def test_crash(self, probe: HealthProbe, tmp_dir):
        result = probe.probe(_binary(tmp_dir, make_elf(payload=b"CRASH")))
        assert result.outcome == ProbeOutcome.CRASH
        assert result.exit_code == -11

    def test_missing_shared_library(self, probe: HealthProbe, tmp_dir):
        result = probe.probe(_binary(tmp_dir, make_elf(payload=b"NOLIB")))
        assert result.outcome == ProbeOutcome.MISSING_DEPENDENCY

    def test_timeout(self, probe: HealthProbe, tmp_dir):
        result = probe.probe(_binary(tmp_dir, make_elf(payload=b"SLOW")))
        assert result.outcome == ProbeOutcome.TIMEOUT

    def test_exec_format_error(self, runner: FakeRunner, probe: HealthProbe, tmp_dir):
        path = _binary(tmp_dir, b"garbage that is not elf")
        runner.on(str(path), raises=OSError(errno.ENOEXEC, "Exec format error"))
        assert probe.probe(path).outcome == ProbeOutcome.WRONG_ARCHITECTURE

    def test_missing_interpreter(self, runner: FakeRunner, probe: HealthProbe, tmp_dir):
        path = _binary(tmp_dir, make_elf())
        runner.on(str(path), raises=FileNotFoundError(2, "No such file or directory"))
        assert probe.probe(path).outcome == ProbeOutcome.MISSING_DEPENDENCY

    def test_exit_126(self, runner: FakeRunner, probe: HealthProbe, tmp_dir):
        path = _binary(tmp_dir, make_elf())
        runner.on(str(path), returncode=126)
        assert probe.probe(path).outcome == ProbeOutcome.NOT_EXECUTABLE

    def test_unexpected_exit_code(self, runner: FakeRunner, probe: HealthProbe, tmp_dir):
        path = _binary(tmp_dir, make_elf())
        runner.on(str(path), returncode=3, stderr="bad flag")
        result = probe.probe(path)
        assert result.outcome == ProbeOutcome.UNKNOWN
        assert result.detail == "bad flag"

    def test_custom_probe_args(self, runner: FakeRunner, tmp_dir):
        probe = HealthProbe(runner, probe_args=["--check"], host_arch=HOST_ARCH)
        path = _binary(tmp_dir, make_elf())
        probe.probe(path)
        assert runner.calls[-1] == [str(path), "--check"]

    def test_version_of(self, probe: HealthProbe, tmp_dir):
        assert probe.version_of(_binary(tmp_dir, make_elf(payload=b"version=3.0.1"))) == "3.0.1"
        assert probe.version_of(tmp_dir / "absent") is None


class TestDiagnose:
    def test_healthy_binary(self, runner: FakeRunner, probe: HealthProbe, tmp_dir):
        path = _binary(tmp_dir, make_elf())
        runner.on("ldd", stdout="\tlinux-vdso.so.1 (0x0000)\n\tlibc.so.6 => /lib/libc.so.6\n")
        findings = probe.diagnose(path)
        assert [f.check for f in findings] == [
            "exists", "executable", "architecture", "libraries", "probe",
        ]
        assert all(f.passed for f in findings)

    def test_missing_binary_stops_early(self, probe: HealthProbe, tmp_dir):
        (finding,) = probe.diagnose(tmp_dir / "absent")
        assert not finding.passed
        assert finding.kind == ErrorKind.NOT_EXECUTABLE

    def test_wrong_architecture_has_remediation(self, probe: HealthProbe, tmp_dir):
        findings = probe.diagnose(_binary(tmp_dir, make_elf("aarch64")))
        last = findings[-1]
        assert last.check == "architecture"
        assert last.remediation == "binary architecture mismatch: rebuild for host arch"

    def test_missing_libraries_are_named(self, runner: FakeRunner, probe: HealthProbe, tmp_dir):
        path = _binary(tmp_dir, make_elf(payload=b"NOLIB"))
        runner.on("ldd", stdout="\tlibssl.so.3 => not found\n\tlibc.so.6 => /lib/libc.so.6\n")
        findings = {f.check: f for f in probe.diagnose(path)}
        assert not findings["libraries"].passed
        assert "libssl.so.3" in findings["libraries"].detail
        assert findings["probe"].kind == ErrorKind.MISSING_DEPENDENCY

    def test_no_execute_bit(self, probe: HealthProbe, runner: FakeRunner, tmp_dir):
        runner.on("ldd", stdout="\tnot a dynamic executable\n")
        findings = {f.check: f for f in probe.diagnose(_binary(tmp_dir, make_elf(), mode=0o644))}
        assert not findings["executable"].passed
        assert findings["libraries"].detail == "statically linked"
