"""Tests for installed/target version resolution and the source checkout."""

from __future__ import annotations

import os

import pytest

from conftest import FakeRunner, make_elf
from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.errors import ErrorKind, ResolutionError
from deployforge.core.hasher import sha256_hex
from deployforge.core.health_probe import HealthProbe
from deployforge.core.version_resolver import (
    NOT_EXECUTABLE,
    NOT_INSTALLED,
    SourceCheckout,
    VersionResolver,
)
from deployforge.models.artifacts import InstallRecord


@pytest.fixture
def source(runner: FakeRunner, tmp_dir) -> SourceCheckout:
    return SourceCheckout(runner, tmp_dir / "src", remote="origin")


@pytest.fixture
def resolver(store: ArtifactStore, probe: HealthProbe, config, source) -> VersionResolver:
    return VersionResolver(store, probe, config.install_path, source)


def _install(config, data: bytes, mode: int = 0o755) -> None:
    config.install_path.parent.mkdir(parents=True, exist_ok=True)
    config.install_path.write_bytes(data)
    os.chmod(config.install_path, mode)


class TestInstalledVersion:
    def test_not_installed(self, resolver: VersionResolver):
        assert resolver.installed_version() == NOT_INSTALLED

    def test_not_executable(self, resolver: VersionResolver, config):
        _install(config, make_elf(), mode=0o644)
        assert resolver.installed_version() == NOT_EXECUTABLE

    def test_install_record_wins_when_binary_matches(self, resolver, store, config, runner):
        data = make_elf(payload=b"version=9.9.9")
        _install(config, data)
        store.write_install_record(
            InstallRecord(version="1.4.0-abc1234", sha256=sha256_hex(data), attempt_id="dep-1")
        )
        assert resolver.installed_version() == "1.4.0-abc1234"
        assert runner.calls == []

    def test_stale_record_falls_back_to_probe(self, resolver, store, config):
        _install(config, make_elf(payload=b"version=2.0.0"))
        store.write_install_record(InstallRecord(version="1.0.0", sha256="0" * 64, attempt_id="a"))
        assert resolver.installed_version() == "2.0.0"

    def test_unknown_when_probe_fails(self, resolver, config):
        _install(config, make_elf(payload=b"CRASH"))
        assert resolver.installed_version().startswith("unknown-")


class TestTargetVersion:
    def test_override_wins(self, resolver: VersionResolver, runner: FakeRunner):
        assert resolver.target_version("HEAD", override="5.0.0") == "5.0.0"
        assert runner.calls == []

    def test_semver_tag(self, resolver: VersionResolver, runner: FakeRunner):
        runner.on("git", "rev-parse", stdout="abc1234\n")
        runner.on("git", "describe", stdout="v1.3.0\n")
        assert resolver.target_version("HEAD") == "1.3.0"

    def test_cargo_version_with_commit(self, resolver: VersionResolver, runner: FakeRunner):
        runner.on("git", "rev-parse", stdout="abc1234\n")
        runner.on("git", "describe", stdout="abc1234\n")
        runner.on("git", "show", stdout='[package]\nname = "hora-police"\nversion = "0.9.1"\n')
        assert resolver.target_version("HEAD") == "0.9.1-abc1234"

    def test_bare_commit(self, resolver: VersionResolver, runner: FakeRunner):
        runner.on("git", "rev-parse", stdout="abc1234\n")
        runner.on("git", "describe", returncode=128)
        runner.on("git", "show", returncode=128)
        assert resolver.target_version("HEAD") == "git-abc1234"

    def test_unresolvable_ref(self, resolver: VersionResolver, runner: FakeRunner):
        runner.on("git", "rev-parse", returncode=128, stderr="unknown revision")
        with pytest.raises(ResolutionError) as exc_info:
            resolver.target_version("nope")
        assert exc_info.value.kind == ErrorKind.VERSION_UNRESOLVED

    def test_no_source_and_no_override(self, store, probe, config):
        resolver = VersionResolver(store, probe, config.install_path, source=None)
        with pytest.raises(ResolutionError):
            resolver.target_version("HEAD")


class TestSourceCheckout:
    def test_fetch_failure_is_resolution_error(self, source: SourceCheckout, runner: FakeRunner):
        runner.on("git", "fetch", returncode=1, stderr="could not resolve host")
        with pytest.raises(ResolutionError):
            source.fetch()

    def test_upstream_ref_of_branch(self, source: SourceCheckout, runner: FakeRunner):
        runner.on("git", "rev-parse", "--abbrev-ref", stdout="main\n")
        assert source.upstream_ref() == "origin/main"

    def test_upstream_ref_when_detached(self, source: SourceCheckout, runner: FakeRunner):
        runner.on("git", "rev-parse", "--abbrev-ref", stdout="HEAD\n")
        assert source.upstream_ref() == "HEAD"

    def test_checkout_is_detached(self, source: SourceCheckout, runner: FakeRunner):
        assert source.checkout("v1.2.0")
        assert runner.calls[-1] == ["git", "checkout", "--detach", "v1.2.0"]

    def test_git_missing(self, source: SourceCheckout, runner: FakeRunner):
        runner.on("git", raises=FileNotFoundError(2, "git"))
        assert source.short_commit("HEAD") is None
