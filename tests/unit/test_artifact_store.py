"""Tests for ArtifactStore: staging, backups, retention and the install record."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import make_elf
from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.errors import ErrorKind, InstallError
from deployforge.core.hasher import sha256_hex
from deployforge.models.artifacts import InstallRecord


def _backup(store: ArtifactStore, tmp_dir: Path, attempt_id: str, binary: bytes | None = b"old"):
    bin_path = tmp_dir / "bin" / "hora-police"
    bin_path.parent.mkdir(parents=True, exist_ok=True)
    if binary is not None:
        bin_path.write_bytes(binary)
        os.chmod(bin_path, 0o755)
    return store.create_backup(
        attempt_id,
        binary_path=bin_path,
        descriptor_bytes=b"[Unit]\n" if binary is not None else None,
        descriptor_path=tmp_dir / "hora-police.service",
        installed_version="1.0.0",
        service_was_active=True,
    )


class TestStaging:
    def test_stage_writes_executable_candidate(self, store: ArtifactStore):
        data = make_elf()
        artifact = store.stage(data, target_version="1.2.0", strategy="download", architecture="x86_64")
        assert artifact.sha256 == sha256_hex(data)
        assert artifact.path.read_bytes() == data
        assert os.access(artifact.path, os.X_OK)

    def test_staged_matches_version(self, store: ArtifactStore):
        store.stage(make_elf(), target_version="1.2.0", strategy="local-build", architecture="x86_64")
        assert store.staged("1.2.0") is not None
        assert store.staged("1.3.0") is None
        assert store.staged() is not None

    def test_staged_rejects_tampered_candidate(self, store: ArtifactStore):
        artifact = store.stage(make_elf(), target_version="1.2.0", strategy="x", architecture="x86_64")
        artifact.path.write_bytes(b"tampered")
        assert store.staged("1.2.0") is None

    def test_staged_empty_store(self, store: ArtifactStore):
        assert store.staged() is None

    def test_discard_staged(self, store: ArtifactStore):
        store.stage(make_elf(), target_version="1.2.0", strategy="x", architecture="x86_64")
        store.discard_staged()
        assert store.staged() is None


class TestBackups:
    def test_backup_captures_binary_and_descriptor(self, store: ArtifactStore, tmp_dir: Path):
        backup = _backup(store, tmp_dir, "dep-1")
        assert backup.binary is not None and backup.descriptor is not None
        assert store.backup_file(backup, backup.binary).read_bytes() == b"old"
        assert store.backup_file(backup, backup.descriptor).read_bytes() == b"[Unit]\n"
        assert backup.binary.mode == 0o755
        assert backup.service_was_active
        assert store.verify_backup(backup) == []

    def test_nothing_installed_yields_empty_marker(self, store: ArtifactStore, tmp_dir: Path):
        backup = _backup(store, tmp_dir, "dep-1", binary=None)
        assert backup.is_empty
        assert store.get_backup(backup.backup_id) == backup

    def test_backup_id_references_attempt(self, store: ArtifactStore, tmp_dir: Path):
        backup = _backup(store, tmp_dir, "dep-42")
        assert backup.backup_id.endswith("-dep-42")
        assert backup.attempt_id == "dep-42"

    def test_uncommitted_backup_is_ignored(self, store: ArtifactStore, tmp_dir: Path):
        _backup(store, tmp_dir, "dep-1")
        (store.backup_root / "half-written").mkdir()
        assert len(store.list_backups()) == 1

    def test_latest_backup_is_newest(self, store: ArtifactStore, tmp_dir: Path):
        _backup(store, tmp_dir, "dep-1")
        second = _backup(store, tmp_dir, "dep-2")
        assert store.latest_backup() == second

    def test_verify_backup_detects_corruption(self, store: ArtifactStore, tmp_dir: Path):
        backup = _backup(store, tmp_dir, "dep-1")
        store.backup_file(backup, backup.binary).write_bytes(b"bitrot")
        assert store.verify_backup(backup) == ["binary digest mismatch"]

    def test_verify_backup_detects_missing_file(self, store: ArtifactStore, tmp_dir: Path):
        backup = _backup(store, tmp_dir, "dep-1")
        store.backup_file(backup, backup.descriptor).unlink()
        assert store.verify_backup(backup) == ["descriptor missing"]

    def test_backup_failure_raises_backup_failed(self, tmp_dir: Path):
        blocker = tmp_dir / "state"
        blocker.write_text("not a directory")
        store = ArtifactStore(blocker)
        with pytest.raises(InstallError) as exc_info:
            _backup(store, tmp_dir, "dep-1")
        assert exc_info.value.kind == ErrorKind.BACKUP_FAILED

    def test_prune_keeps_newest(self, store: ArtifactStore, tmp_dir: Path):
        ids = [_backup(store, tmp_dir, f"dep-{i}").backup_id for i in range(4)]
        removed = store.prune_backups(2)
        assert removed == ids[:2]
        assert [b.backup_id for b in store.list_backups()] == ids[2:]

    def test_prune_noop_under_retention(self, store: ArtifactStore, tmp_dir: Path):
        _backup(store, tmp_dir, "dep-1")
        assert store.prune_backups(5) == []


class TestInstallRecord:
    def test_round_trip(self, store: ArtifactStore):
        record = InstallRecord(version="1.2.0", sha256="ab" * 32, attempt_id="dep-1")
        store.write_install_record(record)
        assert store.read_install_record() == record

    def test_clear(self, store: ArtifactStore):
        store.write_install_record(InstallRecord(version="1", sha256="0", attempt_id="a"))
        store.clear_install_record()
        assert store.read_install_record() is None

    def test_unreadable_record_is_ignored(self, store: ArtifactStore, config):
        config.state_dir.mkdir(parents=True, exist_ok=True)
        (config.state_dir / "installed.json").write_text("{not json")
        assert store.read_install_record() is None
