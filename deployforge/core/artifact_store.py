"""Staging area for candidate binaries and timestamped backups.

Layout under ``state_dir``::

    staging/candidate.bin     the staged artifact (mode 0755)
    staging/candidate.json    its Artifact metadata
    backups/<backup_id>/      binary, descriptor, manifest.json
    installed.json            InstallRecord of what is currently installed

A backup directory only counts once its ``manifest.json`` is written; the
manifest is written last, so a crash mid-backup leaves an ignorable
directory rather than a half-valid backup. Backups are never modified after
creation; the only delete is retention pruning.
"""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

from deployforge.core.errors import ErrorKind, InstallError
from deployforge.core.fsutil import atomic_write_bytes
from deployforge.core.hasher import file_sha256, sha256_hex
from deployforge.models.artifacts import Artifact, Backup, BackupFile, InstallRecord

logger = logging.getLogger(__name__)

_CANDIDATE = "candidate.bin"
_CANDIDATE_META = "candidate.json"
_MANIFEST = "manifest.json"
_INSTALL_RECORD = "installed.json"


class ArtifactStore:
    """Filesystem bookkeeping for artifacts and backups.

    Parameters
    ----------
    state_dir:
        Root directory for deployforge state. Created on first write.
    """

    def __init__(self, state_dir: Path) -> None:
        self._root = Path(state_dir)

    @property
    def staging_dir(self) -> Path:
        return self._root / "staging"

    @property
    def backup_root(self) -> Path:
        return self._root / "backups"

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def stage(
        self,
        data: bytes,
        *,
        target_version: str,
        strategy: str,
        architecture: str,
    ) -> Artifact:
        """Stage candidate bytes, replacing any previous candidate."""
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        path = self.staging_dir / _CANDIDATE
        atomic_write_bytes(path, data, mode=0o755)
        artifact = Artifact(
            path=path,
            target_version=target_version,
            strategy=strategy,
            size_bytes=len(data),
            sha256=sha256_hex(data),
            architecture=architecture,
        )
        atomic_write_bytes(
            self.staging_dir / _CANDIDATE_META,
            artifact.model_dump_json(indent=2).encode("utf-8"),
        )
        logger.info(
            "staged %s artifact for %s (%d bytes, sha256=%s)",
            strategy, target_version, artifact.size_bytes, artifact.sha256[:12],
        )
        return artifact

    def staged(self, target_version: str | None = None) -> Artifact | None:
        """Return the staged artifact if present, intact and (optionally)
        built for ``target_version``."""
        meta = self.staging_dir / _CANDIDATE_META
        path = self.staging_dir / _CANDIDATE
        if not meta.exists() or not path.exists():
            return None
        try:
            artifact = Artifact.model_validate_json(meta.read_text())
        except ValueError:
            logger.warning("ignoring unreadable staging metadata %s", meta)
            return None
        if target_version is not None and artifact.target_version != target_version:
            return None
        if file_sha256(path) != artifact.sha256:
            logger.warning("staged artifact %s failed its integrity check", path)
            return None
        return artifact

    def read_artifact(self, artifact: Artifact) -> bytes:
        return Path(artifact.path).read_bytes()

    def discard_staged(self) -> None:
        for name in (_CANDIDATE, _CANDIDATE_META):
            (self.staging_dir / name).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def create_backup(
        self,
        attempt_id: str,
        *,
        binary_path: Path,
        descriptor_bytes: bytes | None,
        descriptor_path: Path,
        installed_version: str = "",
        service_was_active: bool = False,
    ) -> Backup:
        """Snapshot the installed binary and descriptor.

        Nothing installed yields an empty backup (the "previously absent"
        marker). Raises ``InstallError(BACKUP_FAILED)`` on any I/O error.
        """
        created_at = datetime.now(timezone.utc)
        backup_id = f"{created_at:%Y%m%dT%H%M%S%f}Z-{attempt_id}"
        directory = self.backup_root / backup_id
        try:
            directory.mkdir(parents=True, exist_ok=False)
            binary = None
            if binary_path.exists():
                stored = directory / "binary"
                shutil.copy2(binary_path, stored)
                binary = BackupFile(
                    original_path=binary_path,
                    stored_name=stored.name,
                    sha256=file_sha256(stored),
                    size_bytes=stored.stat().st_size,
                    mode=binary_path.stat().st_mode & 0o7777,
                )
            descriptor = None
            if descriptor_bytes is not None:
                stored = directory / "descriptor"
                atomic_write_bytes(stored, descriptor_bytes)
                descriptor = BackupFile(
                    original_path=descriptor_path,
                    stored_name=stored.name,
                    sha256=sha256_hex(descriptor_bytes),
                    size_bytes=len(descriptor_bytes),
                    mode=0o644,
                )
            backup = Backup(
                backup_id=backup_id,
                attempt_id=attempt_id,
                directory=directory,
                created_at=created_at,
                installed_version=installed_version,
                binary=binary,
                descriptor=descriptor,
                service_was_active=service_was_active,
            )
            atomic_write_bytes(
                directory / _MANIFEST, backup.model_dump_json(indent=2).encode("utf-8")
            )
        except OSError as exc:
            raise InstallError(
                ErrorKind.BACKUP_FAILED,
                f"could not create backup in {directory}: {exc}",
                stage="backing_up",
                context={"backup_dir": str(directory)},
            ) from exc

        logger.info(
            "backup %s created (binary=%s, descriptor=%s)",
            backup_id,
            "yes" if binary else "absent",
            "yes" if descriptor else "absent",
        )
        return backup

    def list_backups(self) -> list[Backup]:
        """All committed backups, oldest first."""
        if not self.backup_root.exists():
            return []
        backups: list[Backup] = []
        for directory in self.backup_root.iterdir():
            manifest = directory / _MANIFEST
            if not manifest.is_file():
                continue
            try:
                backups.append(Backup.model_validate_json(manifest.read_text()))
            except ValueError:
                logger.warning("skipping unreadable backup manifest %s", manifest)
        return sorted(backups, key=lambda b: (b.created_at, b.backup_id))

    def latest_backup(self) -> Backup | None:
        backups = self.list_backups()
        return backups[-1] if backups else None

    def get_backup(self, backup_id: str) -> Backup | None:
        manifest = self.backup_root / backup_id / _MANIFEST
        if not manifest.is_file():
            return None
        return Backup.model_validate_json(manifest.read_text())

    def backup_file(self, backup: Backup, entry: BackupFile) -> Path:
        return Path(backup.directory) / entry.stored_name

    def verify_backup(self, backup: Backup) -> list[str]:
        """Return a list of integrity problems; empty means intact."""
        problems: list[str] = []
        for entry in (backup.binary, backup.descriptor):
            if entry is None:
                continue
            path = self.backup_file(backup, entry)
            if not path.is_file():
                problems.append(f"{entry.stored_name} missing")
            elif file_sha256(path) != entry.sha256:
                problems.append(f"{entry.stored_name} digest mismatch")
        return problems

    def prune_backups(self, keep: int) -> list[str]:
        """Delete all but the newest ``keep`` backups; return removed ids."""
        backups = self.list_backups()
        doomed = backups[:-keep] if keep > 0 else backups
        removed: list[str] = []
        for backup in doomed:
            shutil.rmtree(backup.directory, ignore_errors=False)
            removed.append(backup.backup_id)
        if removed:
            logger.info("pruned %d old backup(s), keeping %d", len(removed), keep)
        return removed

    # ------------------------------------------------------------------
    # Install record
    # ------------------------------------------------------------------

    def write_install_record(self, record: InstallRecord) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        atomic_write_bytes(
            self._root / _INSTALL_RECORD, record.model_dump_json(indent=2).encode("utf-8")
        )

    def read_install_record(self) -> InstallRecord | None:
        path = self._root / _INSTALL_RECORD
        if not path.is_file():
            return None
        try:
            return InstallRecord.model_validate_json(path.read_text())
        except ValueError:
            logger.warning("ignoring unreadable install record %s", path)
            return None

    def clear_install_record(self) -> None:
        (self._root / _INSTALL_RECORD).unlink(missing_ok=True)
