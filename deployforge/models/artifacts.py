"""Staged artifact and backup models (immutable once created)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """A candidate binary staged for installation.

    The bytes live at ``path`` inside the ArtifactStore staging area; this
    model is the acquisition metadata. ``sha256`` is both identity and
    integrity check.
    """

    model_config = ConfigDict(frozen=True)

    path: Path
    target_version: str
    strategy: str  # "staged", "local-build", "remote-build", "download"
    size_bytes: int
    sha256: str
    architecture: str  # normalized host arch tag, e.g. "x86_64"
    acquired_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class BackupFile(BaseModel):
    """One file captured in a backup (binary or service descriptor)."""

    model_config = ConfigDict(frozen=True)

    original_path: Path
    stored_name: str  # file name inside the backup directory
    sha256: str
    size_bytes: int
    mode: int = 0o755


class Backup(BaseModel):
    """Snapshot of the installed binary and service descriptor.

    ``binary`` / ``descriptor`` being ``None`` is the "previously absent"
    marker: rollback removes the file instead of restoring it.
    """

    model_config = ConfigDict(frozen=True)

    backup_id: str
    attempt_id: str
    directory: Path
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    installed_version: str = ""
    binary: BackupFile | None = None
    descriptor: BackupFile | None = None
    service_was_active: bool = False

    @property
    def is_empty(self) -> bool:
        """True when nothing was installed before the attempt."""
        return self.binary is None and self.descriptor is None


class InstallRecord(BaseModel):
    """What InstallManager last put in place; read back by version resolution."""

    model_config = ConfigDict(frozen=True)

    version: str
    sha256: str
    attempt_id: str
    strategy: str = ""
    installed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
