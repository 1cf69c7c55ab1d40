"""Backup and atomic installation of the binary and its service unit."""

from __future__ import annotations

import logging
from pathlib import Path

from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.errors import ErrorKind, InstallError, StartError
from deployforge.core.fsutil import atomic_write_bytes
from deployforge.core.hasher import sha256_hex
from deployforge.core.supervisor import ServiceSupervisor
from deployforge.models.artifacts import Artifact, Backup, InstallRecord
from deployforge.models.provision import ProvisionManifest
from deployforge.models.service import ServiceDescriptor

logger = logging.getLogger(__name__)


class InstallManager:
    """Swaps a staged artifact and a service descriptor into place.

    ``install`` takes the ``Backup`` returned by ``backup`` as a required
    argument; there is no way to overwrite the installed binary without
    having snapshotted it first.

    Parameters
    ----------
    store:
        Artifact store holding the staged candidate and the backups.
    supervisor:
        Host service supervisor the descriptor is registered with.
    install_path:
        Where the binary lives (the descriptor's ExecStart).
    """

    def __init__(
        self,
        store: ArtifactStore,
        supervisor: ServiceSupervisor,
        install_path: Path,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._install_path = Path(install_path)

    def backup(
        self,
        attempt_id: str,
        descriptor: ServiceDescriptor,
        *,
        installed_version: str = "",
    ) -> Backup:
        """Snapshot what is installed now (possibly nothing)."""
        return self._store.create_backup(
            attempt_id,
            binary_path=self._install_path,
            descriptor_bytes=self._supervisor.read_unit(descriptor.name),
            descriptor_path=self._supervisor.unit_path(descriptor.name),
            installed_version=installed_version,
            service_was_active=self._supervisor.is_active(descriptor.name),
        )

    def check_descriptor(
        self, descriptor: ServiceDescriptor, manifest: ProvisionManifest | None = None
    ) -> None:
        """Raise ``InstallError(DESCRIPTOR_INVALID)`` unless the descriptor
        points at the install path and all its writable paths exist.

        With ``manifest``, every writable path must also be declared there,
        so the next provisioning run keeps creating it.
        """
        if Path(descriptor.exec_path) != self._install_path:
            raise InstallError(
                ErrorKind.DESCRIPTOR_INVALID,
                f"ExecStart {descriptor.exec_path} is not the install path {self._install_path}",
            )
        if manifest is not None:
            undeclared = [str(p) for p in manifest.missing_coverage(descriptor.writable_paths)]
            if undeclared:
                raise InstallError(
                    ErrorKind.DESCRIPTOR_INVALID,
                    "ReadWritePaths not declared in the provision manifest: "
                    + ", ".join(undeclared),
                    context={"missing_paths": undeclared, "reason": "undeclared"},
                )
        missing = [str(p) for p in descriptor.writable_paths if not Path(p).exists()]
        if missing:
            raise InstallError(
                ErrorKind.DESCRIPTOR_INVALID,
                "ReadWritePaths do not exist: " + ", ".join(missing),
                context={"missing_paths": missing, "reason": "absent"},
            )

    def install(
        self,
        artifact: Artifact,
        descriptor: ServiceDescriptor,
        backup: Backup,
    ) -> InstallRecord:
        """Replace binary then descriptor. Returns the new install record."""
        if not isinstance(backup, Backup):
            raise TypeError("install() requires the Backup taken for this attempt")
        self.check_descriptor(descriptor)

        try:
            data = self._store.read_artifact(artifact)
        except OSError as exc:
            raise InstallError(
                ErrorKind.WRITE_FAILED, f"staged artifact unreadable: {exc}", stage="installing"
            ) from exc
        if sha256_hex(data) != artifact.sha256:
            raise InstallError(
                ErrorKind.WRITE_FAILED,
                "staged artifact changed since acquisition",
                stage="installing",
                context={"expected_sha256": artifact.sha256},
            )

        try:
            self._install_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_bytes(self._install_path, data, mode=0o755)
        except OSError as exc:
            raise InstallError(
                ErrorKind.WRITE_FAILED,
                f"cannot replace {self._install_path}: {exc}",
                stage="installing",
                context={"install_path": str(self._install_path)},
            ) from exc
        logger.info(
            "installed %s (%s, sha256=%s)",
            self._install_path, artifact.target_version, artifact.sha256[:12],
        )

        content = descriptor.render_bytes()
        if self._supervisor.read_unit(descriptor.name) != content:
            try:
                self._supervisor.register_unit(descriptor.name, content)
            except (OSError, StartError) as exc:
                raise InstallError(
                    ErrorKind.WRITE_FAILED,
                    f"cannot register {descriptor.unit_name}: {exc}",
                    stage="installing",
                ) from exc
            logger.info("service descriptor %s updated", descriptor.unit_name)

        record = InstallRecord(
            version=artifact.target_version,
            sha256=artifact.sha256,
            attempt_id=backup.attempt_id,
            strategy=artifact.strategy,
        )
        self._store.write_install_record(record)
        return record
