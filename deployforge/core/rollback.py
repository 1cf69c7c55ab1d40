"""Restore the binary and service unit captured in a Backup.

Rollback is attempted exactly once. A failure here is reported as
``RollbackError`` and left for an operator; retrying could oscillate
between two broken states.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.errors import ErrorKind, RollbackError, StartError
from deployforge.core.fsutil import atomic_write_bytes
from deployforge.core.supervisor import ServiceSupervisor
from deployforge.models.artifacts import Backup, InstallRecord

logger = logging.getLogger(__name__)


class RollbackManager:
    """Puts a Backup back in place and restarts the service if it was running.

    Parameters
    ----------
    store:
        Artifact store the backup lives in.
    supervisor:
        Host service supervisor.
    install_path:
        Where the binary lives.
    service_name:
        Name of the managed unit.
    restart_timeout:
        Seconds to wait for the restored service to become active.
    """

    def __init__(
        self,
        store: ArtifactStore,
        supervisor: ServiceSupervisor,
        install_path: Path,
        service_name: str,
        *,
        restart_timeout: float = 30.0,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._supervisor = supervisor
        self._install_path = Path(install_path)
        self._name = service_name
        self._restart_timeout = restart_timeout
        self._poll_interval = poll_interval
        self._sleep = sleep

    def rollback(self, backup: Backup | None) -> None:
        """Restore ``backup``. Raises ``RollbackError`` on any failure."""
        if backup is None or not Path(backup.directory).is_dir():
            raise RollbackError(
                ErrorKind.BACKUP_MISSING,
                "no backup available to restore",
                stage="rolling_back",
                context={"backup_id": backup.backup_id if backup else ""},
            )
        problems = self._store.verify_backup(backup)
        if problems:
            raise RollbackError(
                ErrorKind.BACKUP_CORRUPT,
                f"backup {backup.backup_id} failed its integrity check: " + "; ".join(problems),
                stage="rolling_back",
                context={"backup_id": backup.backup_id, "problems": problems},
            )

        logger.warning("rolling back to backup %s", backup.backup_id)
        self._supervisor.stop(self._name)
        try:
            self._restore_binary(backup)
            self._restore_descriptor(backup)
            self._supervisor.reload()
        except (OSError, StartError) as exc:
            raise RollbackError(
                ErrorKind.WRITE_FAILED,
                f"could not restore backup {backup.backup_id}: {exc}",
                stage="rolling_back",
                context={"backup_id": backup.backup_id},
            ) from exc

        if backup.service_was_active:
            self._restart()
        logger.info("rollback to %s complete", backup.backup_id)

    def _restore_binary(self, backup: Backup) -> None:
        entry = backup.binary
        if entry is None:
            self._install_path.unlink(missing_ok=True)
            self._store.clear_install_record()
            return
        data = self._store.backup_file(backup, entry).read_bytes()
        atomic_write_bytes(self._install_path, data, mode=entry.mode)
        self._store.write_install_record(
            InstallRecord(
                version=backup.installed_version or "unknown",
                sha256=entry.sha256,
                attempt_id=backup.attempt_id,
                strategy="rollback",
            )
        )

    def _restore_descriptor(self, backup: Backup) -> None:
        entry = backup.descriptor
        current = self._supervisor.read_unit(self._name)
        if entry is None:
            if current is not None:
                self._supervisor.unregister_unit(self._name)
            return
        data = self._store.backup_file(backup, entry).read_bytes()
        if current != data:
            self._supervisor.register_unit(self._name, data)

    def _restart(self) -> None:
        try:
            self._supervisor.restart(self._name)
        except StartError as exc:
            raise RollbackError(
                ErrorKind.RESTART_FAILED,
                f"restored service would not restart: {exc}",
                stage="rolling_back",
            ) from exc
        deadline = time.monotonic() + self._restart_timeout
        while True:
            state = self._supervisor.state(self._name)
            if state == "active":
                return
            if state == "failed" or time.monotonic() >= deadline:
                raise RollbackError(
                    ErrorKind.RESTART_FAILED,
                    f"restored service is {state}, expected active",
                    stage="rolling_back",
                    context={"service_state": state},
                )
            self._sleep(self._poll_interval)
