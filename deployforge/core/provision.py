"""Idempotent creation and repair of the paths the daemon needs."""

from __future__ import annotations

import errno
import grp
import logging
import os
import pwd
import shutil
from pathlib import Path

from deployforge.core.errors import ErrorKind, ProvisionError
from deployforge.models.provision import ProvisionChange, ProvisionEntry, ProvisionManifest

logger = logging.getLogger(__name__)


class ProvisionManager:
    """Applies a ProvisionManifest to the host.

    Only declared paths are chmod/chowned. Parent directories created along
    the way get the process umask and are never touched again; existing
    undeclared ancestors are never modified. Nothing is ever deleted.
    Any failure raises ``ProvisionError``; there is no partial success.
    """

    def ensure(self, manifest: ProvisionManifest) -> list[ProvisionChange]:
        """Bring every declared path into its required state.

        Returns the changes made; a second run returns an empty list.
        """
        changes: list[ProvisionChange] = []
        for entry in _ordered(manifest):
            try:
                changes.extend(self._apply(entry, dry_run=False))
            except OSError as exc:
                raise _to_provision_error(entry.path, exc) from exc
        for change in changes:
            logger.info("provision: %s %s %s", change.action, change.path, change.detail)
        return changes

    def pending(self, manifest: ProvisionManifest) -> list[ProvisionChange]:
        """The changes ``ensure`` would make, without making them."""
        changes: list[ProvisionChange] = []
        for entry in _ordered(manifest):
            changes.extend(self._apply(entry, dry_run=True))
        return changes

    # ------------------------------------------------------------------
    # Per-entry
    # ------------------------------------------------------------------

    def _apply(self, entry: ProvisionEntry, *, dry_run: bool) -> list[ProvisionChange]:
        path = entry.path
        changes: list[ProvisionChange] = []

        if path.exists() or path.is_symlink():
            if entry.kind == "directory" and not path.is_dir():
                raise ProvisionError(
                    ErrorKind.PATH_CONFLICT,
                    f"{path} exists but is not a directory",
                    stage="provisioning",
                    context={"path": str(path)},
                )
            if entry.kind == "file" and not path.is_file():
                raise ProvisionError(
                    ErrorKind.PATH_CONFLICT,
                    f"{path} exists but is not a regular file",
                    stage="provisioning",
                    context={"path": str(path)},
                )
        else:
            changes.append(self._create(entry, dry_run=dry_run))
            if dry_run:
                return changes

        current_mode = path.stat().st_mode & 0o7777
        if current_mode != entry.mode:
            if not dry_run:
                os.chmod(path, entry.mode)
            changes.append(
                ProvisionChange(
                    path=path, action="chmod", detail=f"{current_mode:04o} -> {entry.mode:04o}"
                )
            )

        chown = self._ownership_change(entry)
        if chown is not None:
            uid, gid, detail = chown
            if not dry_run:
                os.chown(path, uid, gid)
            changes.append(ProvisionChange(path=path, action="chown", detail=detail))
        return changes

    def _create(self, entry: ProvisionEntry, *, dry_run: bool) -> ProvisionChange:
        path = entry.path
        if entry.kind == "directory":
            if not dry_run:
                path.mkdir(parents=True, exist_ok=True)
                os.chmod(path, entry.mode)
            return ProvisionChange(path=path, action="created", detail=f"directory {entry.mode:04o}")

        seed = entry.seed_from
        if seed is not None and seed.is_file():
            if not dry_run:
                path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(seed, path)
                os.chmod(path, entry.mode)
            return ProvisionChange(path=path, action="seeded", detail=f"from {seed}")

        if seed is not None:
            logger.warning("seed %s for %s not found, creating an empty file", seed, path)
        if not dry_run:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(mode=entry.mode, exist_ok=True)
            os.chmod(path, entry.mode)
        return ProvisionChange(path=path, action="created", detail=f"file {entry.mode:04o}")

    @staticmethod
    def _ownership_change(entry: ProvisionEntry) -> tuple[int, int, str] | None:
        if entry.owner is None and entry.group is None:
            return None
        st = entry.path.stat()
        try:
            uid = pwd.getpwnam(entry.owner).pw_uid if entry.owner else -1
            gid = grp.getgrnam(entry.group).gr_gid if entry.group else -1
        except KeyError as exc:
            raise ProvisionError(
                ErrorKind.PERMISSION_DENIED,
                f"unknown owner/group {entry.owner}:{entry.group} for {entry.path}",
                stage="provisioning",
                context={"path": str(entry.path)},
            ) from exc
        if (uid == -1 or st.st_uid == uid) and (gid == -1 or st.st_gid == gid):
            return None
        return uid, gid, f"{entry.owner or '-'}:{entry.group or '-'}"


def _ordered(manifest: ProvisionManifest) -> list[ProvisionEntry]:
    # Parents before children
    return sorted(manifest.entries, key=lambda e: (len(e.path.parts), str(e.path)))


def _to_provision_error(path: Path, exc: OSError) -> ProvisionError:
    if exc.errno in (errno.ENOTDIR, errno.EEXIST, errno.EISDIR):
        kind = ErrorKind.PATH_CONFLICT
    else:
        kind = ErrorKind.PERMISSION_DENIED
    return ProvisionError(
        kind,
        f"cannot provision {path}: {exc.strerror or exc}",
        stage="provisioning",
        context={"path": str(path), "errno": exc.errno},
    )
