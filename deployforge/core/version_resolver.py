"""Installed and target version resolution.

The installed version comes from the install record InstallManager writes,
as long as the binary on disk is still the one it recorded; otherwise the
binary is asked directly. The target version comes from the source
checkout (tags, then Cargo.toml, then the bare commit) unless pinned.
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from pathlib import Path

from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.errors import ErrorKind, ResolutionError
from deployforge.core.hasher import file_sha256
from deployforge.core.health_probe import HealthProbe
from deployforge.core.runner import CommandRunner, CommandTimeoutError

logger = logging.getLogger(__name__)

NOT_INSTALLED = "not-installed"
NOT_EXECUTABLE = "not-executable"

_DESCRIBE_SEMVER = re.compile(r"^v?(\d+\.\d+\.\d+\S*)$")
_GIT_TIMEOUT = 120.0


class SourceCheckout:
    """Read-mostly view of the daemon's git checkout.

    Parameters
    ----------
    runner:
        Command runner for ``git``.
    source_dir:
        Working tree of the daemon's repository.
    remote:
        Remote fetched by ``update``.
    """

    def __init__(self, runner: CommandRunner, source_dir: Path, remote: str = "origin") -> None:
        self._runner = runner
        self._dir = Path(source_dir)
        self._remote = remote

    @property
    def path(self) -> Path:
        return self._dir

    def _git(self, *args: str, timeout: float = _GIT_TIMEOUT) -> str | None:
        try:
            result = self._runner.run(["git", *args], timeout=timeout, cwd=self._dir)
        except (OSError, CommandTimeoutError) as exc:
            logger.warning("git %s failed: %s", args[0], exc)
            return None
        if not result.ok:
            logger.debug("git %s exited %d: %s", args[0], result.returncode, result.stderr.strip())
            return None
        return result.stdout.strip()

    def short_commit(self, ref: str) -> str | None:
        return self._git("rev-parse", "--short=7", f"{ref}^{{commit}}")

    def describe(self, ref: str) -> str | None:
        return self._git("describe", "--tags", "--always", ref)

    def cargo_version(self, ref: str) -> str | None:
        text = self._git("show", f"{ref}:Cargo.toml")
        if not text:
            return None
        try:
            return tomllib.loads(text).get("package", {}).get("version")
        except tomllib.TOMLDecodeError:
            return None

    def fetch(self) -> None:
        """``git fetch <remote>``; the working tree is left alone."""
        if self._git("fetch", self._remote) is None:
            raise ResolutionError(
                ErrorKind.VERSION_UNRESOLVED,
                f"git fetch {self._remote} failed in {self._dir}",
                stage="resolving",
            )

    def upstream_ref(self) -> str:
        """``<remote>/<current branch>``; the local HEAD when detached."""
        branch = self._git("rev-parse", "--abbrev-ref", "HEAD")
        if not branch or branch == "HEAD":
            return "HEAD"
        return f"{self._remote}/{branch}"

    def checkout(self, ref: str) -> bool:
        return self._git("checkout", "--detach", ref) is not None

    def target_version(self, ref: str) -> str:
        """Version the checkout at ``ref`` would build.

        Raises ``ResolutionError`` when ``ref`` does not resolve at all.
        """
        commit = self.short_commit(ref)
        if not commit:
            raise ResolutionError(
                ErrorKind.VERSION_UNRESOLVED,
                f"cannot resolve {ref!r} in {self._dir}",
                stage="resolving",
                context={"source_ref": ref, "source_dir": str(self._dir)},
            )
        described = self.describe(ref)
        if described:
            match = _DESCRIBE_SEMVER.match(described)
            if match:
                return match.group(1)
        cargo = self.cargo_version(ref)
        if cargo:
            return f"{cargo}-{commit}"
        return f"git-{commit}"


class VersionResolver:
    """Answers "what is installed" and "what should be installed"."""

    def __init__(
        self,
        store: ArtifactStore,
        probe: HealthProbe,
        install_path: Path,
        source: SourceCheckout | None = None,
    ) -> None:
        self._store = store
        self._probe = probe
        self._install_path = Path(install_path)
        self._source = source

    def installed_version(self) -> str:
        path = self._install_path
        if not path.exists():
            return NOT_INSTALLED
        if not os.access(path, os.X_OK):
            return NOT_EXECUTABLE
        record = self._store.read_install_record()
        if record is not None and file_sha256(path) == record.sha256:
            return record.version
        version = self._probe.version_of(path)
        if version:
            return version
        return f"unknown-{int(path.stat().st_mtime)}"

    def target_version(self, ref: str, override: str | None = None) -> str:
        if override:
            return override
        if self._source is None:
            raise ResolutionError(
                ErrorKind.VERSION_UNRESOLVED,
                "no target version given and no source checkout configured",
                stage="resolving",
            )
        return self._source.target_version(ref)
