"""Build strategies: the ways of producing candidate binary bytes.

Each strategy reports whether it applies (is it configured, is there
anything to reuse) and, when asked, produces raw bytes or raises
``StrategyFailure`` with a kind from its own failure taxonomy. None of
them stage or validate; BuildPipeline does both uniformly.
"""

from __future__ import annotations

import abc
import logging
import os
import shlex
import tempfile
from contextlib import nullcontext
from pathlib import Path
from typing import ClassVar

import httpx

from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.cancellation import CancellationToken
from deployforge.core.errors import ErrorKind, StrategyFailure
from deployforge.core.hasher import sha256_hex
from deployforge.core.runner import CommandResult, CommandRunner, CommandTimeoutError
from deployforge.core.swap import SwapGuard
from deployforge.core.version_resolver import SourceCheckout

logger = logging.getLogger(__name__)

# Exit statuses and output fragments that mean the kernel OOM killer fired
_OOM_CODES = {-9, 137}
_OOM_MARKERS = ("Killed", "signal: 9", "SIGKILL", "out of memory", "Cannot allocate memory")
_SSH_CONNECTION_ERROR = 255
_OUTPUT_TAIL = 2000


def _looks_oom(result: CommandResult) -> bool:
    if result.returncode in _OOM_CODES:
        return True
    return any(marker in result.output for marker in _OOM_MARKERS)


class BuildStrategy(abc.ABC):
    """One method of obtaining a usable artifact."""

    name: ClassVar[str]

    @abc.abstractmethod
    def applicable(self, target_version: str) -> tuple[bool, str]:
        """Return ``(applies, reason)``. Must not mutate anything."""
        ...

    @abc.abstractmethod
    def produce(
        self,
        target_version: str,
        *,
        source_ref: str = "HEAD",
        cancel: CancellationToken | None = None,
    ) -> bytes:
        """Produce candidate bytes or raise ``StrategyFailure``."""
        ...

    def _fail(self, kind: ErrorKind, message: str, **context: object) -> StrategyFailure:
        return StrategyFailure(kind, message, strategy=self.name, context=context)


# ---------------------------------------------------------------------------
# Already staged
# ---------------------------------------------------------------------------


class StagedArtifactStrategy(BuildStrategy):
    """Reuse a candidate staged by an earlier attempt for the same version."""

    name = "staged"

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    def applicable(self, target_version: str) -> tuple[bool, str]:
        if self._store.staged(target_version) is None:
            return False, f"no intact staged artifact for {target_version}"
        return True, "staged artifact matches target"

    def produce(self, target_version, *, source_ref="HEAD", cancel=None) -> bytes:
        artifact = self._store.staged(target_version)
        if artifact is None:
            raise self._fail(ErrorKind.INVALID_ARTIFACT, "staged artifact disappeared")
        try:
            return self._store.read_artifact(artifact)
        except OSError as exc:
            raise self._fail(ErrorKind.INVALID_ARTIFACT, f"staged artifact unreadable: {exc}") from exc


# ---------------------------------------------------------------------------
# Local build
# ---------------------------------------------------------------------------


class LocalBuildStrategy(BuildStrategy):
    """Build in the local checkout, degrading to low-memory commands.

    Parameters
    ----------
    runner:
        Command runner for the toolchain and git.
    source:
        The daemon's checkout.
    commands:
        Build commands tried in order; the first is the normal build, the
        rest are low-memory fallbacks.
    output:
        Path of the built binary, relative to the checkout.
    swap_guard:
        Temporary swap wrapped around the whole build.
    """

    name = "local-build"

    def __init__(
        self,
        runner: CommandRunner,
        source: SourceCheckout,
        *,
        tool: str,
        commands: list[list[str]],
        output: Path,
        env: dict[str, str] | None = None,
        timeout: float = 3600.0,
        swap_guard: SwapGuard | None = None,
    ) -> None:
        self._runner = runner
        self._source = source
        self._tool = tool
        self._commands = [list(c) for c in commands if c]
        self._output = Path(output)
        self._env = dict(env or {})
        self._timeout = timeout
        self._swap_guard = swap_guard

    def applicable(self, target_version: str) -> tuple[bool, str]:
        if not self._source.path.is_dir():
            return False, f"no source checkout at {self._source.path}"
        if not self._commands:
            return False, "no build command configured"
        return True, f"build in {self._source.path}"

    def produce(self, target_version, *, source_ref="HEAD", cancel=None) -> bytes:
        self._require_toolchain(cancel)
        if source_ref != "HEAD" and not self._source.checkout(source_ref):
            raise self._fail(
                ErrorKind.BUILD_FAILED, f"git checkout {source_ref} failed", source_ref=source_ref
            )

        env = {**os.environ, **self._env}
        failures: list[tuple[ErrorKind, str]] = []
        with self._swap_guard or nullcontext():
            for argv in self._commands:
                kind, detail = self._run_build(argv, env, cancel)
                if kind is None:
                    return self._read_output()
                failures.append((kind, detail))
                logger.warning("%s: %s (%s)", " ".join(argv), kind.value, detail[-200:])
                if kind == ErrorKind.TIMEOUT:
                    break

        kinds = [k for k, _ in failures]
        kind = ErrorKind.OUT_OF_MEMORY if ErrorKind.OUT_OF_MEMORY in kinds else kinds[-1]
        raise self._fail(
            kind,
            f"local build failed after {len(failures)} command(s)",
            output=failures[-1][1][-_OUTPUT_TAIL:],
        )

    def _require_toolchain(self, cancel: CancellationToken | None) -> None:
        try:
            result = self._runner.run([self._tool, "--version"], timeout=60, cancel=cancel)
        except (OSError, CommandTimeoutError) as exc:
            raise self._fail(
                ErrorKind.TOOLCHAIN_MISSING, f"{self._tool} is not available: {exc}"
            ) from exc
        if not result.ok:
            raise self._fail(
                ErrorKind.TOOLCHAIN_MISSING, f"{self._tool} --version exited {result.returncode}"
            )

    def _run_build(
        self, argv: list[str], env: dict[str, str], cancel: CancellationToken | None
    ) -> tuple[ErrorKind | None, str]:
        try:
            result = self._runner.run(
                argv, timeout=self._timeout, cwd=self._source.path, env=env, cancel=cancel
            )
        except CommandTimeoutError:
            return ErrorKind.TIMEOUT, f"no result within {self._timeout:.0f}s"
        except FileNotFoundError as exc:
            return ErrorKind.TOOLCHAIN_MISSING, str(exc)
        except OSError as exc:
            return ErrorKind.BUILD_FAILED, f"{argv[0]} could not be run: {exc}"
        if result.ok:
            return None, ""
        if _looks_oom(result):
            return ErrorKind.OUT_OF_MEMORY, result.output
        return ErrorKind.BUILD_FAILED, result.output

    def _read_output(self) -> bytes:
        path = self._source.path / self._output
        try:
            return path.read_bytes()
        except OSError as exc:
            raise self._fail(
                ErrorKind.BUILD_FAILED, f"build succeeded but {path} is unreadable: {exc}"
            ) from exc


# ---------------------------------------------------------------------------
# Remote build-and-fetch
# ---------------------------------------------------------------------------


class RemoteBuildStrategy(BuildStrategy):
    """Push the source to a helper host, build there, pull the binary back."""

    name = "remote-build"

    def __init__(
        self,
        runner: CommandRunner,
        source: SourceCheckout,
        *,
        host: str | None,
        remote_dir: str,
        command: str,
        output: Path,
        timeout: float = 3600.0,
    ) -> None:
        self._runner = runner
        self._source = source
        self._host = host
        self._remote_dir = remote_dir.rstrip("/")
        self._command = command
        self._output = Path(output)
        self._timeout = timeout

    def applicable(self, target_version: str) -> tuple[bool, str]:
        if not self._host:
            return False, "no build host configured"
        if not self._source.path.is_dir():
            return False, f"no source checkout at {self._source.path}"
        return True, f"build on {self._host}"

    def produce(self, target_version, *, source_ref="HEAD", cancel=None) -> bytes:
        host = self._host or ""
        rdir = shlex.quote(self._remote_dir)
        if source_ref != "HEAD" and not self._source.checkout(source_ref):
            raise self._fail(ErrorKind.BUILD_FAILED, f"git checkout {source_ref} failed")

        with tempfile.TemporaryDirectory(prefix="deployforge-remote-") as tmp:
            tarball = Path(tmp) / "source.tar.gz"
            fetched = Path(tmp) / "artifact"
            self._step(
                "tar",
                [
                    "tar", "-czf", str(tarball),
                    "--exclude=./target", "--exclude=./.git",
                    "-C", str(self._source.path), ".",
                ],
                cancel,
            )
            self._step("ssh", ["ssh", host, f"mkdir -p {rdir}"], cancel)
            self._step(
                "scp", ["scp", "-q", str(tarball), f"{host}:{self._remote_dir}/source.tar.gz"], cancel
            )
            self._step(
                "remote build",
                [
                    "ssh", host,
                    f"cd {rdir} && tar -xzf source.tar.gz && {self._command}",
                ],
                cancel,
            )
            self._step(
                "scp",
                ["scp", "-q", f"{host}:{self._remote_dir}/{self._output.as_posix()}", str(fetched)],
                cancel,
            )
            try:
                return fetched.read_bytes()
            except OSError as exc:
                raise self._fail(
                    ErrorKind.BUILD_FAILED, f"scp reported success but left no artifact: {exc}"
                ) from exc

    def _step(self, label: str, argv: list[str], cancel: CancellationToken | None) -> None:
        try:
            result = self._runner.run(argv, timeout=self._timeout, cancel=cancel)
        except CommandTimeoutError as exc:
            raise self._fail(
                ErrorKind.TIMEOUT, f"{label} did not finish within {self._timeout:.0f}s"
            ) from exc
        except FileNotFoundError as exc:
            raise self._fail(ErrorKind.TOOLCHAIN_MISSING, f"{argv[0]} not installed") from exc
        except OSError as exc:
            raise self._fail(ErrorKind.BUILD_FAILED, f"{label} could not be run: {exc}") from exc
        if result.ok:
            return
        tail = result.output[-_OUTPUT_TAIL:]
        if argv[0] in ("ssh", "scp") and result.returncode == _SSH_CONNECTION_ERROR:
            raise self._fail(ErrorKind.NETWORK, f"{label} to {self._host} failed", output=tail)
        if label == "remote build" and _looks_oom(result):
            raise self._fail(ErrorKind.OUT_OF_MEMORY, f"remote build on {self._host} was killed", output=tail)
        raise self._fail(
            ErrorKind.BUILD_FAILED, f"{label} exited {result.returncode}", output=tail
        )


# ---------------------------------------------------------------------------
# Pre-built download
# ---------------------------------------------------------------------------


class DownloadStrategy(BuildStrategy):
    """Fetch a pre-built binary over HTTP(S).

    ``url`` may contain ``{version}`` and ``{arch}`` placeholders.
    """

    name = "download"

    def __init__(
        self,
        url: str | None,
        *,
        expected_sha256: str | None = None,
        host_arch: str = "",
        timeout: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._expected = expected_sha256.lower() if expected_sha256 else None
        self._host_arch = host_arch
        self._timeout = timeout
        self._transport = transport

    def url_for(self, target_version: str) -> str:
        return (self._url or "").replace("{version}", target_version).replace(
            "{arch}", self._host_arch
        )

    def applicable(self, target_version: str) -> tuple[bool, str]:
        if not self._url:
            return False, "no pre-built artifact URL configured"
        return True, self.url_for(target_version)

    def produce(self, target_version, *, source_ref="HEAD", cancel=None) -> bytes:
        url = self.url_for(target_version)
        chunks: list[bytes] = []
        try:
            with httpx.Client(
                timeout=self._timeout, follow_redirects=True, transport=self._transport
            ) as client:
                with client.stream("GET", url) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes():
                        if cancel is not None:
                            cancel.raise_if_cancelled("acquiring")
                        chunks.append(chunk)
        except httpx.TimeoutException as exc:
            raise self._fail(ErrorKind.TIMEOUT, f"download timed out: {exc}", url=url) from exc
        except httpx.HTTPStatusError as exc:
            raise self._fail(
                ErrorKind.NETWORK,
                f"download failed: HTTP {exc.response.status_code}",
                url=url,
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise self._fail(ErrorKind.NETWORK, f"download failed: {exc}", url=url) from exc

        data = b"".join(chunks)
        if not data:
            raise self._fail(ErrorKind.INVALID_ARTIFACT, "download returned an empty body", url=url)
        if self._expected is not None:
            actual = sha256_hex(data)
            if actual != self._expected:
                raise self._fail(
                    ErrorKind.CHECKSUM_MISMATCH,
                    f"sha256 {actual} does not match expected {self._expected}",
                    url=url,
                )
        return data
