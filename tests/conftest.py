"""Shared test fixtures for deployforge.

Nothing here touches the real host: commands go through ``FakeRunner``,
the service supervisor is ``FakeSupervisor`` (unit files in a temp
directory, state and journal in memory), and every configured path lives
under ``tmp_path``.

Fake binaries are ELF headers followed by a marker payload that both fakes
act on:

- ``version=X.Y.Z``  printed by the capability probe
- ``CRASH``          probe dies with SIGSEGV; service crash-loops
- ``NOLIB``          probe fails on a missing shared library
- ``SLOW``           probe never exits (timeout)
- ``HANG``           probe is fine; service never leaves ``activating``
- ``SANDBOX``        probe is fine; service fails with 226/NAMESPACE
- ``LATE``           probe is fine; service reports active once, then fails
                     with 226/NAMESPACE (a sandbox failure landing after fork)
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from deployforge.config import DeployConfig
from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.cancellation import CancellationToken
from deployforge.core.errors import ErrorKind, StartError
from deployforge.core.health_probe import ELF_MACHINES, HealthProbe
from deployforge.core.orchestrator import Orchestrator
from deployforge.core.run_ledger import RunLedger
from deployforge.core.runner import CommandResult, CommandTimeoutError

HOST_ARCH = "x86_64"

_MACHINE_CODES = {arch: code for code, arch in ELF_MACHINES.items()}
_VERSION_MARKER = re.compile(rb"version=([0-9][0-9A-Za-z.\-+]*)")


def make_elf(arch: str = HOST_ARCH, payload: bytes = b"version=1.0.0") -> bytes:
    """A 64-bit little-endian ELF header for ``arch`` followed by ``payload``."""
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + b"\x00" * 8
    header = ident + (2).to_bytes(2, "little") + _MACHINE_CODES[arch].to_bytes(2, "little")
    return header.ljust(64, b"\x00") + payload


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


Handler = Callable[[list[str]], CommandResult]


class FakeRunner:
    """Scripted ``CommandRunner``.

    Handlers registered with ``on()`` match by argv prefix; the most recent
    registration wins. Existing ELF files passed as argv[0] are emulated
    from their payload markers. Anything else succeeds with no output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[Mapping[str, str] | None] = []
        self._handlers: list[tuple[list[str], Handler]] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        raises: BaseException | None = None,
        handler: Handler | None = None,
    ) -> None:
        def _default(argv: list[str]) -> CommandResult:
            if raises is not None:
                raise raises
            return CommandResult(args=argv, returncode=returncode, stdout=stdout, stderr=stderr)

        self._handlers.append((list(prefix), handler or _default))

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        self.envs.append(env)
        for prefix, handler in reversed(self._handlers):
            if argv[: len(prefix)] == prefix:
                return handler(argv)
        binary = Path(argv[0])
        if binary.is_file() and binary.read_bytes().startswith(b"\x7fELF"):
            return self._emulate(binary, argv, timeout)
        return CommandResult(args=argv, returncode=0)

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if c and c[0] == name]

    @staticmethod
    def _emulate(binary: Path, argv: list[str], timeout: float | None) -> CommandResult:
        data = binary.read_bytes()
        if b"SLOW" in data:
            raise CommandTimeoutError(argv, timeout or 0)
        if b"CRASH" in data:
            return CommandResult(args=argv, returncode=-11)
        if b"NOLIB" in data:
            return CommandResult(
                args=argv,
                returncode=127,
                stderr=(
                    f"{binary}: error while loading shared libraries: libssl.so.3: "
                    "cannot open shared object file: No such file or directory"
                ),
            )
        match = _VERSION_MARKER.search(data)
        version = match.group(1).decode() if match else "0.0.0"
        return CommandResult(args=argv, returncode=0, stdout=f"hora-police {version}\n")


# ---------------------------------------------------------------------------
# Service supervisor
# ---------------------------------------------------------------------------


class FakeSupervisor:
    """In-memory ``ServiceSupervisor`` whose units are real files.

    ``restart`` decides the resulting state from the installed binary's
    payload markers, so a rollback to a good binary really comes back up.
    """

    def __init__(self, unit_dir: Path, install_path: Path, state: str = "inactive") -> None:
        self._unit_dir = Path(unit_dir)
        self._install_path = Path(install_path)
        self._state = state
        self.actions: list[tuple[str, str]] = []
        self.journal: list[tuple[datetime, str]] = []
        self.fail_restart = False
        self._polls_until_failure: int | None = None

    # Unit files

    def unit_path(self, name: str) -> Path:
        return self._unit_dir / f"{name}.service"

    def read_unit(self, name: str) -> bytes | None:
        path = self.unit_path(name)
        return path.read_bytes() if path.is_file() else None

    def register_unit(self, name: str, content: bytes) -> None:
        self._unit_dir.mkdir(parents=True, exist_ok=True)
        self.unit_path(name).write_bytes(content)
        self.actions.append(("register", name))

    def unregister_unit(self, name: str) -> None:
        self.unit_path(name).unlink(missing_ok=True)
        self.actions.append(("unregister", name))

    def reload(self) -> None:
        self.actions.append(("reload", ""))

    # Lifecycle

    def start(self, name: str) -> None:
        self.restart(name)

    def stop(self, name: str) -> None:
        self.actions.append(("stop", name))
        self._state = "inactive"

    def restart(self, name: str) -> None:
        self.actions.append(("restart", name))
        self._polls_until_failure = None
        if self.fail_restart:
            raise StartError(ErrorKind.START_FAILED, f"Job for {name}.service failed")
        data = self._install_path.read_bytes() if self._install_path.is_file() else b""
        if not data:
            self._state = "failed"
            self.log(f"{name}.service: Failed at step EXEC spawning: status=203/EXEC")
        elif b"CRASH" in data:
            self._state = "failed"
            self.log(f"{name}.service: Main process exited, code=killed, status=11/SEGV")
            self.log(f"{name}.service: Start request repeated too quickly.")
        elif b"SANDBOX" in data:
            self._state = "failed"
            self.log(f"{name}.service: Failed to set up mount namespacing: No such file or directory")
            self.log(f"{name}.service: Failed at step NAMESPACE spawning: status=226/NAMESPACE")
        elif b"LATE" in data:
            self._state = "active"
            self._polls_until_failure = 1
        elif b"HANG" in data:
            self._state = "activating"
        else:
            self._state = "active"
            self.log(f"Started {name}.service.")

    def is_active(self, name: str) -> bool:
        return self._state == "active"

    def state(self, name: str) -> str:
        if self._polls_until_failure is not None:
            if self._polls_until_failure == 0:
                self._polls_until_failure = None
                self._state = "failed"
                self.log(f"{name}.service: Failed at step NAMESPACE spawning: status=226/NAMESPACE")
            else:
                self._polls_until_failure -= 1
        return self._state

    def recent_logs(self, name: str, lines: int, since: datetime | None = None) -> list[str]:
        selected = [text for at, text in self.journal if since is None or at >= since]
        return selected[-lines:]

    # Test helpers

    def log(self, text: str) -> None:
        self.journal.append((datetime.now(timezone.utc), text))

    def set_state(self, state: str) -> None:
        self._state = state

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [a for a in self.actions if a[0] != "reload"]


# ---------------------------------------------------------------------------
# Artifact server
# ---------------------------------------------------------------------------


class ArtifactServer:
    """httpx ``MockTransport`` serving binaries by version from the URL."""

    def __init__(self) -> None:
        self.binaries: dict[str, bytes] = {}
        self.requests: list[str] = []
        self.status_code = 200

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.status_code != 200:
            return httpx.Response(self.status_code)
        version = request.url.path.rsplit("/", 1)[-1].split("-")[2]
        body = self.binaries.get(version)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def config(tmp_dir: Path) -> DeployConfig:
    """A configuration whose every path lives under the temp directory."""
    return DeployConfig(
        service_name="hora-police",
        install_path=tmp_dir / "usr/local/bin/hora-police",
        config_dir=tmp_dir / "etc/hora-police",
        data_dir=tmp_dir / "var/lib/hora-police",
        log_dir=tmp_dir / "var/log/hora-police",
        unit_dir=tmp_dir / "systemd",
        state_dir=tmp_dir / "state",
        source_dir=tmp_dir / "src/hora-police",
        swap_size_gb=0,
        swap_file=tmp_dir / "swapfile",
        prebuilt_url="https://artifacts.example/releases/hora-police-{version}-{arch}",
        build_host=None,
        verify_timeout=0.3,
        verify_settle=0.05,
        poll_interval=0.01,
        probe_timeout=5.0,
        provision_owner=None,
        provision_group=None,
        log_level="WARNING",
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def supervisor(config: DeployConfig) -> FakeSupervisor:
    return FakeSupervisor(config.unit_dir, config.install_path)


@pytest.fixture
def probe(runner: FakeRunner) -> HealthProbe:
    return HealthProbe(runner, timeout=5.0, host_arch=HOST_ARCH)


@pytest.fixture
def store(config: DeployConfig) -> ArtifactStore:
    return ArtifactStore(config.state_dir)


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def server() -> ArtifactServer:
    return ArtifactServer()


@pytest.fixture
def make_orchestrator(
    runner: FakeRunner,
    supervisor: FakeSupervisor,
    probe: HealthProbe,
    server: ArtifactServer,
) -> Callable[..., Orchestrator]:
    """Factory for orchestrators wired to the fakes; accepts any config."""

    def _make(cfg: DeployConfig, **overrides: Any) -> Orchestrator:
        kwargs: dict[str, Any] = {
            "runner": runner,
            "supervisor": supervisor,
            "probe": probe,
            "host_arch": HOST_ARCH,
            "transport": server.transport,
            "sleep": lambda _s: None,
        }
        kwargs.update(overrides)
        return Orchestrator(cfg, **kwargs)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, config: DeployConfig) -> Orchestrator:
    return make_orchestrator(config)


def snapshot(*roots: Path, exclude: tuple[str, ...] = ("ledger.db", "deploy.lock")) -> dict[str, Any]:
    """Bytes and modes of every file and directory below ``roots``.

    SQLite's ledger files and the lock file are bookkeeping, not host state.
    """
    result: dict[str, Any] = {}
    for root in roots:
        if not root.exists():
            result[str(root)] = None
            continue
        for path in sorted([root, *root.rglob("*")]):
            if any(path.name.startswith(name) for name in exclude):
                continue
            mode = path.stat().st_mode & 0o7777
            if path.is_dir():
                result[str(path)] = ("dir", mode)
            else:
                result[str(path)] = (path.read_bytes(), mode)
    return result
