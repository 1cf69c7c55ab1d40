"""Host service supervisor boundary.

The orchestrator only talks to the supervisor through this interface:
register a unit, start/stop/restart it, ask whether it is active and read
its recent log lines. ``SystemdSupervisor`` is the implementation for
systemd hosts; other supervisors plug in by implementing the protocol.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Protocol

from deployforge.core.errors import ErrorKind, StartError
from deployforge.core.fsutil import atomic_write_bytes
from deployforge.core.runner import CommandRunner, CommandTimeoutError

logger = logging.getLogger(__name__)

_SYSTEMCTL_TIMEOUT = 90.0


class ServiceSupervisor(Protocol):
    """What the orchestrator needs from the host's service supervisor."""

    def unit_path(self, name: str) -> Path: ...

    def read_unit(self, name: str) -> bytes | None: ...

    def register_unit(self, name: str, content: bytes) -> None: ...

    def unregister_unit(self, name: str) -> None: ...

    def reload(self) -> None: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str) -> None: ...

    def restart(self, name: str) -> None: ...

    def is_active(self, name: str) -> bool: ...

    def state(self, name: str) -> str: ...

    def recent_logs(
        self, name: str, lines: int, since: datetime | None = None
    ) -> list[str]: ...


class SystemdSupervisor:
    """``ServiceSupervisor`` backed by systemctl and journalctl.

    Parameters
    ----------
    runner:
        Command runner for systemctl/journalctl.
    unit_dir:
        Directory unit files are written to (``/etc/systemd/system``).
    """

    def __init__(self, runner: CommandRunner, unit_dir: Path = Path("/etc/systemd/system")) -> None:
        self._runner = runner
        self._unit_dir = Path(unit_dir)

    def unit_path(self, name: str) -> Path:
        return self._unit_dir / f"{name}.service"

    # ------------------------------------------------------------------
    # Unit files
    # ------------------------------------------------------------------

    def read_unit(self, name: str) -> bytes | None:
        path = self.unit_path(name)
        return path.read_bytes() if path.is_file() else None

    def register_unit(self, name: str, content: bytes) -> None:
        atomic_write_bytes(self.unit_path(name), content, mode=0o644)
        self.reload()
        self._systemctl("enable", f"{name}.service", check=False)

    def unregister_unit(self, name: str) -> None:
        self._systemctl("disable", f"{name}.service", check=False)
        self.unit_path(name).unlink(missing_ok=True)
        self.reload()

    def reload(self) -> None:
        self._systemctl("daemon-reload")
        self._systemctl("reset-failed", check=False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, name: str) -> None:
        self._systemctl("start", f"{name}.service")

    def stop(self, name: str) -> None:
        # Stopping an inactive or unknown unit is not an error here
        self._systemctl("stop", f"{name}.service", check=False)

    def restart(self, name: str) -> None:
        self._systemctl("restart", f"{name}.service")

    def is_active(self, name: str) -> bool:
        return self.state(name) == "active"

    def state(self, name: str) -> str:
        try:
            result = self._runner.run(
                ["systemctl", "is-active", f"{name}.service"], timeout=_SYSTEMCTL_TIMEOUT
            )
        except (OSError, CommandTimeoutError) as exc:
            logger.warning("systemctl is-active %s failed: %s", name, exc)
            return "unknown"
        return result.stdout.strip() or "unknown"

    def recent_logs(
        self, name: str, lines: int, since: datetime | None = None
    ) -> list[str]:
        argv = [
            "journalctl", "-u", f"{name}.service",
            "-n", str(lines), "--no-pager", "-o", "short-iso",
        ]
        if since is not None:
            argv += ["--since", f"@{int(since.timestamp())}"]
        try:
            result = self._runner.run(argv, timeout=_SYSTEMCTL_TIMEOUT)
        except (OSError, CommandTimeoutError) as exc:
            logger.warning("journalctl for %s failed: %s", name, exc)
            return []
        return result.stdout.splitlines()

    def _systemctl(self, *args: str, check: bool = True) -> None:
        argv = ["systemctl", *args]
        try:
            result = self._runner.run(argv, timeout=_SYSTEMCTL_TIMEOUT)
        except (OSError, CommandTimeoutError) as exc:
            if not check:
                logger.warning("%s failed: %s", " ".join(argv), exc)
                return
            raise StartError(
                ErrorKind.START_FAILED, f"{' '.join(argv)} failed: {exc}"
            ) from exc
        if check and not result.ok:
            raise StartError(
                ErrorKind.START_FAILED,
                f"{' '.join(argv)} exited {result.returncode}: {result.stderr.strip()}",
                context={"command": argv},
            )
