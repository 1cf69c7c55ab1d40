"""Declarative service unit definition handed to the host supervisor."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict


class SandboxPolicy(BaseModel):
    """Sandbox restrictiveness for the managed daemon.

    The monitored binary needs broad read access to the host, so the policy
    is a configuration input rather than a constant. ``protect_system`` maps
    directly to systemd's ``ProtectSystem=`` (``"strict"`` makes the whole
    filesystem read-only except ``ReadWritePaths``).
    """

    model_config = ConfigDict(frozen=True)

    protect_system: Literal["strict", "full", "true", "false"] = "full"
    protect_home: bool = True
    private_tmp: bool = False
    no_new_privileges: bool = True
    read_only_paths: list[Path] = [Path("/proc"), Path("/sys")]


class ResourceLimits(BaseModel):
    """cgroup limits applied by the supervisor."""

    model_config = ConfigDict(frozen=True)

    cpu_quota: str = "15%"
    memory_max: str = "128M"
    tasks_max: int = 1024


class ServiceDescriptor(BaseModel):
    """A service unit: entry point, limits, sandbox and restart policy.

    Every path in ``writable_paths`` must exist before the unit is
    installed; systemd fails namespace setup (226/NAMESPACE) otherwise.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    exec_path: Path
    exec_args: list[str] = []
    user: str = "root"
    restart: Literal["no", "on-failure", "always"] = "on-failure"
    restart_sec: int = 10
    start_limit_interval_sec: int = 300
    start_limit_burst: int = 5
    limits: ResourceLimits = ResourceLimits()
    sandbox: SandboxPolicy = SandboxPolicy()
    writable_paths: list[Path] = []

    @property
    def unit_name(self) -> str:
        return f"{self.name}.service"

    def render(self) -> str:
        """Render the descriptor as a systemd unit file."""
        sandbox = self.sandbox
        exec_start = " ".join([str(self.exec_path), *self.exec_args])
        lines = [
            "[Unit]",
            f"Description={self.description or self.name}",
            "After=network.target",
            f"StartLimitIntervalSec={self.start_limit_interval_sec}",
            f"StartLimitBurst={self.start_limit_burst}",
            "",
            "[Service]",
            "Type=simple",
            f"User={self.user}",
            f"ExecStart={exec_start}",
            f"Restart={self.restart}",
            f"RestartSec={self.restart_sec}",
            "StandardOutput=journal",
            "StandardError=journal",
            f"CPUQuota={self.limits.cpu_quota}",
            f"MemoryMax={self.limits.memory_max}",
            f"TasksMax={self.limits.tasks_max}",
            f"NoNewPrivileges={_bool(sandbox.no_new_privileges)}",
            f"PrivateTmp={_bool(sandbox.private_tmp)}",
            f"ProtectSystem={sandbox.protect_system}",
            f"ProtectHome={_bool(sandbox.protect_home)}",
        ]
        if sandbox.read_only_paths:
            lines.append(
                "ReadOnlyPaths=" + " ".join(str(p) for p in sandbox.read_only_paths)
            )
        if self.writable_paths:
            lines.append(
                "ReadWritePaths=" + " ".join(str(p) for p in self.writable_paths)
            )
        lines += ["", "[Install]", "WantedBy=multi-user.target", ""]
        return "\n".join(lines)

    def render_bytes(self) -> bytes:
        return self.render().encode("utf-8")


def _bool(value: bool) -> str:
    return "true" if value else "false"
