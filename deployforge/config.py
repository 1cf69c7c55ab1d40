"""Deployment configuration: env-driven with safe defaults.

Centralized config using pydantic-settings. Reads from a .env file and
DEPLOYFORGE_* environment variables; every field can also be overridden per
invocation by the CLI.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployforge.models.provision import ProvisionEntry, ProvisionManifest
from deployforge.models.service import ResourceLimits, SandboxPolicy, ServiceDescriptor


class DeployConfig(BaseSettings):
    """Deployment configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export DEPLOYFORGE_BUILD_HOST=builder@10.0.0.5
        export DEPLOYFORGE_PREBUILT_URL=https://example.org/hora-police-{version}-{arch}
        export DEPLOYFORGE_SANDBOX__PROTECT_SYSTEM=strict

    Or via .env file::

        DEPLOYFORGE_BACKUP_RETENTION=3
        DEPLOYFORGE_VERIFY_TIMEOUT=60
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DEPLOYFORGE_",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Managed daemon
    service_name: str = "hora-police"
    description: str = "Hora-Police Anti-Malware Daemon"
    install_path: Path | None = None  # default /usr/local/bin/<service>
    config_dir: Path | None = None  # default /etc/<service>
    data_dir: Path | None = None  # default /var/lib/<service>
    log_dir: Path | None = None  # default /var/log/<service>
    unit_dir: Path = Path("/etc/systemd/system")
    exec_args: list[str] | None = None  # default [<config_dir>/config.toml]
    config_seed: Path | None = None  # copied to config.toml when absent
    manifest_path: Path | None = None  # TOML manifest replaces the default one

    # Deployforge bookkeeping (staging, backups, ledger, lock)
    state_dir: Path = Path("/var/lib/deployforge")

    # Source and version resolution
    source_dir: Path | None = None  # default /srv/<service>
    source_ref: str = "HEAD"
    source_remote: str = "origin"
    target_version: str | None = None

    # Local build
    build_tool: str = "cargo"
    build_command: list[str] = ["cargo", "build", "--release", "-j1", "--locked"]
    build_fallback_commands: list[list[str]] = [
        ["cargo", "build", "--release", "-j1"],
    ]
    build_env: dict[str, str] = {
        "CARGO_BUILD_JOBS": "1",
        "RUSTFLAGS": "-C codegen-units=1 -C opt-level=1",
    }
    build_output: Path = Path("target/release/hora-police")
    build_timeout: float = 3600.0

    # Low-memory guard around the local build
    swap_size_gb: int = 4
    min_build_memory_gb: int = 4
    swap_file: Path = Path("/swapfile-deployforge")

    # Remote build-and-fetch
    build_host: str | None = None  # user@host
    remote_build_dir: str = "/tmp/deployforge-build"
    remote_build_command: str = "cargo build --release -j1"
    remote_timeout: float = 3600.0

    # Pre-built download
    prebuilt_url: str | None = None  # may contain {version} and {arch}
    prebuilt_sha256: str | None = None
    download_timeout: float = 300.0

    # Verification
    verify_timeout: float = 30.0
    verify_settle: float = 3.0  # seconds the unit must stay active before logs are read
    probe_timeout: float = 10.0
    probe_args: list[str] = ["--version"]
    log_lines: int = 50
    poll_interval: float = 1.0

    # Backups
    backup_retention: int = Field(default=5, ge=2)

    # Ownership applied to the default provision manifest (None leaves it alone)
    provision_owner: str | None = "root"
    provision_group: str | None = "root"

    # Service descriptor policy
    sandbox: SandboxPolicy = SandboxPolicy()
    limits: ResourceLimits = ResourceLimits()
    restart_sec: int = 10

    # Logging
    log_level: str = "INFO"
    log_file: Path | None = None

    @model_validator(mode="after")
    def _derive_paths(self) -> DeployConfig:
        name = self.service_name
        if self.install_path is None:
            self.install_path = Path("/usr/local/bin") / name
        if self.config_dir is None:
            self.config_dir = Path("/etc") / name
        if self.data_dir is None:
            self.data_dir = Path("/var/lib") / name
        if self.log_dir is None:
            self.log_dir = Path("/var/log") / name
        if self.source_dir is None:
            self.source_dir = Path("/srv") / name
        if self.exec_args is None:
            self.exec_args = [str(self.config_dir / "config.toml")]
        return self

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def staging_dir(self) -> Path:
        return self.state_dir / "staging"

    @property
    def backup_dir(self) -> Path:
        return self.state_dir / "backups"

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / "ledger.db"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "deploy.lock"

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / f"{self.service_name}.service"

    # ------------------------------------------------------------------
    # Declarative inputs
    # ------------------------------------------------------------------

    def service_descriptor(self) -> ServiceDescriptor:
        """Build the unit the daemon should run under."""
        return ServiceDescriptor(
            name=self.service_name,
            description=self.description,
            exec_path=self.install_path,
            exec_args=list(self.exec_args or []),
            restart_sec=self.restart_sec,
            limits=self.limits,
            sandbox=self.sandbox,
            writable_paths=[self.data_dir, self.config_dir, self.log_dir],
        )

    def provision_manifest(self) -> ProvisionManifest:
        """Paths that must exist before install.

        Loaded from ``manifest_path`` when set; otherwise the daemon's
        standard layout.
        """
        if self.manifest_path is not None:
            return ProvisionManifest.from_toml(self.manifest_path)

        owner = {"owner": self.provision_owner, "group": self.provision_group}
        entries = [
            ProvisionEntry(path=self.config_dir, mode=0o755, **owner),
            ProvisionEntry(path=self.config_dir / "keys", mode=0o700, **owner),
            ProvisionEntry(path=self.data_dir, mode=0o755, **owner),
            ProvisionEntry(path=self.data_dir / "quarantine", mode=0o700, **owner),
            ProvisionEntry(path=self.data_dir / "rollbacks", mode=0o755, **owner),
            ProvisionEntry(path=self.log_dir, mode=0o755, **owner),
        ]
        if self.config_seed is not None:
            entries.append(
                ProvisionEntry(
                    path=self.config_dir / "config.toml",
                    mode=0o644,
                    kind="file",
                    seed_from=self.config_seed,
                    **owner,
                )
            )
        return ProvisionManifest(entries=entries)
