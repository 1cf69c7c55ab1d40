"""Deployment error taxonomy and operator remediation table.

Every failure the orchestrator can report maps to exactly one ``ErrorKind``.
The kind values are emitted verbatim in logs, ledger entries and JSON output
so operators can grep for them; the human guidance lives in ``REMEDIATIONS``
and nowhere else.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from deployforge.models.reports import VerificationReport


class ErrorKind(str, Enum):
    """Machine-parseable failure kinds."""

    # Resolution
    VERSION_UNRESOLVED = "version-unresolved"
    # Acquisition
    TOOLCHAIN_MISSING = "toolchain-missing"
    OUT_OF_MEMORY = "out-of-memory"
    BUILD_FAILED = "build-failed"
    NETWORK = "network"
    CHECKSUM_MISMATCH = "checksum-mismatch"
    ARCHITECTURE_MISMATCH = "architecture-mismatch"
    INVALID_ARTIFACT = "invalid-artifact"
    ALL_STRATEGIES_FAILED = "all-strategies-failed"
    # Shared by acquisition and verification
    TIMEOUT = "timeout"
    # Provisioning
    PERMISSION_DENIED = "permission-denied"
    PATH_CONFLICT = "path-conflict"
    # Install
    WRITE_FAILED = "write-failed"
    DESCRIPTOR_INVALID = "descriptor-invalid"
    BACKUP_FAILED = "backup-failed"
    START_FAILED = "start-failed"
    # Verification
    NOT_EXECUTABLE = "not-executable"
    MISSING_DEPENDENCY = "missing-dependency"
    SANDBOX_REJECTED = "sandbox-rejected"
    CRASH_LOOP = "crash-loop"
    CRASH = "crash"
    SERVICE_INACTIVE = "service-inactive"
    # Rollback
    BACKUP_MISSING = "backup-missing"
    BACKUP_CORRUPT = "backup-corrupt"
    RESTART_FAILED = "restart-failed"
    # Orchestration
    DEPLOYMENT_IN_PROGRESS = "deployment-in-progress"
    CANCELLED = "cancelled"


REMEDIATIONS: dict[ErrorKind, str] = {
    ErrorKind.VERSION_UNRESOLVED: (
        "check the source checkout (git describe / Cargo.toml) or pass --version explicitly"
    ),
    ErrorKind.TOOLCHAIN_MISSING: (
        "install the build toolchain (e.g. rustup default stable) or configure "
        "DEPLOYFORGE_BUILD_HOST / DEPLOYFORGE_PREBUILT_URL"
    ),
    ErrorKind.OUT_OF_MEMORY: (
        "increase swap (DEPLOYFORGE_SWAP_SIZE_GB) or build on a machine with more RAM "
        "(DEPLOYFORGE_BUILD_HOST)"
    ),
    ErrorKind.BUILD_FAILED: "inspect the build output in the deployment log and fix the source",
    ErrorKind.NETWORK: "check connectivity to the build host / artifact URL and retry",
    ErrorKind.CHECKSUM_MISMATCH: (
        "artifact digest does not match DEPLOYFORGE_PREBUILT_SHA256: re-publish or fix the checksum"
    ),
    ErrorKind.ARCHITECTURE_MISMATCH: "binary architecture mismatch: rebuild for host arch",
    ErrorKind.INVALID_ARTIFACT: "artifact is not a native executable: rebuild and copy again",
    ErrorKind.ALL_STRATEGIES_FAILED: (
        "every build strategy failed: see the per-strategy errors above"
    ),
    ErrorKind.TIMEOUT: (
        "a process did not finish in time: check for a hung binary or raise the timeout"
    ),
    ErrorKind.PERMISSION_DENIED: "re-run with root privileges (sudo)",
    ErrorKind.PATH_CONFLICT: "a path in the manifest exists with the wrong type: move it aside",
    ErrorKind.WRITE_FAILED: "check free disk space and permissions on the install path",
    ErrorKind.DESCRIPTOR_INVALID: (
        "every ReadWritePaths entry must exist: add it to the provision manifest"
    ),
    ErrorKind.BACKUP_FAILED: "check free space and permissions in the deployforge state directory",
    ErrorKind.START_FAILED: "inspect `systemctl status <service>` and the unit file",
    ErrorKind.NOT_EXECUTABLE: (
        "binary cannot be executed (203/EXEC): check ExecStart, the execute bit "
        "and noexec mounts"
    ),
    ErrorKind.MISSING_DEPENDENCY: (
        "install the missing shared libraries or deploy a statically linked binary"
    ),
    ErrorKind.SANDBOX_REJECTED: (
        "sandbox setup failed (226/NAMESPACE): relax DEPLOYFORGE_SANDBOX__PROTECT_SYSTEM "
        "or provision the ReadWritePaths"
    ),
    ErrorKind.CRASH_LOOP: (
        "service restarts too quickly: run the binary by hand and read journalctl -u <service>"
    ),
    ErrorKind.CRASH: "binary crashed during the capability probe: inspect core dumps and logs",
    ErrorKind.SERVICE_INACTIVE: "service did not reach the active state: read journalctl -u <service>",
    ErrorKind.BACKUP_MISSING: "no backup to restore: reinstall a known-good binary manually",
    ErrorKind.BACKUP_CORRUPT: (
        "backup failed its integrity check: reinstall a known-good binary manually"
    ),
    ErrorKind.RESTART_FAILED: (
        "previous version restored but the service did not come back: operator must intervene"
    ),
    ErrorKind.DEPLOYMENT_IN_PROGRESS: (
        "another deployment holds the lock: wait for it to finish"
    ),
    ErrorKind.CANCELLED: "deployment was cancelled: re-run when ready",
}


def remediation_for(kind: ErrorKind) -> str:
    """Return the operator guidance for an error kind."""
    return REMEDIATIONS.get(kind, "see the deployment log")


class DeployError(RuntimeError):
    """Base class for every runtime failure of a deployment attempt.

    Parameters
    ----------
    kind:
        The taxonomy entry for this failure.
    message:
        Human-readable description.
    stage:
        Orchestrator stage in which the failure happened (filled in by the
        orchestrator when the raising component does not know it).
    context:
        Structured details (strategy name, matched log pattern, paths).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        stage: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.stage = stage
        self.context: dict[str, Any] = dict(context or {})

    @property
    def remediation(self) -> str:
        return remediation_for(self.kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "kind": self.kind.value,
            "stage": self.stage,
            "message": self.message,
            "remediation": self.remediation,
            "context": self.context,
        }

    def __str__(self) -> str:
        prefix = f"[{self.kind.value}]"
        if self.stage:
            prefix += f" stage={self.stage}"
        return f"{prefix} {self.message}"


class ResolutionError(DeployError):
    """Installed or target version could not be determined."""


class StrategyFailure(DeployError):
    """A single build strategy failed; the pipeline moves on to the next."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        strategy: str = "",
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = dict(context or {})
        ctx.setdefault("strategy", strategy)
        super().__init__(kind, message, stage="acquiring", context=ctx)
        self.strategy = strategy


class AcquisitionError(DeployError):
    """No usable artifact could be produced.

    ``attempts`` carries every per-strategy failure in the order tried;
    ``skipped`` names strategies that were not applicable (not configured,
    nothing staged).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        attempts: list[StrategyFailure] | None = None,
        skipped: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(kind, message, stage="acquiring", context=context)
        self.attempts: list[StrategyFailure] = list(attempts or [])
        self.skipped: list[str] = list(skipped or [])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = [a.to_dict() for a in self.attempts]
        data["skipped"] = list(self.skipped)
        return data


class ProvisionError(DeployError):
    """A manifest path could not be created or repaired."""


class InstallError(DeployError):
    """Backup, binary swap or descriptor write failed."""


class StartError(DeployError):
    """The supervisor refused to (re)start the service."""


class VerificationError(DeployError):
    """Post-install verification failed; carries the full report."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        report: VerificationReport | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(kind, message, stage="verifying", context=context)
        self.report = report

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.report is not None:
            data["report"] = self.report.model_dump(mode="json")
        return data


class RollbackError(DeployError):
    """Restoring the previous state failed. The host may be inconsistent."""


class DeploymentLockedError(DeployError):
    """Another deployment attempt holds the lock."""

    def __init__(self, lock_path: str) -> None:
        super().__init__(
            ErrorKind.DEPLOYMENT_IN_PROGRESS,
            f"deployment already in progress (lock held on {lock_path})",
            stage="resolving",
            context={"lock_path": lock_path},
        )


class DeploymentCancelled(DeployError):
    """External cancellation (signal or deadline) was observed."""

    def __init__(self, reason: str = "cancelled", *, stage: str = "") -> None:
        super().__init__(ErrorKind.CANCELLED, reason, stage=stage)
