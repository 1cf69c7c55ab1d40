"""Deployforge data models (Pydantic v2, frozen unless they accumulate state)."""

from deployforge.models.artifacts import Artifact, Backup, BackupFile, InstallRecord
from deployforge.models.attempt import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    DeploymentAttempt,
    DeploymentOutcome,
    DeploymentState,
    ExitCode,
    PlanStep,
    StageOutcome,
)
from deployforge.models.ledger import AttemptSummary, LedgerEntry
from deployforge.models.provision import ProvisionChange, ProvisionEntry, ProvisionManifest
from deployforge.models.reports import (
    DiagnosticFinding,
    ProbeOutcome,
    ProbeResult,
    VerificationReport,
)
from deployforge.models.service import ResourceLimits, SandboxPolicy, ServiceDescriptor

__all__ = [
    # artifacts
    "Artifact",
    "Backup",
    "BackupFile",
    "InstallRecord",
    # attempt
    "DeploymentAttempt",
    "DeploymentOutcome",
    "DeploymentState",
    "ExitCode",
    "PlanStep",
    "StageOutcome",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    # ledger
    "LedgerEntry",
    "AttemptSummary",
    # provision
    "ProvisionEntry",
    "ProvisionManifest",
    "ProvisionChange",
    # reports
    "ProbeOutcome",
    "ProbeResult",
    "DiagnosticFinding",
    "VerificationReport",
    # service
    "ServiceDescriptor",
    "SandboxPolicy",
    "ResourceLimits",
]
