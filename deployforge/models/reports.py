"""Probe, diagnostic and verification report models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from deployforge.core.errors import ErrorKind


class ProbeOutcome(str, Enum):
    """Fixed classification of a binary invocation."""

    OK = "ok"
    WRONG_ARCHITECTURE = "wrong-architecture"
    MISSING_DEPENDENCY = "missing-dependency"
    NOT_EXECUTABLE = "not-executable"
    CRASH = "crash"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


# Probe outcome -> error kind reported by the verifier
PROBE_ERROR_KINDS: dict[ProbeOutcome, ErrorKind] = {
    ProbeOutcome.WRONG_ARCHITECTURE: ErrorKind.ARCHITECTURE_MISMATCH,
    ProbeOutcome.MISSING_DEPENDENCY: ErrorKind.MISSING_DEPENDENCY,
    ProbeOutcome.NOT_EXECUTABLE: ErrorKind.NOT_EXECUTABLE,
    ProbeOutcome.CRASH: ErrorKind.CRASH,
    ProbeOutcome.TIMEOUT: ErrorKind.TIMEOUT,
    ProbeOutcome.UNKNOWN: ErrorKind.CRASH,
}


class ProbeResult(BaseModel):
    """Result of running the capability probe on a binary."""

    model_config = ConfigDict(frozen=True)

    outcome: ProbeOutcome
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == ProbeOutcome.OK


class DiagnosticFinding(BaseModel):
    """One line of ``deployforge diagnose`` output."""

    model_config = ConfigDict(frozen=True)

    check: str
    passed: bool
    detail: str = ""
    kind: ErrorKind | None = None
    remediation: str = ""


class VerificationReport(BaseModel):
    """Outcome of post-install verification.

    ``binary_ok`` is false whenever a fatal log pattern matched, even if the
    direct probe succeeded: a binary can run by hand yet fail inside the
    supervisor's sandbox. ``probe_ok`` keeps the raw probe result.
    """

    model_config = ConfigDict(frozen=True)

    binary_ok: bool
    service_active: bool
    probe_ok: bool = False
    probe_outcome: ProbeOutcome = ProbeOutcome.UNKNOWN
    service_state: str = "unknown"
    reasons: list[ErrorKind] = []
    matched_patterns: list[str] = []
    excerpt: str = ""
    checked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def passed(self) -> bool:
        return self.binary_ok and self.service_active and not self.reasons

    @property
    def primary_reason(self) -> ErrorKind:
        """The reason reported as the verification error kind."""
        if self.reasons:
            return self.reasons[0]
        if not self.service_active:
            return ErrorKind.SERVICE_INACTIVE
        return ErrorKind.NOT_EXECUTABLE
