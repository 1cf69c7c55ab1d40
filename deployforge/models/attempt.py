"""Deployment attempt state machine models.

One ``DeploymentAttempt`` exists per orchestrator invocation. It is threaded
explicitly through every stage and persisted to the ledger when the attempt
finishes; it is never reloaded as live state.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from deployforge.models.provision import ProvisionChange
from deployforge.models.reports import VerificationReport


class DeploymentState(str, Enum):
    """Orchestrator states, in pipeline order."""

    PENDING = "pending"
    RESOLVING = "resolving"
    ACQUIRING = "acquiring"
    PROVISIONING = "provisioning"
    BACKING_UP = "backing_up"
    INSTALLING = "installing"
    STARTING = "starting"
    VERIFYING = "verifying"
    ROLLING_BACK = "rolling_back"
    # Terminal
    DONE = "done"
    PLANNED = "planned"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


# Failures before BACKING_UP completes abort with the host untouched; failures
# from INSTALLING onwards must go through ROLLING_BACK.
VALID_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.PENDING: {
        DeploymentState.RESOLVING,
        DeploymentState.ROLLING_BACK,  # manual rollback
        DeploymentState.ABORTED,
    },
    DeploymentState.RESOLVING: {
        DeploymentState.ACQUIRING,
        DeploymentState.DONE,  # already up to date
        DeploymentState.ABORTED,
    },
    DeploymentState.ACQUIRING: {
        DeploymentState.PROVISIONING,
        DeploymentState.PLANNED,  # dry-run
        DeploymentState.ABORTED,
    },
    DeploymentState.PROVISIONING: {DeploymentState.BACKING_UP, DeploymentState.ABORTED},
    DeploymentState.BACKING_UP: {DeploymentState.INSTALLING, DeploymentState.ABORTED},
    DeploymentState.INSTALLING: {DeploymentState.STARTING, DeploymentState.ROLLING_BACK},
    DeploymentState.STARTING: {DeploymentState.VERIFYING, DeploymentState.ROLLING_BACK},
    DeploymentState.VERIFYING: {DeploymentState.DONE, DeploymentState.ROLLING_BACK},
    DeploymentState.ROLLING_BACK: {
        DeploymentState.ROLLED_BACK,
        DeploymentState.ROLLBACK_FAILED,
    },
    DeploymentState.DONE: set(),
    DeploymentState.PLANNED: set(),
    DeploymentState.ABORTED: set(),
    DeploymentState.ROLLED_BACK: set(),
    DeploymentState.ROLLBACK_FAILED: set(),
}

TERMINAL_STATES: frozenset[DeploymentState] = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)


class ExitCode(IntEnum):
    """Process exit codes of the deploy/update commands."""

    SUCCESS = 0
    FAILURE = 1
    UP_TO_DATE = 2
    DRY_RUN = 3
    ROLLED_BACK = 4


class DeploymentOutcome(str, Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up-to-date"
    PLANNED = "planned"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"


OUTCOME_EXIT_CODES: dict[DeploymentOutcome, ExitCode] = {
    DeploymentOutcome.UPDATED: ExitCode.SUCCESS,
    DeploymentOutcome.UP_TO_DATE: ExitCode.UP_TO_DATE,
    DeploymentOutcome.PLANNED: ExitCode.DRY_RUN,
    DeploymentOutcome.ABORTED: ExitCode.FAILURE,
    DeploymentOutcome.ROLLED_BACK: ExitCode.ROLLED_BACK,
    DeploymentOutcome.ROLLBACK_FAILED: ExitCode.FAILURE,
}


class StageOutcome(BaseModel):
    """One line of an attempt's linear stage log."""

    model_config = ConfigDict(frozen=True)

    stage: DeploymentState
    status: str  # "entered", "passed", "failed", "skipped"
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    detail: dict[str, Any] = {}


class PlanStep(BaseModel):
    """One strategy in a dry-run acquisition plan."""

    model_config = ConfigDict(frozen=True)

    strategy: str
    applicable: bool
    reason: str = ""
    selected: bool = False


def _attempt_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"dep-{ts}-{uuid.uuid4().hex[:4]}"


class DeploymentAttempt(BaseModel):
    """Everything one orchestrator invocation learned and did."""

    model_config = ConfigDict(validate_assignment=True)

    attempt_id: str = Field(default_factory=_attempt_id)
    mode: str = "deploy"
    dry_run: bool = False
    force: bool = False
    source_ref: str = "HEAD"
    current_version: str = ""
    target_version: str = ""
    strategy: str = ""
    artifact_sha256: str = ""
    backup_id: str = ""
    state: DeploymentState = DeploymentState.PENDING
    outcome: DeploymentOutcome | None = None
    failed_stage: DeploymentState | None = None
    error: dict[str, Any] | None = None
    rollback_error: dict[str, Any] | None = None
    report: VerificationReport | None = None
    plan: list[PlanStep] = []
    provision_plan: list[ProvisionChange] = []
    stages: list[StageOutcome] = []
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def record(
        self, stage: DeploymentState, status: str, **detail: Any
    ) -> StageOutcome:
        outcome = StageOutcome(stage=stage, status=status, detail=detail)
        self.stages = [*self.stages, outcome]
        return outcome

    @property
    def exit_code(self) -> ExitCode:
        if self.outcome is None:
            return ExitCode.FAILURE
        if self.mode == "rollback" and self.outcome == DeploymentOutcome.ROLLED_BACK:
            # A requested rollback that worked is a success
            return ExitCode.SUCCESS
        return OUTCOME_EXIT_CODES[self.outcome]

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES
