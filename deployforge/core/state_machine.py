"""Deployment attempt state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Every transition recorded in the ledger
- Every transition mirrored into the attempt's stage log
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from deployforge.core.run_ledger import RunLedger
from deployforge.models.attempt import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    DeploymentAttempt,
    DeploymentState,
)
from deployforge.models.ledger import LedgerEntry

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class DeploymentStateMachine:
    """Moves one ``DeploymentAttempt`` through its states.

    Parameters
    ----------
    attempt:
        The attempt being driven. Its ``state`` is the single source of
        truth for where the attempt is.
    ledger:
        Optional ledger to record transitions into. ``None`` keeps the
        transitions in the attempt only.
    """

    def __init__(self, attempt: DeploymentAttempt, ledger: RunLedger | None = None) -> None:
        self._attempt = attempt
        self._ledger = ledger

    @property
    def state(self) -> DeploymentState:
        return self._attempt.state

    def transition(
        self,
        target: DeploymentState,
        *,
        error_kind: str = "",
        **detail: Any,
    ) -> LedgerEntry | None:
        """Move to ``target``, recording the transition.

        Raises ``InvalidTransitionError`` for transitions outside the table;
        that is a programming error, never a deployment failure.
        """
        current = self._attempt.state
        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition attempt {self._attempt.attempt_id} from "
                f"{current.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        self._attempt.state = target
        self._attempt.record(target, "entered", **detail)
        if target in TERMINAL_STATES:
            self._attempt.finished_at = datetime.now(timezone.utc)
        logger.info(
            "attempt %s: %s -> %s", self._attempt.attempt_id, current.value, target.value
        )

        if self._ledger is None:
            return None
        return self._ledger.append(
            LedgerEntry(
                attempt_id=self._attempt.attempt_id,
                stage=target.value,
                state_transition=f"{current.value}->{target.value}",
                detail=_jsonable(detail),
                error_kind=error_kind,
            )
        )

    def can_transition(self, target: DeploymentState) -> bool:
        return target in VALID_TRANSITIONS.get(self._attempt.state, set())


def _jsonable(detail: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in detail.items():
        if isinstance(value, (str, int, float, bool)) or value is None:
            out[key] = value
        elif isinstance(value, (list, tuple)):
            out[key] = [str(v) for v in value]
        else:
            out[key] = str(value)
    return out
