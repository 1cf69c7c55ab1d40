"""Tests for the deployment state machine."""

from __future__ import annotations

import pytest

from deployforge.core.run_ledger import RunLedger
from deployforge.core.state_machine import DeploymentStateMachine, InvalidTransitionError
from deployforge.models.attempt import DeploymentAttempt, DeploymentState


class TestDeploymentStateMachine:
    def test_valid_transition_updates_attempt(self):
        attempt = DeploymentAttempt()
        machine = DeploymentStateMachine(attempt)
        machine.transition(DeploymentState.RESOLVING)
        assert attempt.state == DeploymentState.RESOLVING
        assert machine.state == DeploymentState.RESOLVING
        assert attempt.stages[-1].stage == DeploymentState.RESOLVING

    def test_invalid_transition_raises(self):
        machine = DeploymentStateMachine(DeploymentAttempt())
        with pytest.raises(InvalidTransitionError, match="pending to installing"):
            machine.transition(DeploymentState.INSTALLING)

    def test_cannot_abort_after_install(self):
        attempt = DeploymentAttempt(state=DeploymentState.INSTALLING)
        machine = DeploymentStateMachine(attempt)
        assert not machine.can_transition(DeploymentState.ABORTED)
        with pytest.raises(InvalidTransitionError):
            machine.transition(DeploymentState.ABORTED)

    def test_terminal_state_sets_finished_at(self):
        attempt = DeploymentAttempt(state=DeploymentState.RESOLVING)
        DeploymentStateMachine(attempt).transition(DeploymentState.DONE)
        assert attempt.finished_at is not None
        assert attempt.is_finished

    def test_transitions_are_ledgered(self, ledger: RunLedger):
        attempt = DeploymentAttempt()
        machine = DeploymentStateMachine(attempt, ledger)
        machine.transition(DeploymentState.RESOLVING, source_ref="HEAD")
        machine.transition(
            DeploymentState.ABORTED, error_kind="version-unresolved", paths=["a", "b"]
        )
        entries = ledger.get_attempt_entries(attempt.attempt_id)
        assert [e.state_transition for e in entries] == [
            "pending->resolving",
            "resolving->aborted",
        ]
        assert entries[0].detail == {"source_ref": "HEAD"}
        assert entries[1].error_kind == "version-unresolved"
        assert entries[1].detail == {"paths": ["a", "b"]}
        assert ledger.verify_chain(attempt.attempt_id)

    def test_without_ledger_returns_none(self):
        machine = DeploymentStateMachine(DeploymentAttempt())
        assert machine.transition(DeploymentState.RESOLVING) is None
