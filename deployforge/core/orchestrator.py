"""Deployment orchestrator: the central coordinator for one attempt.

Sequences Resolving -> Acquiring -> Provisioning -> Backing up ->
Installing -> Starting -> Verifying, with two failure exits:

- a failure before the backup exists aborts with the host untouched;
- a failure (or cancellation) once the backup exists rolls back to it.

The attempt holds the deployment lock for its whole duration and is
recorded in the ledger, transition by transition, as it goes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

import httpx

from deployforge.config import DeployConfig
from deployforge.core.artifact_store import ArtifactStore
from deployforge.core.build_pipeline import BuildPipeline, build_pipeline
from deployforge.core.cancellation import CancellationToken
from deployforge.core.errors import (
    DeployError,
    DeploymentLockedError,
    ErrorKind,
    InstallError,
    RollbackError,
    VerificationError,
)
from deployforge.core.health_probe import HealthProbe
from deployforge.core.installer import InstallManager
from deployforge.core.lock import DeploymentLock
from deployforge.core.provision import ProvisionManager
from deployforge.core.rollback import RollbackManager
from deployforge.core.run_ledger import RunLedger
from deployforge.core.runner import CommandRunner, SubprocessRunner
from deployforge.core.state_machine import DeploymentStateMachine
from deployforge.core.supervisor import ServiceSupervisor, SystemdSupervisor
from deployforge.core.verifier import Verifier
from deployforge.core.version_resolver import SourceCheckout, VersionResolver
from deployforge.models.artifacts import Artifact, Backup
from deployforge.models.attempt import DeploymentAttempt, DeploymentOutcome, DeploymentState
from deployforge.models.reports import VerificationReport

logger = logging.getLogger(__name__)


class Orchestrator:
    """Top-level deployment state machine.

    Every collaborator can be injected; by default the orchestrator talks
    to the real host (subprocesses, systemd, the filesystem under
    ``config``).

    Parameters
    ----------
    config:
        Deployment configuration.
    runner:
        Command runner shared by every component that runs processes.
    supervisor:
        Host service supervisor.
    probe:
        Health probe used for version detection and verification.
    ledger:
        Deployment ledger. Defaults to ``config.ledger_path``.
    host_arch:
        Architecture artifacts must match. Defaults to the probe's.
    transport:
        httpx transport for the download strategy (tests).
    """

    def __init__(
        self,
        config: DeployConfig | None = None,
        *,
        runner: CommandRunner | None = None,
        supervisor: ServiceSupervisor | None = None,
        probe: HealthProbe | None = None,
        ledger: RunLedger | None = None,
        host_arch: str | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or DeployConfig()
        cfg = self.config
        self._runner = runner or SubprocessRunner()

        self.store = ArtifactStore(cfg.state_dir)
        self.ledger = ledger or RunLedger(cfg.ledger_path)
        self.supervisor = supervisor or SystemdSupervisor(self._runner, cfg.unit_dir)
        self.probe = probe or HealthProbe(
            self._runner,
            timeout=cfg.probe_timeout,
            probe_args=cfg.probe_args,
            host_arch=host_arch,
        )
        self.source = SourceCheckout(self._runner, cfg.source_dir, cfg.source_remote)
        self.resolver = VersionResolver(self.store, self.probe, cfg.install_path, self.source)
        self.pipeline: BuildPipeline = build_pipeline(
            cfg,
            self._runner,
            self.store,
            self.source,
            host_arch=host_arch or self.probe.host_arch,
            transport=transport,
        )
        self.provisioner = ProvisionManager()
        self.installer = InstallManager(self.store, self.supervisor, cfg.install_path)
        self.rollbacker = RollbackManager(
            self.store,
            self.supervisor,
            cfg.install_path,
            cfg.service_name,
            restart_timeout=cfg.verify_timeout,
            poll_interval=cfg.poll_interval,
            sleep=sleep,
        )
        self.verifier = Verifier(
            self.probe,
            self.supervisor,
            cfg.install_path,
            cfg.service_name,
            log_lines=cfg.log_lines,
            poll_interval=cfg.poll_interval,
            settle=cfg.verify_settle,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def deploy(
        self,
        *,
        dry_run: bool = False,
        force: bool = False,
        source_ref: str | None = None,
        target_version: str | None = None,
        cancel: CancellationToken | None = None,
        mode: str = "deploy",
        fetch: bool = False,
    ) -> DeploymentAttempt:
        """Run one deployment attempt to a terminal state and return it.

        Deployment failures never raise; they end the attempt in ABORTED,
        ROLLED_BACK or ROLLBACK_FAILED with the error attached.
        """
        attempt = DeploymentAttempt(
            mode=mode,
            dry_run=dry_run,
            force=force,
            source_ref=source_ref or self.config.source_ref,
        )
        machine = DeploymentStateMachine(attempt, self.ledger)
        token = cancel or CancellationToken()
        override = target_version or self.config.target_version

        lock = DeploymentLock(self.config.lock_path)
        try:
            lock.acquire()
        except DeploymentLockedError as exc:
            self._abort(attempt, machine, exc)
        else:
            try:
                self._run(attempt, machine, token, override=override, fetch=fetch)
            finally:
                lock.release()

        self.ledger.record_attempt(attempt)
        return attempt

    def update(self, **kwargs) -> DeploymentAttempt:
        """``deploy`` against the freshly fetched upstream branch."""
        return self.deploy(mode="update", fetch=True, **kwargs)

    def rollback(self) -> DeploymentAttempt:
        """Restore the most recent backup on operator request."""
        attempt = DeploymentAttempt(mode="rollback")
        machine = DeploymentStateMachine(attempt, self.ledger)
        lock = DeploymentLock(self.config.lock_path)
        try:
            lock.acquire()
        except DeploymentLockedError as exc:
            self._abort(attempt, machine, exc)
        else:
            try:
                backup = self.store.latest_backup()
                attempt.current_version = self.resolver.installed_version()
                if backup is not None:
                    attempt.backup_id = backup.backup_id
                    attempt.target_version = backup.installed_version
                machine.transition(DeploymentState.ROLLING_BACK, backup_id=attempt.backup_id)
                self._restore(attempt, machine, backup)
            finally:
                lock.release()
        self.ledger.record_attempt(attempt)
        return attempt

    def verify(
        self, timeout: float | None = None, cancel: CancellationToken | None = None
    ) -> VerificationReport:
        """Verify the currently installed service. Read-only."""
        return self.verifier.verify(
            self.config.verify_timeout if timeout is None else timeout, cancel=cancel
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(
        self,
        attempt: DeploymentAttempt,
        machine: DeploymentStateMachine,
        token: CancellationToken,
        *,
        override: str | None,
        fetch: bool,
    ) -> None:
        cfg = self.config

        # Resolving
        machine.transition(DeploymentState.RESOLVING, source_ref=attempt.source_ref)
        try:
            token.raise_if_cancelled("resolving")
            if fetch:
                if attempt.dry_run:
                    logger.info("dry run: planning against the last fetched upstream")
                else:
                    self.source.fetch()
                attempt.source_ref = self.source.upstream_ref()
            attempt.current_version = self.resolver.installed_version()
            attempt.target_version = self.resolver.target_version(attempt.source_ref, override)
        except DeployError as exc:
            self._abort(attempt, machine, exc)
            return
        logger.info(
            "installed %s, target %s", attempt.current_version, attempt.target_version
        )
        if attempt.current_version == attempt.target_version and not attempt.force:
            attempt.outcome = DeploymentOutcome.UP_TO_DATE
            machine.transition(DeploymentState.DONE, outcome=attempt.outcome.value)
            return

        # Acquiring
        machine.transition(DeploymentState.ACQUIRING, strategies=self.pipeline.strategy_names)
        manifest = cfg.provision_manifest()
        if attempt.dry_run:
            attempt.plan = self.pipeline.plan(attempt.target_version)
            try:
                attempt.provision_plan = self.provisioner.pending(manifest)
            except DeployError as exc:
                self._abort(attempt, machine, exc)
                return
            selected = next((s.strategy for s in attempt.plan if s.selected), "")
            attempt.strategy = selected
            attempt.outcome = DeploymentOutcome.PLANNED
            machine.transition(DeploymentState.PLANNED, selected=selected or "none")
            return
        try:
            artifact = self.pipeline.acquire(
                attempt.target_version, source_ref=attempt.source_ref, cancel=token
            )
        except DeployError as exc:
            self._abort(attempt, machine, exc)
            return
        attempt.strategy = artifact.strategy
        attempt.artifact_sha256 = artifact.sha256

        # Provisioning
        descriptor = cfg.service_descriptor()
        machine.transition(DeploymentState.PROVISIONING, strategy=artifact.strategy)
        try:
            token.raise_if_cancelled("provisioning")
            changes = self.provisioner.ensure(manifest)
            self.installer.check_descriptor(descriptor, manifest)
        except DeployError as exc:
            self._abort(attempt, machine, exc)
            return

        # Backing up
        machine.transition(DeploymentState.BACKING_UP, provisioned=len(changes))
        try:
            token.raise_if_cancelled("backing_up")
            backup = self.installer.backup(
                attempt.attempt_id, descriptor, installed_version=attempt.current_version
            )
        except DeployError as exc:
            self._abort(attempt, machine, exc)
            return
        attempt.backup_id = backup.backup_id

        # From here on every failure goes through rollback
        try:
            self._install_and_verify(attempt, machine, token, artifact, backup)
        except DeployError as exc:
            self._roll_back(attempt, machine, backup, exc)
            return
        except Exception as exc:
            self._roll_back(
                attempt,
                machine,
                backup,
                InstallError(ErrorKind.WRITE_FAILED, f"unexpected error: {exc!r}"),
            )
            raise

        try:
            removed = self.store.prune_backups(cfg.backup_retention)
        except OSError as exc:
            logger.warning("backup pruning failed: %s", exc)
            removed = []
        attempt.outcome = DeploymentOutcome.UPDATED
        machine.transition(
            DeploymentState.DONE, outcome=attempt.outcome.value, pruned=removed
        )

    def _install_and_verify(
        self,
        attempt: DeploymentAttempt,
        machine: DeploymentStateMachine,
        token: CancellationToken,
        artifact: Artifact,
        backup: Backup,
    ) -> None:
        cfg = self.config
        machine.transition(DeploymentState.INSTALLING, backup_id=backup.backup_id)
        token.raise_if_cancelled("installing")
        self.installer.install(artifact, cfg.service_descriptor(), backup)

        machine.transition(DeploymentState.STARTING)
        token.raise_if_cancelled("starting")
        started_at = datetime.now(timezone.utc)
        self.supervisor.restart(cfg.service_name)

        machine.transition(DeploymentState.VERIFYING)
        report = self.verifier.verify(cfg.verify_timeout, since=started_at, cancel=token)
        attempt.report = report
        if not report.passed:
            raise VerificationError(
                report.primary_reason,
                f"verification failed: service {report.service_state}, "
                f"probe {report.probe_outcome.value}"
                + (f", matched {', '.join(report.matched_patterns)}" if report.matched_patterns else ""),
                report=report,
                context={"matched_patterns": report.matched_patterns},
            )

    # ------------------------------------------------------------------
    # Failure exits
    # ------------------------------------------------------------------

    def _abort(
        self,
        attempt: DeploymentAttempt,
        machine: DeploymentStateMachine,
        exc: DeployError,
    ) -> None:
        if not exc.stage:
            exc.stage = attempt.state.value
        attempt.failed_stage = attempt.state
        attempt.record(attempt.state, "failed", error_kind=exc.kind.value)
        attempt.error = exc.to_dict()
        attempt.outcome = DeploymentOutcome.ABORTED
        logger.error("attempt %s aborted: %s", attempt.attempt_id, exc)
        machine.transition(
            DeploymentState.ABORTED, error_kind=exc.kind.value, message=exc.message
        )

    def _roll_back(
        self,
        attempt: DeploymentAttempt,
        machine: DeploymentStateMachine,
        backup: Backup,
        exc: DeployError,
    ) -> None:
        if not exc.stage:
            exc.stage = attempt.state.value
        attempt.failed_stage = attempt.state
        attempt.record(attempt.state, "failed", error_kind=exc.kind.value)
        attempt.error = exc.to_dict()
        logger.error("attempt %s failed, rolling back: %s", attempt.attempt_id, exc)
        machine.transition(
            DeploymentState.ROLLING_BACK,
            error_kind=exc.kind.value,
            message=exc.message,
            backup_id=backup.backup_id,
        )
        self._restore(attempt, machine, backup)

    def _restore(
        self,
        attempt: DeploymentAttempt,
        machine: DeploymentStateMachine,
        backup: Backup | None,
    ) -> None:
        try:
            self.rollbacker.rollback(backup)
        except RollbackError as rexc:
            attempt.rollback_error = rexc.to_dict()
            attempt.record(attempt.state, "failed", error_kind=rexc.kind.value)
            attempt.outcome = DeploymentOutcome.ROLLBACK_FAILED
            logger.critical(
                "attempt %s: rollback failed, operator must intervene: %s",
                attempt.attempt_id, rexc,
            )
            machine.transition(
                DeploymentState.ROLLBACK_FAILED,
                error_kind=rexc.kind.value,
                message=rexc.message,
            )
            return
        attempt.outcome = DeploymentOutcome.ROLLED_BACK
        machine.transition(DeploymentState.ROLLED_BACK)
