"""Post-install verification.

Three checks, always in this order and always all three:

(a) the capability probe on the installed binary, bounded by a timeout;
(b) the supervisor's view of the unit, polled until active, failed or
    out of time, and then held at active for a settle window;
(c) the unit's recent log lines, scanned for known-fatal substrings
    once the settle window is over.

A matched pattern fails verification even when (a) and (b) pass: a binary
can run fine by hand and still be rejected by the supervisor's sandbox.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path

from deployforge.core.cancellation import CancellationToken
from deployforge.core.errors import DeploymentCancelled, ErrorKind
from deployforge.core.health_probe import HealthProbe
from deployforge.core.supervisor import ServiceSupervisor
from deployforge.models.reports import PROBE_ERROR_KINDS, VerificationReport

logger = logging.getLogger(__name__)

# Substring -> reason. Order matters: the first match is the primary reason.
FATAL_LOG_PATTERNS: tuple[tuple[str, ErrorKind], ...] = (
    ("226/NAMESPACE", ErrorKind.SANDBOX_REJECTED),
    ("203/EXEC", ErrorKind.NOT_EXECUTABLE),
    ("Exec format error", ErrorKind.ARCHITECTURE_MISMATCH),
    ("error while loading shared libraries", ErrorKind.MISSING_DEPENDENCY),
    ("Permission denied", ErrorKind.NOT_EXECUTABLE),
    ("Start request repeated too quickly", ErrorKind.CRASH_LOOP),
    ("start-limit-hit", ErrorKind.CRASH_LOOP),
)

_EXCERPT_LINES = 10


def scan_logs(lines: list[str]) -> tuple[list[ErrorKind], list[str], list[str]]:
    """Return ``(reasons, matched patterns, matching lines)`` for ``lines``."""
    reasons: list[ErrorKind] = []
    patterns: list[str] = []
    hits: list[str] = []
    for pattern, kind in FATAL_LOG_PATTERNS:
        matching = [line for line in lines if pattern in line]
        if not matching:
            continue
        patterns.append(pattern)
        hits.extend(matching)
        if kind not in reasons:
            reasons.append(kind)
    return reasons, patterns, hits


class Verifier:
    """Produces a VerificationReport for the installed service.

    Parameters
    ----------
    probe:
        Health probe run against ``install_path``.
    supervisor:
        Host service supervisor.
    install_path:
        The installed binary.
    service_name:
        The managed unit.
    log_lines:
        How many recent log lines to scan.
    poll_interval:
        Seconds between supervisor state queries.
    settle:
        Seconds the unit must stay ``active`` once it gets there. systemd
        reports a ``Type=simple`` unit active right after fork, before a
        sandbox or exec failure has had a chance to land. Capped by the
        verification timeout.
    """

    def __init__(
        self,
        probe: HealthProbe,
        supervisor: ServiceSupervisor,
        install_path: Path,
        service_name: str,
        *,
        log_lines: int = 50,
        poll_interval: float = 1.0,
        settle: float = 3.0,
    ) -> None:
        self._probe = probe
        self._supervisor = supervisor
        self._install_path = Path(install_path)
        self._name = service_name
        self._log_lines = log_lines
        self._poll_interval = poll_interval
        self._settle = settle

    def verify(
        self,
        timeout: float = 30.0,
        *,
        since: datetime | None = None,
        cancel: CancellationToken | None = None,
    ) -> VerificationReport:
        """Run the three checks; ``since`` limits the log scan to this start."""
        token = cancel or CancellationToken()

        probe = self._probe.probe(self._install_path)
        logger.info("verify: probe %s", probe.outcome.value)

        state = self._wait_for_active(timeout, token)
        logger.info("verify: service state %s", state)

        lines = self._supervisor.recent_logs(self._name, self._log_lines, since=since)
        log_reasons, patterns, hits = scan_logs(lines)
        for pattern in patterns:
            logger.warning("verify: fatal log pattern %r matched", pattern)

        reasons = list(log_reasons)
        if not probe.ok:
            kind = PROBE_ERROR_KINDS[probe.outcome]
            if kind not in reasons:
                reasons.append(kind)
        service_active = state == "active"
        if not service_active and not reasons:
            reasons.append(ErrorKind.SERVICE_INACTIVE)

        excerpt_lines = hits or lines[-_EXCERPT_LINES:]
        if not probe.ok and probe.detail:
            excerpt_lines = [f"probe: {probe.detail}", *excerpt_lines]

        return VerificationReport(
            binary_ok=probe.ok and not patterns,
            service_active=service_active,
            probe_ok=probe.ok,
            probe_outcome=probe.outcome,
            service_state=state,
            reasons=reasons,
            matched_patterns=patterns,
            excerpt="\n".join(excerpt_lines[-_EXCERPT_LINES:]),
        )

    def _wait_for_active(self, timeout: float, token: CancellationToken) -> str:
        deadline = time.monotonic() + timeout
        while True:
            state = self._supervisor.state(self._name)
            if state == "active":
                return self._hold_active(min(self._settle, timeout), token)
            if state == "failed" or time.monotonic() >= deadline:
                return state
            self._pause(token)

    def _hold_active(self, window: float, token: CancellationToken) -> str:
        """Re-poll an active unit until ``window`` has passed; first other state wins."""
        settled_at = time.monotonic() + window
        while time.monotonic() < settled_at:
            self._pause(token)
            state = self._supervisor.state(self._name)
            if state != "active":
                logger.warning("verify: service left active during settle window: %s", state)
                return state
        return "active"

    def _pause(self, token: CancellationToken) -> None:
        if token.wait(self._poll_interval):
            raise DeploymentCancelled(token.reason, stage="verifying")
