"""Bounded child-process execution.

Every external command the orchestrator runs (build tools, ssh/scp, git,
systemctl, the probed binary itself) goes through a ``CommandRunner`` so
that timeouts and cancellation are enforced in one place and tests can
substitute a scripted runner.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from deployforge.core.cancellation import CancellationToken
from deployforge.core.errors import DeploymentCancelled

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.2


class CommandTimeoutError(RuntimeError):
    """The child process exceeded its timeout and was killed."""

    def __init__(self, args: Sequence[str], timeout: float) -> None:
        super().__init__(f"{args[0]} timed out after {timeout:.0f}s")
        self.args_list = list(args)
        self.timeout = timeout


class CommandResult(BaseModel):
    """Captured outcome of a finished child process."""

    model_config = ConfigDict(frozen=True)

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner(Protocol):
    """Runs a command to completion, bounded by ``timeout``.

    Raises ``FileNotFoundError`` / ``PermissionError`` / ``OSError`` when the
    executable cannot be started, ``CommandTimeoutError`` on timeout and
    ``DeploymentCancelled`` when the token fires.
    """

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """``CommandRunner`` backed by ``subprocess.Popen``."""

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        cancel: CancellationToken | None = None,
    ) -> CommandResult:
        argv = [str(a) for a in args]
        logger.debug("exec: %s (timeout=%s)", " ".join(argv), timeout)
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        started = time.monotonic()
        while True:
            step = _POLL_SECONDS
            if timeout is not None:
                remaining = timeout - (time.monotonic() - started)
                if remaining <= 0:
                    self._kill(proc)
                    raise CommandTimeoutError(argv, timeout)
                step = min(step, remaining)
            try:
                stdout, stderr = proc.communicate(timeout=step)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    self._kill(proc)
                    raise DeploymentCancelled(cancel.reason)
        return CommandResult(
            args=argv, returncode=proc.returncode, stdout=stdout, stderr=stderr
        )

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        proc.kill()
        try:
            proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("process %s did not exit after SIGKILL", proc.pid)
