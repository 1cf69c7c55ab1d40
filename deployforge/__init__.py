"""Deployforge: staged, rollback-safe deployment of a privileged host daemon.

Each attempt runs to a terminal state through a fixed sequence:
  - resolve the installed and target versions (skip when equal)
  - acquire a native binary via an ordered chain of build strategies
  - provision the daemon's directories and check the service descriptor
  - back up the current binary and unit, then install atomically
  - restart under the supervisor and verify binary, service and logs
  - roll back to the backup on any failure after it exists

Every transition is written to a hash-chained SQLite ledger.
"""

__version__ = "0.2.0"
__description__ = "Staged, rollback-safe deployment orchestrator for privileged host daemons"

from deployforge.core.orchestrator import Orchestrator
from deployforge.config import DeployConfig
from deployforge.cli.app import app as cli

__all__ = ["Orchestrator", "DeployConfig", "cli", "__version__"]
