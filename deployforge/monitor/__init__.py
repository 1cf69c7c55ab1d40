"""Rich rendering of deployment attempts, verification reports and history."""

from deployforge.monitor.renderer import AttemptRenderer

__all__ = ["AttemptRenderer"]
