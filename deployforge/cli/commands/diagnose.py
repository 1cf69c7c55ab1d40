"""``deployforge diagnose``: step-by-step binary diagnostics.

Checks existence, the execute bit, ELF format and architecture, shared
library resolution and finally runs the capability probe, printing a
remediation next to every failed check.
"""

from __future__ import annotations

from pathlib import Path

import typer

from deployforge.cli.context import console, get_config, get_orchestrator
from deployforge.monitor.renderer import AttemptRenderer


def diagnose_cmd(
    ctx: typer.Context,
    binary: Path = typer.Argument(
        None, help="Binary to diagnose (default: the installed binary)."
    ),
) -> None:
    """Explain why a binary will or will not run on this host."""
    config = get_config(ctx)
    orchestrator = get_orchestrator(ctx)
    target = binary or config.install_path

    findings = orchestrator.probe.diagnose(target)
    console.print(f"[bold]{target}[/bold] on [cyan]{orchestrator.probe.host_arch}[/cyan]")
    console.print(AttemptRenderer(console=console).render_findings(findings))

    if not all(f.passed for f in findings):
        raise typer.Exit(code=1)
