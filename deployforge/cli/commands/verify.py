"""``deployforge verify``: check the installed service without changing it."""

from __future__ import annotations

import typer

from deployforge.cli.context import console, get_config, get_orchestrator
from deployforge.models.attempt import ExitCode
from deployforge.monitor.renderer import AttemptRenderer


def verify_cmd(
    ctx: typer.Context,
    timeout: float = typer.Option(
        None, "--timeout", "-t", help="Seconds to wait for the service to become active."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON."),
) -> None:
    """Probe the binary, query the supervisor and scan recent logs."""
    config = get_config(ctx)
    report = get_orchestrator(ctx).verify(timeout)

    if as_json:
        console.print_json(report.model_dump_json())
    else:
        console.print(f"[bold]{config.service_name}[/bold] at {config.install_path}")
        console.print(AttemptRenderer(console=console).render_report(report))

    raise typer.Exit(code=int(ExitCode.SUCCESS if report.passed else ExitCode.FAILURE))
