"""Shared CLI plumbing: configuration, orchestrator construction, exit."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console

from deployforge.config import DeployConfig
from deployforge.core.orchestrator import Orchestrator
from deployforge.models.attempt import DeploymentAttempt
from deployforge.monitor.renderer import AttemptRenderer

console = Console()

OrchestratorFactory = Callable[[DeployConfig], Orchestrator]


def build_config(overrides: dict[str, Any], base: DeployConfig | None = None) -> DeployConfig:
    """Environment/.env settings with the given CLI overrides applied.

    Exits with code 1 when the resulting configuration is invalid.
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        if base is not None:
            if not values:
                return base
            return base.model_validate({**base.model_dump(), **values})
        return DeployConfig(**values)
    except ValidationError as exc:
        console.print(f"[bold red]Invalid configuration:[/bold red]\n{exc}")
        raise typer.Exit(code=1) from exc


def get_config(ctx: typer.Context) -> DeployConfig:
    return ctx.obj["config"]


def get_orchestrator(ctx: typer.Context) -> Orchestrator:
    factory: OrchestratorFactory = ctx.obj.get("orchestrator_factory") or Orchestrator
    return factory(get_config(ctx))


def finish(attempt: DeploymentAttempt, *, as_json: bool = False) -> None:
    """Print the attempt and exit with its exit code."""
    if as_json:
        console.print_json(attempt.model_dump_json())
    else:
        AttemptRenderer(console=console).print_attempt(attempt)
    raise typer.Exit(code=int(attempt.exit_code))
