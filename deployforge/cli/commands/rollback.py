"""``deployforge rollback``: restore the most recent backup."""

from __future__ import annotations

import typer

from deployforge.cli.context import finish, get_orchestrator


def rollback_cmd(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print the attempt as JSON."),
) -> None:
    """Put back the binary and service unit saved before the last install.

    Restarts the service only if it was running when the backup was taken.
    Exits 1 when there is no usable backup or the service does not come back.
    """
    attempt = get_orchestrator(ctx).rollback()
    finish(attempt, as_json=as_json)
