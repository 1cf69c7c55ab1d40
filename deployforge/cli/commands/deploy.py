"""``deployforge deploy`` and ``deployforge update``.

Both run one full deployment attempt. ``update`` first fetches the source
remote and targets the upstream head of the current branch; ``deploy``
targets ``--source`` (default: the configured ref, ``HEAD``).

Exit codes: 0 updated, 1 aborted or rollback failed, 2 already up to
date, 3 dry run, 4 rolled back after a failure.
"""

from __future__ import annotations

import typer

from deployforge.cli.context import finish, get_orchestrator
from deployforge.core.cancellation import CancellationToken, cancel_on_signals


def deploy_cmd(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False, "--dry-run", "-n", help="Resolve and plan only; change nothing."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Deploy even if the target version is installed."
    ),
    source: str = typer.Option(
        None, "--source", "-s", help="Git ref to deploy (default: configured source_ref)."
    ),
    version: str = typer.Option(
        None, "--version", help="Pin the target version instead of deriving it from git."
    ),
    deadline: float = typer.Option(
        None, "--deadline", help="Cancel the attempt after this many seconds."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the attempt as JSON."),
) -> None:
    """Build, install and verify the daemon, rolling back on failure."""
    orchestrator = get_orchestrator(ctx)
    with cancel_on_signals(CancellationToken(deadline)) as token:
        attempt = orchestrator.deploy(
            dry_run=dry_run,
            force=force,
            source_ref=source,
            target_version=version,
            cancel=token,
        )
    finish(attempt, as_json=as_json)


def update_cmd(
    ctx: typer.Context,
    dry_run: bool = typer.Option(
        False, "--dry-run", "-n", help="Plan against the last fetched upstream; fetch nothing, change nothing."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Redeploy even if already up to date."
    ),
    deadline: float = typer.Option(
        None, "--deadline", help="Cancel the attempt after this many seconds."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the attempt as JSON."),
) -> None:
    """Fetch the source remote and deploy its newest commit."""
    orchestrator = get_orchestrator(ctx)
    with cancel_on_signals(CancellationToken(deadline)) as token:
        attempt = orchestrator.update(dry_run=dry_run, force=force, cancel=token)
    finish(attempt, as_json=as_json)
