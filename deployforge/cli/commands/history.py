"""``deployforge history [ATTEMPT_ID]``: browse the deployment ledger."""

from __future__ import annotations

import typer

from deployforge.cli.context import console, get_config
from deployforge.core.run_ledger import LedgerIntegrityError, RunLedger
from deployforge.monitor.renderer import AttemptRenderer


def history_cmd(
    ctx: typer.Context,
    attempt_id: str = typer.Argument(
        None, help="Show the transition log of this attempt."
    ),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of attempts to list."),
) -> None:
    """List recent attempts, or one attempt's hash-chained transitions."""
    config = get_config(ctx)
    if not config.ledger_path.exists():
        console.print(f"[dim]No deployments recorded yet ({config.ledger_path}).[/dim]")
        return

    ledger = RunLedger(config.ledger_path)
    renderer = AttemptRenderer(console=console)

    if attempt_id is None:
        summaries = ledger.list_attempts(limit=limit)
        if not summaries:
            console.print("[dim]No deployments recorded yet.[/dim]")
            return
        console.print(renderer.render_history(summaries))
        return

    entries = ledger.get_attempt_entries(attempt_id)
    if not entries:
        console.print(f"[bold red]Unknown attempt:[/bold red] {attempt_id}")
        raise typer.Exit(code=1)

    try:
        chain_ok = ledger.verify_chain(attempt_id)
    except LedgerIntegrityError as exc:
        console.print(f"[bold red]Ledger integrity error:[/bold red] {exc}")
        chain_ok = False
    console.print(renderer.render_entries(entries, chain_ok=chain_ok))

    attempt = ledger.get_attempt(attempt_id)
    if attempt is not None:
        console.print(renderer.render_attempt(attempt))
    if not chain_ok:
        raise typer.Exit(code=1)
