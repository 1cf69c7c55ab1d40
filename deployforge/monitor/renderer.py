"""Rich terminal rendering of deployment attempts, reports and history.

Color scheme
------------
- green     : updated / passed
- cyan      : up to date
- blue      : planned (dry run)
- red       : aborted / failed check
- yellow    : rolled back
- bold red  : rollback failed (operator must intervene)
"""

from __future__ import annotations

from typing import Any

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deployforge.core.errors import ErrorKind, remediation_for
from deployforge.models.attempt import DeploymentAttempt, DeploymentOutcome
from deployforge.models.ledger import AttemptSummary, LedgerEntry
from deployforge.models.reports import DiagnosticFinding, VerificationReport


# ---------------------------------------------------------------------------
# Outcome -> Rich style mapping
# ---------------------------------------------------------------------------

_OUTCOME_STYLES: dict[DeploymentOutcome, str] = {
    DeploymentOutcome.UPDATED: "green",
    DeploymentOutcome.UP_TO_DATE: "cyan",
    DeploymentOutcome.PLANNED: "blue",
    DeploymentOutcome.ABORTED: "red",
    DeploymentOutcome.ROLLED_BACK: "yellow",
    DeploymentOutcome.ROLLBACK_FAILED: "bold red",
}

_OUTCOME_TITLES: dict[DeploymentOutcome, str] = {
    DeploymentOutcome.UPDATED: "Deployment succeeded",
    DeploymentOutcome.UP_TO_DATE: "Already up to date",
    DeploymentOutcome.PLANNED: "Dry run: nothing changed",
    DeploymentOutcome.ABORTED: "Deployment aborted (host untouched)",
    DeploymentOutcome.ROLLED_BACK: "Deployment failed, previous version restored",
    DeploymentOutcome.ROLLBACK_FAILED: "ROLLBACK FAILED: operator must intervene",
}


def _ok(passed: bool) -> str:
    return "[green]OK[/green]" if passed else "[red]FAIL[/red]"


class AttemptRenderer:
    """Renders deployforge results as Rich output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def render_attempt(self, attempt: DeploymentAttempt) -> Panel:
        outcome = attempt.outcome or DeploymentOutcome.ABORTED
        style = _OUTCOME_STYLES[outcome]

        summary = Table.grid(padding=(0, 2))
        summary.add_column(style="bold")
        summary.add_column()
        summary.add_row("Attempt", attempt.attempt_id)
        summary.add_row("Mode", attempt.mode + (" (dry run)" if attempt.dry_run else ""))
        summary.add_row("Installed", attempt.current_version or "-")
        summary.add_row("Target", attempt.target_version or "-")
        if attempt.strategy:
            summary.add_row("Strategy", attempt.strategy)
        if attempt.backup_id:
            summary.add_row("Backup", attempt.backup_id)
        summary.add_row("Exit code", str(int(attempt.exit_code)))

        parts: list[Any] = [summary]
        if attempt.plan:
            parts += [Text(""), self.render_plan(attempt)]
        if attempt.provision_plan:
            parts += [Text(""), self.render_provision_plan(attempt)]
        if attempt.error:
            parts += [Text(""), self.render_error(attempt.error, attempt)]
        if attempt.rollback_error:
            parts += [Text(""), self.render_error(attempt.rollback_error, attempt, rollback=True)]
        if attempt.report is not None and not attempt.report.passed:
            parts += [Text(""), self.render_report(attempt.report)]

        return Panel(
            Group(*parts),
            title=f"[{style}]{_OUTCOME_TITLES[outcome]}[/{style}]",
            border_style=style,
            padding=(1, 2),
        )

    def render_plan(self, attempt: DeploymentAttempt) -> Table:
        table = Table(title="Acquisition plan", show_header=True, header_style="bold cyan")
        table.add_column("Strategy", style="cyan")
        table.add_column("Applies", justify="center")
        table.add_column("Reason")
        for step in attempt.plan:
            marker = "[bold green]SELECTED[/bold green]" if step.selected else (
                "[green]yes[/green]" if step.applicable else "[dim]no[/dim]"
            )
            table.add_row(step.strategy, marker, step.reason)
        return table

    def render_provision_plan(self, attempt: DeploymentAttempt) -> Table:
        table = Table(title="Provisioning plan", show_header=True, header_style="bold cyan")
        table.add_column("Path", style="cyan")
        table.add_column("Action")
        table.add_column("Detail")
        for change in attempt.provision_plan:
            table.add_row(str(change.path), change.action, change.detail)
        return table

    def render_error(
        self,
        error: dict[str, Any],
        attempt: DeploymentAttempt | None = None,
        *,
        rollback: bool = False,
    ) -> Table:
        """Stage reached, error kind and remediation; per-strategy failures
        when acquisition failed."""
        table = Table.grid(padding=(0, 2))
        table.add_column(style="bold red" if rollback else "bold")
        table.add_column()
        label = "Rollback error" if rollback else "Error"
        stage = error.get("stage") or (
            attempt.failed_stage.value if attempt and attempt.failed_stage else "-"
        )
        table.add_row("Stage", stage)
        table.add_row(label, f"[red]{error.get('kind', '')}[/red]: {error.get('message', '')}")
        table.add_row("Remediation", f"[yellow]{error.get('remediation', '')}[/yellow]")

        for sub in error.get("attempts", []):
            strategy = sub.get("context", {}).get("strategy", "?")
            kind = ErrorKind(sub["kind"])
            table.add_row(
                f"  {strategy}",
                f"[red]{kind.value}[/red]: {sub.get('message', '')}\n"
                f"  [dim]{remediation_for(kind)}[/dim]",
            )
        if error.get("skipped"):
            table.add_row("Skipped", ", ".join(error["skipped"]))
        return table

    def print_attempt(self, attempt: DeploymentAttempt) -> None:
        self.console.print()
        self.console.print(self.render_attempt(attempt))
        self.console.print()

    # ------------------------------------------------------------------
    # Verification and diagnostics
    # ------------------------------------------------------------------

    def render_report(self, report: VerificationReport) -> Panel:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Check", min_width=14)
        table.add_column("Status", width=8, justify="center")
        table.add_column("Details")
        table.add_row("Probe", _ok(report.probe_ok), report.probe_outcome.value)
        table.add_row("Service", _ok(report.service_active), report.service_state)
        table.add_row(
            "Logs",
            _ok(not report.matched_patterns),
            ", ".join(report.matched_patterns) or "no fatal patterns",
        )
        parts: list[Any] = [table]
        for kind in report.reasons:
            parts.append(Text.from_markup(f"[red]{kind.value}[/red]: {remediation_for(kind)}"))
        if report.excerpt:
            parts.append(Panel(report.excerpt, title="excerpt", border_style="dim"))
        style = "green" if report.passed else "red"
        return Panel(
            Group(*parts),
            title=f"[bold {style}]Verification {'passed' if report.passed else 'failed'}[/bold {style}]",
            border_style=style,
        )

    def render_findings(self, findings: list[DiagnosticFinding]) -> Table:
        table = Table(title="Binary diagnostics", show_header=True, header_style="bold cyan")
        table.add_column("Check", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Details")
        for finding in findings:
            detail = finding.detail
            if not finding.passed and finding.remediation:
                detail += f"\n[yellow]{finding.remediation}[/yellow]"
            table.add_row(finding.check, _ok(finding.passed), detail)
        return table

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def render_history(self, summaries: list[AttemptSummary]) -> Table:
        table = Table(title="Deployment history", show_header=True, header_style="bold cyan")
        table.add_column("Attempt", style="cyan", no_wrap=True)
        table.add_column("Started")
        table.add_column("Mode")
        table.add_column("Versions")
        table.add_column("Strategy")
        table.add_column("Outcome")
        table.add_column("Error")
        for s in summaries:
            try:
                style = _OUTCOME_STYLES[DeploymentOutcome(s.outcome)]
            except ValueError:
                style = "white"
            table.add_row(
                s.attempt_id,
                s.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                s.mode,
                f"{s.current_version or '-'} -> {s.target_version or '-'}",
                s.strategy or "-",
                f"[{style}]{s.outcome or '-'}[/{style}] ({s.exit_code})",
                s.error_kind or "",
            )
        return table

    def render_entries(self, entries: list[LedgerEntry], *, chain_ok: bool) -> Table:
        chain = "[green]chain intact[/green]" if chain_ok else "[bold red]CHAIN BROKEN[/bold red]"
        table = Table(title=f"Transitions ({chain})", show_header=True, header_style="bold cyan")
        table.add_column("Time")
        table.add_column("Transition", style="cyan")
        table.add_column("Error kind")
        table.add_column("Detail")
        table.add_column("Hash", style="dim")
        for e in entries:
            detail = ", ".join(f"{k}={v}" for k, v in e.detail.items())
            table.add_row(
                e.timestamp_utc.strftime("%H:%M:%S"),
                e.state_transition,
                f"[red]{e.error_kind}[/red]" if e.error_kind else "",
                detail,
                e.entry_hash[:12],
            )
        return table
