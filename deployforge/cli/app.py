"""Main Typer application: global options and command registration.

Entry point: ``deployforge`` (configured via pyproject.toml scripts).

Commands: deploy, update, rollback, verify, diagnose, history.
"""

from __future__ import annotations

from pathlib import Path

import typer

from deployforge.cli.commands.deploy import deploy_cmd, update_cmd
from deployforge.cli.commands.diagnose import diagnose_cmd
from deployforge.cli.commands.history import history_cmd
from deployforge.cli.commands.rollback import rollback_cmd
from deployforge.cli.commands.verify import verify_cmd
from deployforge.cli.context import build_config
from deployforge.cli.logging_config import setup_logging

app = typer.Typer(
    name="deployforge",
    help="Deployforge: safe, self-healing deployment of a native service daemon.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    service: str = typer.Option(None, "--service", help="Name of the managed service."),
    install_path: Path = typer.Option(
        None, "--install-path", help="Where the daemon binary is installed."
    ),
    unit_dir: Path = typer.Option(
        None, "--unit-dir", help="Directory holding systemd unit files."
    ),
    state_dir: Path = typer.Option(
        None, "--state-dir", help="Staging, backups, ledger and lock location."
    ),
    source_dir: Path = typer.Option(
        None, "--source-dir", help="Git checkout of the daemon's source."
    ),
    prebuilt_url: str = typer.Option(
        None, "--prebuilt-url", help="Prebuilt artifact URL; may contain {version} and {arch}."
    ),
    build_host: str = typer.Option(
        None, "--build-host", help="user@host to build on when the local build fails."
    ),
    retention: int = typer.Option(None, "--retention", help="Backups to keep (at least 2)."),
    verify_timeout: float = typer.Option(
        None, "--verify-timeout", help="Seconds to wait for the service to become active."
    ),
    probe_timeout: float = typer.Option(
        None, "--probe-timeout", help="Seconds allowed for the binary capability check."
    ),
    log_level: str = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    log_file: Path = typer.Option(
        None, "--log-file", help="Also write a DEBUG log to this file."
    ),
) -> None:
    """Resolve configuration once and share it with every subcommand."""
    ctx.ensure_object(dict)
    overrides = {
        "service_name": service,
        "install_path": install_path,
        "unit_dir": unit_dir,
        "state_dir": state_dir,
        "source_dir": source_dir,
        "prebuilt_url": prebuilt_url,
        "build_host": build_host,
        "backup_retention": retention,
        "verify_timeout": verify_timeout,
        "probe_timeout": probe_timeout,
        "log_level": log_level,
        "log_file": log_file,
    }
    config = build_config(overrides, base=ctx.obj.get("config"))
    ctx.obj["config"] = config
    setup_logging(config.log_level, config.log_file)


# Register subcommands
app.command(name="deploy", help="Build, install and verify the daemon.")(deploy_cmd)
app.command(name="update", help="Fetch upstream and deploy the newest commit.")(update_cmd)
app.command(name="rollback", help="Restore the most recent backup.")(rollback_cmd)
app.command(name="verify", help="Check the installed service without changing it.")(verify_cmd)
app.command(name="diagnose", help="Explain why a binary does or does not run.")(diagnose_cmd)
app.command(name="history", help="Browse recorded deployment attempts.")(history_cmd)


def main() -> None:
    """Entry point for the ``deployforge`` console script."""
    app()


if __name__ == "__main__":
    main()
