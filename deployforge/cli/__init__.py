"""Deployforge CLI: Typer-based command-line interface.

Provides the ``deployforge`` command with subcommands for deploying,
updating, rolling back and verifying the managed daemon, diagnosing its
binary and browsing the deployment ledger.

All output uses Rich for formatted terminal display.
"""
