"""Daemon start command."""

from __future__ import annotations

import click


@click.command("run")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (overrides AUTOMATON_LOG_LEVEL).",
)
def run_cmd(log_level: str | None) -> None:
    """Start the automaton: turn loop and heartbeat (foreground)."""
    from automaton.main import configure_logging

    configure_logging(log_level)

    from automaton.daemon import run_daemon

    run_daemon()
