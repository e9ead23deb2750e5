"""The ``automaton`` command group.

Global flags land on ``ctx.obj`` for the subcommands: ``json`` switches
them to machine-readable output, ``verbose`` adds detail such as diffs and
paths, ``no_color`` plain text.
"""

from __future__ import annotations

import click

from automaton.cli.config_cmd import config_group
from automaton.cli.daemon_cmd import run_cmd
from automaton.cli.monitoring import audit_cmd, heartbeat_group, status_cmd


@click.group()
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of tables.")
@click.option("-v", "--verbose", is_flag=True, help="Include diffs, paths and other detail.")
@click.option("--no-color", is_flag=True, help="Plain output without ANSI styling.")
@click.pass_context
def cli(ctx: click.Context, as_json: bool, verbose: bool, no_color: bool) -> None:
    """Automaton: a self-sustaining autonomous agent runtime."""
    ctx.ensure_object(dict)
    ctx.obj.update(json=as_json, verbose=verbose, no_color=no_color)


for _command in (run_cmd, status_cmd, audit_cmd, heartbeat_group, config_group):
    cli.add_command(_command)
