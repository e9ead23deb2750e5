"""``automaton config``: inspect and edit automaton.toml by dotted key.

Edits made with ``set`` are audited like any other self-modification.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import click
import tomli_w

from automaton.config import AutomatonConfig
from automaton.config_file import (
    CONFIG_FILENAME,
    coerce_cli_value,
    find_config,
    get_value,
    load_config,
    set_value,
    write_config,
)
from automaton.errors import ConfigError, StoreError
from automaton.self_mod.audit import AuditLog
from automaton.self_mod.code import compute_diff
from automaton.state.store import SharedStore, StateStore


def _read(path: Path) -> dict[str, Any]:
    try:
        return load_config(path)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Cannot read {path}: {e}")


def _flatten(data: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    pairs: list[tuple[str, Any]] = []
    for key in sorted(data):
        value = data[key]
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            pairs.extend(_flatten(value, f"{dotted}."))
        else:
            pairs.append((dotted, value))
    return pairs


@click.group("config", invoke_without_command=True)
@click.pass_context
def config_group(ctx: click.Context) -> None:
    """Show or edit automaton.toml. Without a subcommand, print every key."""
    if ctx.invoked_subcommand is not None:
        return
    path = find_config()
    if path is None:
        click.echo(f"No {CONFIG_FILENAME}; running on defaults and environment.")
        return
    click.echo(f"# {path}")
    pairs = _flatten(_read(path))
    if not pairs:
        click.echo("# (empty)")
    for key, value in pairs:
        click.echo(f"{key} = {value!r}")


@config_group.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Print the value stored under KEY (e.g. loop.max_tool_calls_per_turn)."""
    path = find_config()
    if path is None:
        raise click.ClickException(f"No {CONFIG_FILENAME} to read from")
    try:
        value = get_value(_read(path), key)
    except (KeyError, ValueError):
        raise click.ClickException(f"{key} is not set in {path}")
    click.echo(repr(value))


async def _audit_change(db_path: Path, description: str, diff: str) -> None:
    store = StateStore(db_path)
    store.initialize()
    try:
        await AuditLog(SharedStore(store)).log_config_update(description, diff)
    finally:
        store.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Store VALUE under KEY, creating automaton.toml in the cwd if needed.

    The change is appended to the agent's modification audit log.
    """
    try:
        db_path = AutomatonConfig.load().paths.db_path
    except ConfigError as e:
        raise click.ClickException(str(e))
    path = find_config() or Path.cwd() / CONFIG_FILENAME
    data = _read(path) if path.is_file() else {}
    before = tomli_w.dumps(data)
    parsed = coerce_cli_value(value)
    try:
        set_value(data, key, parsed)
    except ValueError as e:
        raise click.ClickException(str(e))
    write_config(path, data)

    diff = compute_diff(before, tomli_w.dumps(data), CONFIG_FILENAME)
    try:
        asyncio.run(_audit_change(db_path, f"Set {key} = {parsed!r} from the CLI", diff))
    except StoreError as e:
        raise click.ClickException(f"{path} was updated but the audit entry failed: {e}")
    click.echo(f"{key} = {parsed!r}  ({path})")
