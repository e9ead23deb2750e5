"""Read-only commands: ``status``, ``audit`` and ``heartbeat list|log``.

They open the state database directly and read-only, so they answer
whether or not the daemon is running and never migrate or write to it.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterator

import click

from automaton.cli.formatters import badge, humanize_seconds, make_console, rows_table, when
from automaton.config import AutomatonConfig
from automaton.errors import ConfigError, StoreError
from automaton.heartbeat.scheduler import load_heartbeat_entries
from automaton.state.store import StateStore
from automaton.survival import (
    DEFAULT_CREDITS_BALANCE,
    DEFAULT_USDC_BALANCE,
    parse_balance,
    tier_for_balance,
)
from automaton.types import HeartbeatLogEntry, SurvivalTier, parse_timestamp, utcnow


def _config() -> AutomatonConfig:
    try:
        return AutomatonConfig.load()
    except ConfigError as e:
        raise click.ClickException(str(e))


@contextmanager
def _store(config: AutomatonConfig) -> Iterator[StateStore]:
    db_path = config.paths.db_path
    if not db_path.exists():
        raise click.ClickException(f"No state database at {db_path}. Start with: automaton run")
    store = StateStore(db_path)
    try:
        store.initialize(read_only=True)
    except StoreError as e:
        raise click.ClickException(str(e))
    try:
        yield store
    finally:
        store.close()


def _emit_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2))


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@click.command("status")
@click.pass_obj
def status_cmd(obj: dict[str, Any]) -> None:
    """Agent state, survival tier, balances and activity counters."""
    config = _config()
    with _store(config) as store:
        credits = parse_balance(store.kv_get("credits_balance"), DEFAULT_CREDITS_BALANCE)
        usdc = parse_balance(store.kv_get("usdc_balance"), DEFAULT_USDC_BALANCE)
        tier = tier_for_balance(credits + usdc)
        snapshot = {
            "name": config.identity.name,
            "wallet": config.identity.wallet_address,
            "state": store.get_agent_state().value,
            "tier": tier.value,
            "model": config.effective_model(tier is not SurvivalTier.NORMAL),
            "active_children": store.active_children_count(),
            "credits_balance": credits,
            "usdc_balance": usdc,
            "last_heartbeat": store.kv_get("last_heartbeat"),
            "sleep_until": store.kv_get("sleep_until"),
            **store.stats(),
        }

    if obj.get("json"):
        _emit_json(snapshot)
        return

    console = make_console(obj)
    console.print(f"[bold]{snapshot['name']}[/bold]  {snapshot['wallet'] or '(no wallet)'}")
    console.print(badge(snapshot["state"], "state"))
    console.print(badge(snapshot["tier"], "tier"))
    console.print(f"  Credits: {credits:.4f}  USDC: {usdc:.6f}  Model: {snapshot['model']}")
    console.print(
        f"  Turns: {snapshot['turns']}  Children: {snapshot['active_children']}  "
        f"Modifications: {snapshot['modifications']}  Unread: {snapshot['inbox_unread']}"
    )
    console.print(f"  Last heartbeat: {snapshot['last_heartbeat'] or 'never'}")
    wake_at = parse_timestamp(snapshot["sleep_until"] or "")
    if wake_at is not None:
        remaining = (wake_at - utcnow()).total_seconds()
        console.print(f"  Sleeping until {when(wake_at)} ({humanize_seconds(remaining)} left)")
    if obj.get("verbose"):
        console.print(f"  Database: {snapshot['db_path']}  Skills: {snapshot['skills']}")


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------


@click.command("audit")
@click.option("--limit", "-n", default=20, show_default=True, help="How many entries to show.")
@click.pass_obj
def audit_cmd(obj: dict[str, Any], limit: int) -> None:
    """Most recent self-modifications, newest first."""
    with _store(_config()) as store:
        entries = store.recent_modifications(limit)

    if obj.get("json"):
        _emit_json([
            {
                "id": e.id,
                "timestamp": e.timestamp.isoformat(),
                "type": e.mod_type.value,
                "description": e.description,
                "file_path": e.file_path,
                "diff": e.diff,
                "diff_truncated": e.diff_truncated,
                "reversible": e.reversible,
            }
            for e in entries
        ])
        return

    console = make_console(obj)
    if not entries:
        console.print("No modifications recorded.")
        return
    console.print(rows_table(
        "Self-modifications",
        ["When", "Type", "File", "Description"],
        ([when(e.timestamp), e.mod_type.value, e.file_path or "-", e.description] for e in entries),
    ))
    if obj.get("verbose"):
        for e in entries:
            if e.diff:
                console.rule(e.id)
                console.print(e.diff, markup=False)


# ---------------------------------------------------------------------------
# heartbeat
# ---------------------------------------------------------------------------


@click.group("heartbeat")
def heartbeat_group() -> None:
    """The heartbeat schedule and what it last did."""


def _latest_runs(config: AutomatonConfig) -> dict[str, HeartbeatLogEntry]:
    """Newest log entry per heartbeat name; empty before the daemon's first run."""
    if not config.paths.db_path.exists():
        return {}
    latest: dict[str, HeartbeatLogEntry] = {}
    with _store(config) as store:
        for entry in store.recent_heartbeats(500):
            latest.setdefault(entry.task_name, entry)
    return latest


@heartbeat_group.command("list")
@click.pass_obj
def heartbeat_list(obj: dict[str, Any]) -> None:
    """Configured entries with their last outcome."""
    config = _config()
    try:
        entries = load_heartbeat_entries(config.heartbeat.config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))
    latest = _latest_runs(config)

    if obj.get("json"):
        _emit_json([
            {
                **e.to_dict(),
                "last_run": latest[e.name].executed_at.isoformat() if e.name in latest else None,
                "last_success": latest[e.name].success if e.name in latest else None,
            }
            for e in entries
        ])
        return

    def outcome(name: str) -> str:
        if name not in latest:
            return "-"
        return "ok" if latest[name].success else "failed"

    make_console(obj).print(rows_table(
        "Heartbeat entries",
        ["Name", "Schedule", "Task", "Enabled", "Last"],
        ([e.name, e.schedule, e.task, "yes" if e.enabled else "no", outcome(e.name)] for e in entries),
    ))


@heartbeat_group.command("log")
@click.option("--limit", "-n", default=20, show_default=True, help="How many entries to show.")
@click.pass_obj
def heartbeat_log(obj: dict[str, Any], limit: int) -> None:
    """Recent heartbeat task results, newest first."""
    with _store(_config()) as store:
        entries = store.recent_heartbeats(limit)

    if obj.get("json"):
        _emit_json([
            {
                "task": e.task_name,
                "result": e.result,
                "success": e.success,
                "executed_at": e.executed_at.isoformat(),
            }
            for e in entries
        ])
        return
    make_console(obj).print(rows_table(
        "Heartbeat log",
        ["When", "Task", "Status", "Result"],
        ([when(e.executed_at), e.task_name, "ok" if e.success else "failed", e.result] for e in entries),
    ))
