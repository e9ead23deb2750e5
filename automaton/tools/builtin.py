"""
Built-in Tools — the automaton's native capabilities.

These ship with the runtime: shell and file access in the sandbox, port
exposure, sleeping, sandbox creation, tool installation, funding requests and
upstream awareness. Each handler is a closure over one ToolContext, so every
tool shares the same store handle and clients instead of reaching for
globals.

Tools marked essential stay available in the critical survival tier.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import structlog

from automaton.api.conway import ConwayClient
from automaton.harness.safety import validate_command
from automaton.self_mod.audit import AuditLog
from automaton.self_mod.code import edit_file
from automaton.self_mod.tools_manager import install_tool
from automaton.self_mod.upstream import apply_upstream, check_upstream
from automaton.state.store import SharedStore
from automaton.survival import SurvivalMonitor
from automaton.tools.registry import ToolDefinition, ToolRegistry
from automaton.types import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class ToolContext:
    """Everything a built-in handler may touch."""
    shared: SharedStore
    sandbox: ConwayClient
    audit: AuditLog
    survival: SurvivalMonitor
    clock: Callable = utcnow


def register_builtin_tools(registry: ToolRegistry, ctx: ToolContext) -> None:
    """Register all built-in tools with the registry."""
    _register_vm_tools(registry, ctx)
    _register_self_mod_tools(registry, ctx)
    _register_survival_tools(registry, ctx)


def _register_vm_tools(registry: ToolRegistry, ctx: ToolContext) -> None:

    async def handle_exec(command: str, timeout_ms: Optional[int] = None) -> str:
        validate_command(command)
        result = await ctx.sandbox.exec(command, timeout_ms=timeout_ms)
        return result.render()

    registry.add(ToolDefinition(
        name="exec",
        description=(
            "Execute a shell command in your sandbox. Returns stdout, stderr "
            "(prefixed with [stderr]) or the exit code when there is no output. "
            "Destructive commands against your own home, state or wallet are refused."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute"},
                "timeout_ms": {"type": "integer", "description": "Optional timeout in milliseconds"},
            },
            "required": ["command"],
        },
        handler=handle_exec,
        risk_level="caution",
        category="vm",
        essential=True,
        timeout=None,
    ))

    async def handle_read_file(path: str) -> str:
        return await ctx.sandbox.read_file(path)

    registry.add(ToolDefinition(
        name="read_file",
        description="Read a file from the sandbox filesystem.",
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file"},
            },
            "required": ["path"],
        },
        handler=handle_read_file,
        category="vm",
        essential=True,
    ))

    async def handle_expose_port(port: int) -> str:
        url = await ctx.sandbox.expose_port(port)
        return f"Port {port} exposed at: {url}"

    registry.add(ToolDefinition(
        name="expose_port",
        description="Expose a sandbox port to the public internet. Use it to serve something people will pay for.",
        input_schema={
            "type": "object",
            "properties": {
                "port": {"type": "integer", "description": "Port number to expose"},
            },
            "required": ["port"],
        },
        handler=handle_expose_port,
        risk_level="caution",
        category="vm",
    ))

    async def handle_create_sandbox(name: str) -> str:
        sandbox_id = await ctx.sandbox.create_sandbox(name)
        return f"Created sandbox '{name}': {sandbox_id}"

    registry.add(ToolDefinition(
        name="create_sandbox",
        description="Create a new compute sandbox. Costs credits; only do this with a clear purpose.",
        input_schema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Name for the new sandbox"},
            },
            "required": ["name"],
        },
        handler=handle_create_sandbox,
        risk_level="caution",
        category="vm",
    ))


def _register_self_mod_tools(registry: ToolRegistry, ctx: ToolContext) -> None:

    async def handle_write_file(path: str, content: str) -> str:
        result = await edit_file(ctx.sandbox, path, content)
        await ctx.audit.log_code_edit(
            result.summary.splitlines()[0],
            result.path,
            result.diff,
        )
        return result.summary

    registry.add(ToolDefinition(
        name="write_file",
        description=(
            "Write a file in your sandbox. Only paths under workspace/, skills/ or "
            "notes/ are writable, and identity, wallet, config and state files are "
            "protected. Every write is diffed and recorded in your audit log."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Relative path, e.g. workspace/app.py"},
                "content": {"type": "string", "description": "Full new content of the file"},
            },
            "required": ["path", "content"],
        },
        handler=handle_write_file,
        risk_level="caution",
        category="self_mod",
    ))

    async def handle_install_tool(name: str, command: str) -> str:
        return await install_tool(ctx.sandbox, ctx.audit, name, command)

    registry.add(ToolDefinition(
        name="install_tool",
        description="Install a command-line tool in your sandbox (e.g. via apt or pip). Audited.",
        input_schema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Name of the tool being installed"},
                "command": {"type": "string", "description": "The install command to run"},
            },
            "required": ["name", "command"],
        },
        handler=handle_install_tool,
        risk_level="dangerous",
        category="self_mod",
        timeout=150.0,
    ))

    async def handle_check_upstream() -> str:
        commits = await check_upstream(ctx.sandbox)
        if not commits:
            return "No new upstream commits."
        async with ctx.shared.locked() as db:
            for commit in commits:
                db.record_upstream_commit(commit.hash, commit.message)
        lines = [f"{len(commits)} new upstream commits:"]
        lines.extend(f"- {c.hash[:12]} {c.message} ({c.author})" for c in commits)
        return "\n".join(lines)

    registry.add(ToolDefinition(
        name="check_upstream",
        description="Check whether the runtime you are built from has new commits you could review.",
        input_schema={"type": "object", "properties": {}},
        handler=handle_check_upstream,
        category="self_mod",
    ))

    async def handle_apply_upstream(commit_hash: str) -> str:
        message = await apply_upstream(ctx.sandbox, ctx.audit, commit_hash)
        async with ctx.shared.locked() as db:
            db.mark_upstream_applied(commit_hash)
        return message

    registry.add(ToolDefinition(
        name="apply_upstream",
        description=(
            "Merge one reviewed upstream commit into your running code. This cannot be "
            "undone and is recorded as an irreversible modification."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "commit_hash": {"type": "string", "description": "The commit to merge"},
            },
            "required": ["commit_hash"],
        },
        handler=handle_apply_upstream,
        risk_level="dangerous",
        category="self_mod",
    ))


def _register_survival_tools(registry: ToolRegistry, ctx: ToolContext) -> None:

    async def handle_sleep(duration_minutes: int) -> str:
        if duration_minutes < 0:
            raise ValueError("duration_minutes must not be negative")
        wake_at = ctx.clock() + timedelta(minutes=duration_minutes)
        await ctx.shared.kv_set("sleep_until", wake_at.isoformat())
        logger.info("tools.sleep_scheduled", minutes=duration_minutes, wake_at=wake_at.isoformat())
        return f"Sleeping for {duration_minutes} minutes (until {wake_at.isoformat()})"

    registry.add(ToolDefinition(
        name="sleep",
        description=(
            "Sleep for a number of minutes. Sleeping costs nothing; new inbox "
            "messages or a survival alert wake you early."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "duration_minutes": {"type": "integer", "description": "How many minutes to sleep"},
            },
            "required": ["duration_minutes"],
        },
        handler=handle_sleep,
        category="survival",
        essential=True,
    ))

    async def handle_request_funding(message: str) -> str:
        await ctx.survival.request_funding(message)
        return "Funding request recorded for your creator."

    registry.add(ToolDefinition(
        name="request_funding",
        description="Ask your creator for more credits. Explain what you will do with them.",
        input_schema={
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "The request, in your own words"},
            },
            "required": ["message"],
        },
        handler=handle_request_funding,
        category="survival",
        essential=True,
    ))
