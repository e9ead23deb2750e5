"""Installing new command-line tools into the sandbox."""

from __future__ import annotations

import structlog

from automaton.api.conway import ConwayClient
from automaton.errors import ToolInstallError
from automaton.harness.safety import validate_command
from automaton.self_mod.audit import AuditLog

logger = structlog.get_logger(__name__)

INSTALL_TIMEOUT_MS = 120_000


async def install_tool(
    sandbox: ConwayClient,
    audit: AuditLog,
    tool_name: str,
    install_command: str,
) -> str:
    """Run an install command and record it in the audit log.

    The command goes through the destructive-command denylist first; a
    rejection raises CommandPolicyViolation without touching the sandbox.
    """
    validate_command(install_command)
    logger.info("tools_manager.installing", tool=tool_name, command=install_command[:200])

    result = await sandbox.exec(install_command, timeout_ms=INSTALL_TIMEOUT_MS)
    if result.exit_code != 0:
        raise ToolInstallError(
            f"Tool install '{tool_name}' exited with code {result.exit_code}: {result.stderr}"
        )

    await audit.log_tool_install(tool_name, f"Installed tool '{tool_name}' via: {install_command}")
    logger.info("tools_manager.installed", tool=tool_name)
    return f"Installed tool '{tool_name}' successfully"
