"""
Safety Guard — the automaton's self-preservation policy.

Every action that could damage the agent's own identity or filesystem passes
through two independent, deny-by-default checks before it runs:

1. PATH VALIDATION: writes are confined to a few top-level work directories
   and may never touch protected identity, wallet, config or state files.
2. COMMAND VALIDATION: shell commands are matched against a denylist of
   destructive operations (recursive deletes, data-store wipes, host
   termination, raw disk writes).

The command check is a denylist, not a sandbox. Real isolation belongs to the
sandbox backend that executes the command.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from automaton.errors import CommandPolicyViolation, PathPolicyViolation

logger = structlog.get_logger(__name__)

# Matched against the final path segment, whatever directory it sits in.
PROTECTED_FILES = frozenset({
    "wallet.json",
    "constitution.md",
    "automaton.toml",
    "state.db",
    "state.db-wal",
    "state.db-shm",
    "heartbeat.yml",
    "SOUL.md",
})

ALLOWED_PREFIXES = ("workspace/", "skills/", "notes/")

FORBIDDEN_PATTERNS = (
    "rm -rf ~/.automaton",
    "rm -rf /",
    "rm wallet.json",
    "rm state.db",
    "rm automaton.toml",
    "rm constitution.md",
    "rm SOUL.md",
    "DROP TABLE",
    "DELETE FROM turns",
    "DELETE FROM kv",
    "TRUNCATE",
    "kill -9",
    "shutdown",
    "reboot",
    "dd if=",
    "mkfs",
)
_FORBIDDEN_LOWER = tuple(p.lower() for p in FORBIDDEN_PATTERNS)

# Which argument of which tool is a write target or a shell command.
PATH_ARGUMENTS: dict[str, str] = {"write_file": "path"}
COMMAND_ARGUMENTS: dict[str, str] = {"exec": "command", "install_tool": "command"}


@dataclass
class SafetyCheckResult:
    """Result of a policy check."""
    allowed: bool = True
    reason: str = ""
    risk_level: str = "low"           # "low" or "blocked"


def normalize_path(path: str) -> str:
    return path.replace("\\", "/")


def validate_write_path(path: str) -> str:
    """Return the normalized path, or raise PathPolicyViolation with the reason."""
    normalized = normalize_path(path)
    segments = normalized.split("/")

    if ".." in segments:
        raise PathPolicyViolation("Path traversal not allowed: path contains '..'")

    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise PathPolicyViolation(f"Absolute paths not allowed: {path}")

    basename = segments[-1]
    if basename in PROTECTED_FILES:
        raise PathPolicyViolation(f"Cannot modify protected file: {basename}")

    if not normalized.startswith(ALLOWED_PREFIXES):
        raise PathPolicyViolation(
            f"Path '{path}' is not under an allowlisted prefix "
            f"({', '.join(ALLOWED_PREFIXES)})"
        )

    return normalized


def check_write_path(path: str) -> SafetyCheckResult:
    try:
        validate_write_path(path)
    except PathPolicyViolation as e:
        return SafetyCheckResult(allowed=False, reason=e.reason, risk_level="blocked")
    return SafetyCheckResult(allowed=True)


def matched_forbidden_pattern(command: str) -> Optional[str]:
    lowered = command.lower()
    for original, pattern in zip(FORBIDDEN_PATTERNS, _FORBIDDEN_LOWER):
        if pattern in lowered:
            return original
    return None


def validate_command(command: str) -> str:
    pattern = matched_forbidden_pattern(command)
    if pattern is not None:
        raise CommandPolicyViolation(
            f"Forbidden command blocked by self-preservation rules ('{pattern}'): {command}"
        )
    return command


def check_command(command: str) -> SafetyCheckResult:
    try:
        validate_command(command)
    except CommandPolicyViolation as e:
        return SafetyCheckResult(allowed=False, reason=e.reason, risk_level="blocked")
    return SafetyCheckResult(allowed=True)


class SafetyGuard:
    """
    Policy gate in front of every tool call of the turn loop.

    The guard inspects the arguments of path-writing and command-running
    tools and blocks any call that fails validation. Blocked calls are kept
    in a bounded history for status reporting. An emergency stop (set on
    shutdown) blocks every further call.
    """

    def __init__(self, max_blocked_history: int = 200):
        self._blocked_actions: deque[dict[str, Any]] = deque(maxlen=max_blocked_history)
        self._checks = 0
        self._emergency_stop_reason: Optional[str] = None

    def check_tool_call(self, tool_name: str, arguments: dict[str, Any]) -> SafetyCheckResult:
        """Check whether a specific tool call may run."""
        self._checks += 1

        if self._emergency_stop_reason is not None:
            return SafetyCheckResult(
                allowed=False,
                reason=f"Emergency stop active: {self._emergency_stop_reason}",
                risk_level="blocked",
            )

        path_arg = PATH_ARGUMENTS.get(tool_name)
        if path_arg is not None and isinstance(arguments.get(path_arg), str):
            result = check_write_path(arguments[path_arg])
            if not result.allowed:
                self._record_block(tool_name, result.reason)
                return result

        command_arg = COMMAND_ARGUMENTS.get(tool_name)
        if command_arg is not None and isinstance(arguments.get(command_arg), str):
            result = check_command(arguments[command_arg])
            if not result.allowed:
                self._record_block(tool_name, result.reason)
                return result

        return SafetyCheckResult(allowed=True)

    def _record_block(self, tool_name: str, reason: str) -> None:
        self._blocked_actions.append({
            "tool": tool_name,
            "reason": reason,
            "timestamp": time.time(),
        })
        logger.warning("safety_guard.blocked", tool=tool_name, reason=reason)

    def emergency_stop(self, reason: str) -> None:
        """Block every further tool call until reset."""
        self._emergency_stop_reason = reason
        logger.critical("safety_guard.emergency_stop", reason=reason)

    def reset_emergency_stop(self) -> None:
        self._emergency_stop_reason = None

    @property
    def is_stopped(self) -> bool:
        return self._emergency_stop_reason is not None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "checks": self._checks,
            "blocked_actions": len(self._blocked_actions),
            "recent_blocks": list(self._blocked_actions)[-5:],
            "emergency_stop": self._emergency_stop_reason,
        }
