"""Exception hierarchy shared across the automaton runtime."""

from __future__ import annotations


class AutomatonError(Exception):
    """Base class for all automaton-specific failures."""


class ConfigError(AutomatonError):
    """Configuration could not be loaded or is invalid."""


class StoreError(AutomatonError):
    """The persisted state store failed a read or write."""


class PolicyViolation(AutomatonError):
    """An action was rejected by the self-modification safety layer.

    Policy violations are terminal for the action: they are reported back to
    the agent as a named failure and are never retried.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PathPolicyViolation(PolicyViolation):
    """A write target failed path validation."""


class CommandPolicyViolation(PolicyViolation):
    """A shell command matched the destructive-command denylist."""


class InferenceError(AutomatonError):
    """The inference backend returned an error or an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SandboxError(AutomatonError):
    """The sandbox backend rejected or failed a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class HeartbeatError(AutomatonError):
    """A heartbeat tick could not record its outcome."""


class UnknownTaskError(HeartbeatError):
    """A heartbeat entry names a task that is not registered."""


class ToolInstallError(AutomatonError):
    """Installing a tool in the sandbox failed."""


class UpstreamError(AutomatonError):
    """Fetching or merging upstream code failed."""
