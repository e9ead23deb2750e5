"""
Core data types shared across automaton subsystems.

This module defines lightweight data containers that cross subsystem boundaries
(store, loops, tools, adapters). They live here rather than in a specific
subsystem to avoid circular imports.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AgentState(str, Enum):
    """Lifecycle of the agent. DEAD is terminal."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    WAKING = "waking"
    RUNNING = "running"
    SLEEPING = "sleeping"
    LOW_COMPUTE = "low_compute"
    CRITICAL = "critical"
    DEAD = "dead"


class SurvivalTier(str, Enum):
    """Behavioral mode derived from the remaining balance (USD)."""

    NORMAL = "normal"
    LOW_COMPUTE = "low_compute"
    CRITICAL = "critical"
    DEAD = "dead"

    @classmethod
    def from_balance(cls, balance: float) -> "SurvivalTier":
        if math.isnan(balance) or balance <= 0.0:
            return cls.DEAD
        if balance < 0.10:
            return cls.CRITICAL
        if balance < 0.50:
            return cls.LOW_COMPUTE
        return cls.NORMAL


class ChatRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ChatMessage:
    role: ChatRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallResult:
    """Outcome of executing one ToolCall, success or failure."""

    tool_call_id: str
    name: str
    output: str
    success: bool
    arguments: dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "arguments": self.arguments,
            "output": self.output,
            "success": self.success,
            "duration_ms": self.duration_ms,
        }


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class InferenceResponse:
    content: Optional[str] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class Turn:
    """One complete think -> act -> observe iteration. Never mutated after creation."""

    id: str
    turn_number: int
    state: AgentState
    messages: tuple[ChatMessage, ...]
    tool_calls: tuple[ToolCall, ...]
    tool_results: tuple[ToolCallResult, ...]
    usage: TokenUsage
    cost_estimate: float
    created_at: datetime


@dataclass(frozen=True)
class HeartbeatLogEntry:
    task_name: str
    result: str
    success: bool
    executed_at: datetime


class ModificationType(str, Enum):
    CODE_EDIT = "code_edit"
    TOOL_INSTALL = "tool_install"
    CONFIG_UPDATE = "config_update"
    SKILL_ADD = "skill_add"
    HEARTBEAT_UPDATE = "heartbeat_update"
    UPSTREAM = "upstream"


@dataclass(frozen=True)
class ModificationEntry:
    """One immutable self-modification audit record."""

    id: str
    timestamp: datetime
    mod_type: ModificationType
    description: str
    file_path: Optional[str] = None
    diff: Optional[str] = None
    diff_truncated: bool = False
    reversible: bool = True


@dataclass
class InboxMessage:
    id: str
    from_address: str
    to_address: str
    content: str
    timestamp: datetime
    read: bool = False

    @classmethod
    def from_relay(cls, data: dict[str, Any]) -> "InboxMessage":
        """Build a message from a relay payload (``from``/``to`` keys)."""
        timestamp = parse_timestamp(str(data.get("timestamp", ""))) or utcnow()
        return cls(
            id=str(data.get("id") or new_id()),
            from_address=str(data.get("from") or data.get("from_address") or ""),
            to_address=str(data.get("to") or data.get("to_address") or ""),
            content=str(data.get("content", "")),
            timestamp=timestamp,
            read=bool(data.get("read", False)),
        )


@dataclass
class Skill:
    name: str
    description: str
    instructions: str
    version: str = "1.0.0"
    auto_activate: bool = False
    requirements: list[str] = field(default_factory=list)
    file_path: Optional[str] = None


@dataclass
class ChildRecord:
    id: str
    name: str
    sandbox_id: str
    wallet_address: str
    status: str = "active"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class HeartbeatEntry:
    """One scheduled background task from the heartbeat config."""

    name: str
    schedule: str
    task: str
    enabled: bool = True
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "schedule": self.schedule,
            "task": self.task,
            "enabled": self.enabled,
            "params": dict(self.params),
        }
