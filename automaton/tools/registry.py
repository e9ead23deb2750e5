"""
Tool Registry — the automaton's catalog of actions.

The registry answers two questions for the turn loop: which tools to offer
the model this turn (all enabled tools, or only the essential ones when the
survival tier is critical), and which handler a model tool call names.
Lookups are exact; the executor turns a miss into a named failure.

Tool descriptions are prompts. They tell the model when a tool is worth its
cost, not just what it does.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import structlog

logger = structlog.get_logger(__name__)

# Ordered from least to most restrictive; unknown levels map to the last one.
RISK_LEVELS = ("safe", "caution", "dangerous")


@dataclass
class ToolDefinition:
    """
    One action the model can take.

    `essential` marks the small set still offered in the critical tier
    (sleep, request funding, read a file, run a command). A `timeout` of
    None means the executor's default applies.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Optional[Callable[..., Any]] = None
    risk_level: str = "safe"
    category: str = "general"
    enabled: bool = True
    essential: bool = False
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.risk_level not in RISK_LEVELS:
            logger.warning(
                "tool_registry.unknown_risk_level",
                tool=self.name,
                risk_level=self.risk_level,
            )
            self.risk_level = RISK_LEVELS[-1]

    def schema_for_model(self) -> dict[str, Any]:
        """The {name, description, input_schema} shape both inference clients accept."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._by_name: dict[str, ToolDefinition] = {}

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._by_name.values())

    def add(self, tool: ToolDefinition, *, replace: bool = False) -> None:
        """Add a tool. A second tool under the same name needs ``replace=True``."""
        previous = self._by_name.get(tool.name)
        if previous is not None and not replace:
            raise ValueError(
                f"duplicate tool name {tool.name!r} "
                f"(registered in category {previous.category!r})"
            )
        if previous is not None:
            logger.info("tool_registry.replaced", tool=tool.name, category=tool.category)
        self._by_name[tool.name] = tool
        logger.debug(
            "tool_registry.added",
            tool=tool.name,
            category=tool.category,
            essential=tool.essential,
        )

    def lookup(self, name: str) -> Optional[ToolDefinition]:
        return self._by_name.get(name)

    def offered(self, essential_only: bool = False) -> list[dict[str, Any]]:
        """Model-facing schemas for this turn, in registration order."""
        return [
            tool.schema_for_model()
            for tool in self._by_name.values()
            if tool.enabled and (tool.essential or not essential_only)
        ]
