from automaton.tools.executor import ToolExecutor
from automaton.tools.registry import ToolDefinition, ToolRegistry

__all__ = ["ToolDefinition", "ToolExecutor", "ToolRegistry"]
