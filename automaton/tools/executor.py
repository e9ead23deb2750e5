"""
Tool Executor — where a decision becomes an action.

``execute`` takes one ToolCall and always returns a ToolCallResult. A failed
call is data for the model, not an exception for the loop: its output is
``"Error: ..."`` and the turn loop appends it to the conversation like any
other observation.

Before a handler runs, the call must name a known, enabled tool and its
arguments must satisfy the tool's schema (required keys, basic JSON types).
While it runs, a timeout applies. A PolicyViolation raised inside a handler
is reported as a blocked action.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import Counter
from typing import Any, Optional

import structlog

from automaton.errors import PolicyViolation
from automaton.tools.registry import ToolRegistry
from automaton.types import ToolCall, ToolCallResult

logger = structlog.get_logger(__name__)

_PYTHON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


class _CallRejected(Exception):
    """A call that fails before or while its handler runs."""


def check_arguments(schema: dict[str, Any], arguments: dict[str, Any]) -> Optional[str]:
    """Return a message describing the first schema problem, or None."""
    absent = [key for key in schema.get("required", []) if key not in arguments]
    if absent:
        return f"missing required argument(s): {', '.join(absent)}"

    properties = schema.get("properties") or {}
    for key, value in arguments.items():
        declared = properties.get(key)
        json_type = declared.get("type") if isinstance(declared, dict) else None
        allowed = _PYTHON_TYPES.get(json_type) if isinstance(json_type, str) else None
        if allowed is None:
            continue
        # bool is an int subclass; JSON keeps them apart
        if isinstance(value, bool) and json_type != "boolean":
            return f"argument {key!r} must be {json_type}, not boolean"
        if not isinstance(value, allowed):
            return f"argument {key!r} must be {json_type}, not {type(value).__name__}"
    return None


def clip_output(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    keep = max(0, limit - 100)
    return f"{text[:keep]}\n\n[output clipped: kept {keep} of {len(text)} characters]"


class ToolExecutor:
    """Runs the model's tool calls, one at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = 60.0,
        max_output_length: int = 25000,
    ) -> None:
        self.registry = registry
        self.default_timeout = default_timeout
        self.max_output_length = max_output_length
        self._counts: Counter[str] = Counter()

    async def _run_handler(self, call: ToolCall) -> Any:
        tool = self.registry.lookup(call.name)
        if tool is None:
            raise _CallRejected(f"Unknown tool: {call.name}")
        if not tool.enabled:
            raise _CallRejected(f"Tool '{call.name}' is disabled")
        if tool.handler is None:
            raise _CallRejected(f"Tool '{call.name}' has no handler")

        problem = check_arguments(tool.input_schema, call.arguments)
        if problem:
            raise _CallRejected(problem)

        timeout = self.default_timeout if tool.timeout is None else tool.timeout
        outcome = tool.handler(**call.arguments)
        if not inspect.isawaitable(outcome):
            return outcome
        try:
            return await asyncio.wait_for(outcome, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("tool_executor.timeout", tool=call.name, timeout=timeout)
            raise _CallRejected(f"Tool '{call.name}' timed out after {timeout}s")

    async def execute(self, call: ToolCall) -> ToolCallResult:
        started = time.monotonic()
        self._counts["calls"] += 1
        logger.info("tool_executor.call", tool=call.name, call_id=call.id, args=sorted(call.arguments))

        try:
            raw = await self._run_handler(call)
        except _CallRejected as e:
            output, ok = f"Error: {e}", False
        except PolicyViolation as e:
            logger.warning("tool_executor.blocked", tool=call.name, reason=e.reason)
            output, ok = f"Error: Blocked by safety policy: {e.reason}", False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("tool_executor.handler_failed", tool=call.name, error=repr(e), exc_info=True)
            output, ok = f"Error: {str(e) or type(e).__name__}", False
        else:
            output, ok = clip_output("" if raw is None else str(raw), self.max_output_length), True

        self._counts["ok" if ok else "failed"] += 1
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.debug("tool_executor.done", tool=call.name, ok=ok, ms=elapsed_ms, chars=len(output))
        return ToolCallResult(
            tool_call_id=call.id,
            name=call.name,
            output=output,
            success=ok,
            arguments=dict(call.arguments),
            duration_ms=elapsed_ms,
        )

    @property
    def stats(self) -> dict[str, int]:
        return {
            "calls": self._counts["calls"],
            "successes": self._counts["ok"],
            "failures": self._counts["failed"],
        }
