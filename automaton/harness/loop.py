"""
The Turn Loop — think, act, observe, pay.

This is the automaton's main runtime. Each iteration is one turn:

    sleeping?      -> wait and look again
    dead?          -> persist DEAD and stop for good
    prompt + context from the store
    response = inference.chat(model, messages, tools)
    for call in response.tool_calls: safety check, execute, observe
    persist the Turn, mark RUNNING, pause

Inference failures are counted; after too many in a row the loop puts the
agent to sleep for a few minutes instead of burning credits on a broken
upstream. Tool failures are not loop failures: they are appended to the
conversation so the model can correct itself on the next turn.

The loop never holds the store lock across a network call or a timer, and
every wait is cut short by the shared cancellation event.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional

import structlog

from automaton.agent.context import build_messages, build_turn_context
from automaton.agent.prompt import PromptBuilder
from automaton.api.inference import InferenceClient, estimate_cost
from automaton.config import InferenceConfig, LoopConfig
from automaton.errors import StoreError
from automaton.harness.safety import SafetyGuard
from automaton.state.store import SharedStore
from automaton.survival import SurvivalMonitor
from automaton.tools.executor import ToolExecutor
from automaton.types import (
    AgentState,
    ChatMessage,
    ChatRole,
    SurvivalTier,
    ToolCall,
    ToolCallResult,
    Turn,
    new_id,
    parse_timestamp,
    utcnow,
)

logger = structlog.get_logger(__name__)


class TurnOutcome(str, Enum):
    """How one iteration of the loop ended."""

    SLEPT = "slept"
    DEAD = "dead"
    INFERENCE_FAILED = "inference_failed"
    ENTERED_SLEEP = "entered_sleep"
    COMPLETED = "completed"
    IDLE = "idle"
    CANCELLED = "cancelled"


class TurnLoop:
    def __init__(
        self,
        shared: SharedStore,
        inference: InferenceClient,
        executor: ToolExecutor,
        survival: SurvivalMonitor,
        prompt_builder: PromptBuilder,
        safety: SafetyGuard,
        loop_config: LoopConfig,
        inference_config: InferenceConfig,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable = utcnow,
    ):
        self._shared = shared
        self._inference = inference
        self._executor = executor
        self._survival = survival
        self._prompt_builder = prompt_builder
        self._safety = safety
        self._config = loop_config
        self._inference_config = inference_config
        self._cancel = cancel_event or asyncio.Event()
        self._clock = clock

        # Owned by this loop only; persisted turns carry their own snapshot.
        self._history: list[ChatMessage] = []
        self._consecutive_errors = 0

        self._total_turns = 0
        self._total_tool_calls = 0
        self._total_cost = 0.0

    @property
    def history(self) -> list[ChatMessage]:
        return list(self._history)

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancellation arrived first."""
        if self._cancel.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._cancel.is_set()
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self) -> None:
        """Run turns until the agent dies or shutdown is requested."""
        logger.info("turn_loop.started")
        while not self._cancel.is_set():
            outcome = await self.run_once()
            if outcome in (TurnOutcome.DEAD, TurnOutcome.CANCELLED):
                break
        logger.info("turn_loop.stopped", turns=self._total_turns, cancelled=self._cancel.is_set())

    async def run_once(self) -> TurnOutcome:
        if self._cancel.is_set():
            return TurnOutcome.CANCELLED

        # --- 1. Sleep gate ---
        if await self._still_sleeping():
            if await self._wait(self._config.sleep_poll_seconds):
                return TurnOutcome.CANCELLED
            return TurnOutcome.SLEPT

        # --- 2. Survival ---
        survival = await self._survival.check()
        if survival.tier is SurvivalTier.DEAD:
            logger.warning("turn_loop.dead", balance=survival.total_balance)
            await self._shared.set_agent_state(AgentState.DEAD)
            return TurnOutcome.DEAD

        # --- 3-4. Prompt, context, model ---
        tools = self._executor.registry.offered(
            essential_only=survival.tier is SurvivalTier.CRITICAL
        )
        system_prompt = await self._prompt_builder.build(self._shared, survival.tier, tools)
        turn_context = await build_turn_context(self._shared)
        messages = build_messages(
            system_prompt,
            turn_context,
            self._history,
            window=self._config.context_window_messages,
        )
        model = (
            self._inference_config.inference_model
            if survival.tier is SurvivalTier.NORMAL
            else self._inference_config.low_compute_model
        )

        # --- 5-6. Inference ---
        try:
            response = await self._inference.chat(
                model,
                messages,
                tools=tools,
                max_tokens=self._inference_config.max_tokens_per_turn,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._on_inference_failure(e)

        # --- 7. Observe ---
        self._consecutive_errors = 0
        async with self._shared.locked() as db:
            turn_number = db.next_turn_number()

        if response.content:
            logger.info("turn_loop.response", turn=turn_number, content=response.content[:200])
            self._history.append(ChatMessage(role=ChatRole.ASSISTANT, content=response.content))

        # --- 8. Act ---
        results = await self._execute_tool_calls(turn_number, response.tool_calls)

        # --- 9-10. Persist ---
        cost = estimate_cost(model, response.usage)
        self._total_cost += cost
        turn = Turn(
            id=new_id(),
            turn_number=turn_number,
            state=AgentState.RUNNING,
            messages=tuple(messages),
            tool_calls=tuple(response.tool_calls),
            tool_results=tuple(results),
            usage=response.usage,
            cost_estimate=cost,
            created_at=self._clock(),
        )
        await self._persist_turn(turn)
        self._total_turns += 1

        # --- 13. Trim history (persisted turns are unaffected) ---
        if len(self._history) > self._config.history_max_messages:
            self._history = self._history[-self._config.history_keep_messages:]

        # --- 11-12. Idle backoff and politeness pause ---
        outcome = TurnOutcome.COMPLETED
        if not response.content and not response.tool_calls:
            logger.info("turn_loop.idle", turn=turn_number, sleep_seconds=self._config.idle_sleep_seconds)
            outcome = TurnOutcome.IDLE
            if await self._wait(self._config.idle_sleep_seconds):
                return TurnOutcome.CANCELLED
        if await self._wait(self._config.turn_pause_seconds):
            return TurnOutcome.CANCELLED
        return outcome

    async def _still_sleeping(self) -> bool:
        now = self._clock()
        async with self._shared.locked() as db:
            raw = db.kv_get("sleep_until")
            if raw is None:
                return False
            wake_at = parse_timestamp(raw)
            if wake_at is not None and now < wake_at:
                sleeping = True
            else:
                # Expired or unparseable: either way the agent is awake now.
                db.kv_delete("sleep_until")
                sleeping = False
        if sleeping:
            logger.debug("turn_loop.sleeping", until=raw)
        return sleeping

    async def _on_inference_failure(self, error: Exception) -> TurnOutcome:
        self._consecutive_errors += 1
        logger.error(
            "turn_loop.inference_failed",
            error=str(error),
            error_type=type(error).__name__,
            consecutive_errors=self._consecutive_errors,
            max_consecutive_errors=self._config.max_consecutive_errors,
        )

        outcome = TurnOutcome.INFERENCE_FAILED
        if self._consecutive_errors >= self._config.max_consecutive_errors:
            wake_at = self._clock() + timedelta(minutes=self._config.error_sleep_minutes)
            async with self._shared.locked() as db:
                db.kv_set("sleep_until", wake_at.isoformat())
                db.set_agent_state(AgentState.SLEEPING)
            self._consecutive_errors = 0
            logger.warning("turn_loop.error_sleep", wake_at=wake_at.isoformat())
            outcome = TurnOutcome.ENTERED_SLEEP

        if await self._wait(self._config.error_backoff_seconds):
            return TurnOutcome.CANCELLED
        return outcome

    async def _execute_tool_calls(
        self, turn_number: int, tool_calls: list[ToolCall]
    ) -> list[ToolCallResult]:
        limit = self._config.max_tool_calls_per_turn
        if len(tool_calls) > limit:
            logger.warning(
                "turn_loop.tool_calls_capped",
                turn=turn_number,
                requested=len(tool_calls),
                limit=limit,
            )

        results: list[ToolCallResult] = []
        for call in tool_calls[:limit]:
            if self._cancel.is_set():
                logger.info("turn_loop.tool_calls_interrupted", turn=turn_number, remaining=call.name)
                break
            result = await self._execute_tool_call(call)
            self._total_tool_calls += 1
            if result.success:
                logger.info("turn_loop.tool_result", turn=turn_number, tool=call.name, chars=len(result.output))
            else:
                logger.warning("turn_loop.tool_error", turn=turn_number, tool=call.name, output=result.output[:200])
            self._history.append(
                ChatMessage(role=ChatRole.TOOL, content=f"[{call.name}] {result.output}")
            )
            results.append(result)
        return results

    async def _execute_tool_call(self, call: ToolCall) -> ToolCallResult:
        check = self._safety.check_tool_call(call.name, call.arguments)
        if not check.allowed:
            return ToolCallResult(
                tool_call_id=call.id,
                name=call.name,
                output=f"Error: Blocked by safety system: {check.reason}",
                success=False,
                arguments=dict(call.arguments),
            )
        return await self._executor.execute(call)

    async def _persist_turn(self, turn: Turn) -> None:
        try:
            async with self._shared.locked() as db:
                db.save_turn(turn)
        except StoreError as e:
            # Losing one ledger row must not stop the agent.
            logger.error("turn_loop.persist_failed", turn=turn.turn_number, error=str(e))
        try:
            await self._shared.set_agent_state(AgentState.RUNNING)
        except StoreError as e:
            logger.error("turn_loop.state_write_failed", error=str(e))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_turns": self._total_turns,
            "total_tool_calls": self._total_tool_calls,
            "total_cost_usd": round(self._total_cost, 6),
            "consecutive_errors": self._consecutive_errors,
            "history_messages": len(self._history),
        }
