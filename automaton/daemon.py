"""
Automaton Daemon — both loops, one store, one stop signal.

Builds every component around a single SharedStore handle, then runs the
Turn Loop and the Heartbeat Scheduler as two asyncio tasks. They never call
each other; the store is their only channel.

Shutdown is one broadcast: SIGINT/SIGTERM (or either loop finishing, e.g.
the agent dying) sets the cancellation event, the safety guard's emergency
stop blocks any further tool call, and both loops exit at their next
suspension point. The coordinator waits for them under a timeout,
hard-cancels stragglers, then persists a final state and closes clients.

Start with: automaton run
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any, Optional

import httpx
import structlog

from automaton.agent.prompt import PromptBuilder
from automaton.api.conway import ConwayClient
from automaton.api.inference import (
    AnthropicInferenceClient,
    ConwayInferenceClient,
    InferenceClient,
    InferenceRouter,
)
from automaton.api.social import SocialClient
from automaton.config import AutomatonConfig
from automaton.errors import AutomatonError, ConfigError, StoreError
from automaton.harness.loop import TurnLoop
from automaton.harness.retry import RetryConfig
from automaton.harness.safety import SafetyGuard
from automaton.heartbeat.scheduler import (
    HeartbeatScheduler,
    default_heartbeat_entries,
    load_heartbeat_entries,
    write_heartbeat_entries,
)
from automaton.heartbeat.tasks import HeartbeatTasks
from automaton.self_mod.audit import AuditLog
from automaton.skills.loader import load_skills
from automaton.state.store import SharedStore, StateStore
from automaton.survival import SurvivalMonitor
from automaton.tools.builtin import ToolContext, register_builtin_tools
from automaton.tools.executor import ToolExecutor
from automaton.tools.registry import ToolRegistry
from automaton.types import AgentState

logger = structlog.get_logger(__name__)


class AutomatonDaemon:
    """
    Owns the runtime's components and their lifecycle.

    Collaborators that talk to the network can be injected (tests pass
    fakes); anything not injected is built from the config.
    """

    def __init__(
        self,
        config: AutomatonConfig,
        *,
        store: Optional[StateStore] = None,
        sandbox: Optional[ConwayClient] = None,
        inference: Optional[InferenceClient] = None,
        social: Optional[SocialClient] = None,
    ) -> None:
        self._config = config
        self._cancel = asyncio.Event()
        self._store = store
        self._sandbox = sandbox
        self._inference = inference
        self._social = social
        self._rpc_client: Optional[httpx.AsyncClient] = None

        self.shared: Optional[SharedStore] = None
        self.safety = SafetyGuard()
        self.audit: Optional[AuditLog] = None
        self.turn_loop: Optional[TurnLoop] = None
        self.heartbeat: Optional[HeartbeatScheduler] = None

        self._turn_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._initialized = False
        self._closed = False

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _build_clients(self) -> None:
        conway = self._config.conway
        inference_cfg = self._config.inference
        if self._sandbox is None:
            self._sandbox = ConwayClient(
                conway.api_url,
                conway.api_key,
                sandbox_id=self._config.identity.sandbox_id,
            )
        if self._inference is None:
            retry = RetryConfig(
                max_retries=inference_cfg.retry_max_retries,
                base_delay=inference_cfg.retry_base_delay,
                max_delay=inference_cfg.retry_max_delay,
            )
            default = ConwayInferenceClient(
                conway.api_url,
                conway.api_key,
                temperature=inference_cfg.temperature,
                timeout=inference_cfg.request_timeout_seconds,
                retry_config=retry,
            )
            anthropic_client = None
            if inference_cfg.anthropic_api_key:
                anthropic_client = AnthropicInferenceClient(
                    inference_cfg.anthropic_api_key,
                    temperature=inference_cfg.temperature,
                    timeout=inference_cfg.request_timeout_seconds,
                    retry_config=retry,
                )
            self._inference = InferenceRouter(default, anthropic_client)
        if self._social is None and conway.social_relay_url:
            self._social = SocialClient(conway.social_relay_url, self._config.identity.wallet_address)
        self._rpc_client = httpx.AsyncClient(timeout=30.0)

    async def initialize(self) -> None:
        """Open the store, build both loops, sync skills and heartbeat config."""
        if self._initialized:
            return

        if self._store is None:
            self._store = StateStore(self._config.paths.db_path)
        self._store.initialize()
        self.shared = SharedStore(self._store)
        self._build_clients()

        self.audit = AuditLog(self.shared)
        survival = SurvivalMonitor(self.shared)

        registry = ToolRegistry()
        register_builtin_tools(
            registry,
            ToolContext(shared=self.shared, sandbox=self._sandbox, audit=self.audit, survival=survival),
        )
        executor = ToolExecutor(registry)

        await load_skills(self.shared, self.audit, self._config.paths.skills_dir)

        heartbeat_path = self._config.heartbeat.config_path
        if not heartbeat_path.exists():
            write_heartbeat_entries(heartbeat_path, default_heartbeat_entries())
            await self.audit.log_heartbeat_update("Created default heartbeat config")
        entries = load_heartbeat_entries(heartbeat_path)

        self.turn_loop = TurnLoop(
            shared=self.shared,
            inference=self._inference,
            executor=executor,
            survival=survival,
            prompt_builder=PromptBuilder(
                self._config.identity,
                self._config.inference,
                soul_path=self._config.paths.soul_path,
            ),
            safety=self.safety,
            loop_config=self._config.loop,
            inference_config=self._config.inference,
            cancel_event=self._cancel,
        )
        self.heartbeat = HeartbeatScheduler(
            shared=self.shared,
            tasks=HeartbeatTasks(
                self.shared,
                self._sandbox,
                wallet_address=self._config.identity.wallet_address,
                base_rpc_url=self._config.conway.base_rpc_url,
                social=self._social,
                rpc_client=self._rpc_client,
            ),
            entries=entries,
            config=self._config.heartbeat,
            cancel_event=self._cancel,
        )

        await self.shared.set_agent_state(AgentState.WAKING)
        self._initialized = True
        logger.info(
            "daemon.initialized",
            name=self._config.identity.name,
            tools=len(registry),
            heartbeat_entries=len(entries),
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Full lifecycle: initialize, run both loops, shut down."""
        try:
            await self.initialize()
            self._turn_task = asyncio.create_task(self.turn_loop.run(), name="turn-loop")
            self._heartbeat_task = asyncio.create_task(self.heartbeat.run(), name="heartbeat")
            cancel_waiter = asyncio.create_task(self._cancel.wait(), name="shutdown-signal")
            logger.info("daemon.running")

            done, _ = await asyncio.wait(
                {self._turn_task, self._heartbeat_task, cancel_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            cancel_waiter.cancel()
            for task in done:
                if task is cancel_waiter or task.cancelled():
                    continue
                error = task.exception()
                if error is not None:
                    logger.error("daemon.loop_crashed", loop=task.get_name(), error=str(error))
            if not self._cancel.is_set():
                finished = next(t for t in done if t is not cancel_waiter)
                self._request_shutdown(f"{finished.get_name()}_exited")
        finally:
            await self.shutdown()

    # ------------------------------------------------------------------
    # Shutdown & cleanup
    # ------------------------------------------------------------------

    def _request_shutdown(self, reason: str) -> None:
        """Broadcast cancellation and activate the tool kill switch."""
        if self._cancel.is_set():
            return
        logger.info("daemon.shutdown_requested", reason=reason)
        self.safety.emergency_stop(reason)
        self._cancel.set()

    async def shutdown(self) -> None:
        """Wait for both loops (bounded), persist final state, close everything."""
        if self._closed:
            return
        self._closed = True
        self._request_shutdown("shutdown")

        tasks = [t for t in (self._turn_task, self._heartbeat_task) if t is not None]
        if tasks:
            timeout = self._config.daemon.shutdown_timeout_seconds
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                logger.warning("daemon.loop_shutdown_timeout", loop=task.get_name(), timeout=timeout)
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self.shared is not None:
            try:
                async with self.shared.locked() as db:
                    if db.get_agent_state() is not AgentState.DEAD:
                        db.set_agent_state(AgentState.SLEEPING)
            except StoreError as e:
                logger.error("daemon.final_state_failed", error=str(e))

        await self._close_clients()
        if self.shared is not None:
            self.shared.close()
        elif self._store is not None:
            self._store.close()
        logger.info("daemon.stopped")

    async def _close_clients(self) -> None:
        closers: list[Any] = [self._inference, self._sandbox, self._social, self._rpc_client]
        for client in closers:
            if client is None:
                continue
            close = getattr(client, "aclose", None) or getattr(client, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("daemon.client_close_failed", client=type(client).__name__, error=str(e))

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig, self._request_shutdown, f"daemon_signal_{sig.name.lower()}"
                )
            except NotImplementedError:
                pass


def run_daemon(config: Optional[AutomatonConfig] = None) -> None:
    """
    Entry point for `automaton run`.

    Loads config, creates AutomatonDaemon, runs the event loop.
    """
    try:
        config = config or AutomatonConfig.load()
    except ConfigError as e:
        print(f"[automaton] Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    daemon = AutomatonDaemon(config)
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    daemon._install_signal_handlers(loop)
    try:
        loop.run_until_complete(daemon.run())
    except KeyboardInterrupt:
        pass
    except AutomatonError as e:
        logger.error("daemon.fatal", error=str(e))
        sys.exit(1)
    finally:
        loop.close()
