"""
Tests for automaton.daemon — startup, both loops and shutdown coordination.

The daemon gets a file-backed store under tmp_path, a FakeSandbox and a
ScriptedInference, so no test touches the network.
"""

from __future__ import annotations

import asyncio

import pytest

from automaton.config import AutomatonConfig
from automaton.daemon import AutomatonDaemon
from automaton.state.store import StateStore
from automaton.types import AgentState, InferenceResponse, ModificationType

from conftest import FakeSandbox, ScriptedInference


@pytest.fixture()
def config(tmp_path, monkeypatch) -> AutomatonConfig:
    monkeypatch.setenv("AUTOMATON_HOME", str(tmp_path))
    return AutomatonConfig({
        "loop": {
            "sleep_poll_seconds": 0,
            "idle_sleep_seconds": 0.01,
            "turn_pause_seconds": 0.01,
            "error_backoff_seconds": 0,
        },
        "heartbeat": {"tick_seconds": 3600},
        "daemon": {"shutdown_timeout_seconds": 2},
    })


def _daemon(config: AutomatonConfig, credits: str | None = None, responses=None) -> AutomatonDaemon:
    store = StateStore(config.paths.db_path)
    if credits is not None:
        store.initialize()
        store.kv_set("credits_balance", credits)
    sandbox = FakeSandbox(credits=float(credits) if credits is not None else 5.0)
    return AutomatonDaemon(
        config,
        store=store,
        sandbox=sandbox,
        inference=ScriptedInference(responses or []),
    )


def _reopen(config: AutomatonConfig) -> StateStore:
    store = StateStore(config.paths.db_path)
    store.initialize()
    return store


class TestInitialize:
    @pytest.mark.asyncio
    async def test_bootstraps_state_and_heartbeat_config(self, config):
        daemon = _daemon(config)
        await daemon.initialize()
        try:
            assert await daemon.shared.get_agent_state() is AgentState.WAKING
            assert config.heartbeat.config_path.is_file()
            [entry] = await daemon.audit.recent()
            assert entry.mod_type is ModificationType.HEARTBEAT_UPDATE
        finally:
            await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_existing_heartbeat_config_is_kept(self, config):
        config.heartbeat.config_path.parent.mkdir(parents=True, exist_ok=True)
        config.heartbeat.config_path.write_text(
            "entries:\n  - {name: ping, schedule: '* * * * *', task: heartbeat_ping}\n"
        )
        daemon = _daemon(config)
        await daemon.initialize()
        try:
            assert await daemon.audit.count() == 0
        finally:
            await daemon.shutdown()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_request_shutdown_sets_event_and_emergency_stop(self, config):
        daemon = _daemon(config)
        daemon._request_shutdown("test")
        assert daemon.cancel_event.is_set()
        assert daemon.safety.is_stopped
        await daemon.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent_and_closes_clients(self, config):
        daemon = _daemon(config)
        await daemon.initialize()
        await daemon.shutdown()
        await daemon.shutdown()
        assert daemon._sandbox.closed

        store = _reopen(config)
        assert store.get_agent_state() is AgentState.SLEEPING
        store.close()

    @pytest.mark.asyncio
    async def test_signal_stops_running_daemon(self, config):
        responses = [InferenceResponse(content=f"thinking {i}") for i in range(50)]
        daemon = _daemon(config, responses=responses)
        task = asyncio.create_task(daemon.run())
        await asyncio.sleep(0.05)
        daemon._request_shutdown("daemon_signal_sigterm")
        await asyncio.wait_for(task, timeout=5.0)

        store = _reopen(config)
        assert store.get_agent_state() is AgentState.SLEEPING
        assert store.turn_count() >= 1
        store.close()


@pytest.mark.asyncio
async def test_dead_agent_stops_daemon_and_stays_dead(config):
    daemon = _daemon(config, credits="0")
    await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert daemon.cancel_event.is_set()
    store = _reopen(config)
    assert store.get_agent_state() is AgentState.DEAD
    assert store.turn_count() == 0
    store.close()
