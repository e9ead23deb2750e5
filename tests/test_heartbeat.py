"""
Tests for the heartbeat scheduler, its config file and its built-in tasks.

Cron due-ness is checked against fixed times; every task runs against the
in-memory store and scripted clients.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from automaton.config import HeartbeatConfig
from automaton.errors import ConfigError, HeartbeatError, UnknownTaskError
from automaton.heartbeat.scheduler import (
    HeartbeatScheduler,
    default_heartbeat_entries,
    load_heartbeat_entries,
    write_heartbeat_entries,
)
from automaton.heartbeat.tasks import HeartbeatTasks
from automaton.types import HeartbeatEntry, InboxMessage

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def _config(**overrides) -> HeartbeatConfig:
    values = {"tick_seconds": 60.0, "default_lookback_minutes": 60.0}
    values.update(overrides)
    return HeartbeatConfig(**values)


def _scheduler(shared, tasks, entries, cancel=None, **config) -> HeartbeatScheduler:
    return HeartbeatScheduler(
        shared=shared,
        tasks=tasks,
        entries=entries,
        config=_config(**config),
        cancel_event=cancel,
        clock=lambda: NOW,
    )


class FakeSocial:
    def __init__(self, messages: list[InboxMessage]):
        self.messages = messages
        self.configured = True

    async def fetch_inbox(self) -> list[InboxMessage]:
        return list(self.messages)


# ---------------------------------------------------------------------------
# Due-ness
# ---------------------------------------------------------------------------

class TestIsDue:
    def _sched(self, shared, sandbox):
        return _scheduler(shared, HeartbeatTasks(shared, sandbox), [])

    def test_not_due_before_next_fire(self, shared, sandbox):
        entry = HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping")
        last = NOW
        assert self._sched(shared, sandbox).is_due(entry, last, last + timedelta(minutes=4)) is False

    def test_due_at_next_fire(self, shared, sandbox):
        entry = HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping")
        last = NOW
        assert self._sched(shared, sandbox).is_due(entry, last, last + timedelta(minutes=5)) is True

    def test_late_tick_still_due(self, shared, sandbox):
        entry = HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping")
        assert self._sched(shared, sandbox).is_due(entry, NOW, NOW + timedelta(hours=3)) is True

    @pytest.mark.parametrize(
        "elapsed, due",
        [
            (timedelta(minutes=4, seconds=59), False),
            (timedelta(minutes=5, seconds=17), True),
            (timedelta(minutes=9, seconds=43), True),
        ],
    )
    def test_due_five_minutes_after_recorded_run(self, shared, sandbox, elapsed, due):
        entry = HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping")
        assert self._sched(shared, sandbox).is_due(entry, NOW, NOW + elapsed) is due

    def test_never_run_uses_lookback(self, shared, sandbox):
        entry = HeartbeatEntry("hourly", "0 * * * *", "heartbeat_ping")
        assert self._sched(shared, sandbox).is_due(entry, None, NOW) is True

    def test_invalid_schedule_is_never_due(self, shared, sandbox):
        entry = HeartbeatEntry("broken", "not a cron", "heartbeat_ping")
        assert self._sched(shared, sandbox).is_due(entry, None, NOW) is False


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------

class TestTick:
    @pytest.mark.asyncio
    async def test_runs_due_entries_and_logs_results(self, shared, sandbox, store):
        tasks = HeartbeatTasks(shared, sandbox, clock=lambda: NOW)
        entries = [
            HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping"),
            HeartbeatEntry("ghost", "*/5 * * * *", "no_such_task"),
            HeartbeatEntry("off", "*/5 * * * *", "heartbeat_ping", enabled=False),
        ]
        scheduler = _scheduler(shared, tasks, entries)

        assert await scheduler.tick() == 2

        log = {e.task_name: e for e in store.recent_heartbeats()}
        assert log["ping"].success is True and log["ping"].result == "pong"
        assert log["ghost"].success is False
        assert log["ghost"].result == "Error: Unknown heartbeat task: no_such_task"
        assert "off" not in log
        assert store.kv_get("last_heartbeat") == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_off_phase_run_records_the_slot_it_fired_for(self, shared, sandbox):
        entries = [HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping")]
        scheduler = _scheduler(shared, HeartbeatTasks(shared, sandbox), entries)
        late = NOW + timedelta(minutes=3, seconds=30)

        assert await scheduler.tick(late) == 1
        assert scheduler.last_run["ping"] == NOW
        assert await scheduler.tick(NOW + timedelta(minutes=4, seconds=59)) == 0
        assert await scheduler.tick(NOW + timedelta(minutes=5)) == 1
        assert scheduler.last_run["ping"] == NOW + timedelta(minutes=5)
        assert await scheduler.tick(NOW + timedelta(minutes=9, seconds=59)) == 0

    @pytest.mark.asyncio
    async def test_failed_task_still_updates_last_run(self, shared, sandbox):
        entries = [HeartbeatEntry("ghost", "*/5 * * * *", "no_such_task")]
        scheduler = _scheduler(shared, HeartbeatTasks(shared, sandbox), entries)

        await scheduler.tick(NOW)
        assert scheduler.last_run["ghost"] == NOW
        assert await scheduler.tick(NOW + timedelta(minutes=1)) == 0
        assert scheduler.status["task_failures"] == 1

    @pytest.mark.asyncio
    async def test_log_write_failure_aborts_tick(self, shared, sandbox, store):
        entries = [HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping")]
        scheduler = _scheduler(shared, HeartbeatTasks(shared, sandbox), entries)
        store.close()
        with pytest.raises(HeartbeatError, match="ping"):
            await scheduler.tick()

    @pytest.mark.asyncio
    async def test_cancellation_stops_between_entries(self, shared, sandbox, store):
        cancel = asyncio.Event()
        tasks = HeartbeatTasks(shared, sandbox)

        async def stop(params):
            cancel.set()
            return "stopping"

        tasks.register("stop", stop)
        entries = [
            HeartbeatEntry("stop", "*/5 * * * *", "stop"),
            HeartbeatEntry("ping", "*/5 * * * *", "heartbeat_ping"),
        ]
        scheduler = _scheduler(shared, tasks, entries, cancel=cancel)
        assert await scheduler.tick() == 1
        assert [e.task_name for e in store.recent_heartbeats()] == ["stop"]

    @pytest.mark.asyncio
    async def test_run_ticks_immediately_and_exits_on_cancel(self, shared, sandbox):
        cancel = asyncio.Event()
        tasks = HeartbeatTasks(shared, sandbox)
        seen: list[str] = []

        async def record(params):
            seen.append("ran")
            cancel.set()
            return "ok"

        tasks.register("record", record)
        scheduler = _scheduler(
            shared, tasks, [HeartbeatEntry("record", "* * * * *", "record")], cancel=cancel
        )
        await asyncio.wait_for(scheduler.run(), timeout=2.0)
        assert seen == ["ran"]
        assert scheduler.status["ticks"] == 1


# ---------------------------------------------------------------------------
# heartbeat.yml
# ---------------------------------------------------------------------------

class TestHeartbeatConfigFile:
    def test_missing_file_gives_defaults(self, tmp_path):
        entries = load_heartbeat_entries(tmp_path / "heartbeat.yml")
        assert [e.name for e in entries] == [e.name for e in default_heartbeat_entries()]

    def test_written_entries_load_back(self, tmp_path):
        path = tmp_path / "heartbeat.yml"
        entries = [HeartbeatEntry("upstream", "0 */6 * * *", "check_upstream", params={"x": 1})]
        write_heartbeat_entries(path, entries)
        [loaded] = load_heartbeat_entries(path)
        assert loaded.schedule == "0 */6 * * *"
        assert loaded.params == {"x": 1}

    def test_bad_and_duplicate_entries_are_skipped(self, tmp_path):
        path = tmp_path / "heartbeat.yml"
        path.write_text(
            "entries:\n"
            "  - {name: ping, schedule: '*/5 * * * *'}\n"
            "  - {name: ping, schedule: '*/1 * * * *'}\n"
            "  - {schedule: '*/5 * * * *'}\n"
            "  - just a string\n"
        )
        [entry] = load_heartbeat_entries(path)
        assert entry.name == "ping"
        assert entry.task == "ping"
        assert entry.schedule == "*/5 * * * *"

    def test_bare_list_is_accepted(self, tmp_path):
        path = tmp_path / "heartbeat.yml"
        path.write_text("- {name: ping, schedule: '* * * * *', task: heartbeat_ping}\n")
        assert len(load_heartbeat_entries(path)) == 1

    def test_invalid_yaml_is_config_error(self, tmp_path):
        path = tmp_path / "heartbeat.yml"
        path.write_text("entries: [unclosed\n")
        with pytest.raises(ConfigError):
            load_heartbeat_entries(path)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TestTasks:
    @pytest.mark.asyncio
    async def test_unknown_task(self, shared, sandbox):
        with pytest.raises(UnknownTaskError):
            await HeartbeatTasks(shared, sandbox).run("nope")

    def test_duplicate_registration_rejected(self, shared, sandbox):
        tasks = HeartbeatTasks(shared, sandbox)
        with pytest.raises(ValueError):
            tasks.register("heartbeat_ping", tasks.heartbeat_ping)

    @pytest.mark.asyncio
    async def test_check_credits_healthy(self, shared, sandbox, store):
        sandbox.credits = 3.0
        result = await HeartbeatTasks(shared, sandbox).check_credits({})
        assert result == "3.0 USD (tier: normal)"
        assert store.kv_get("credits_balance") == "3.0"
        assert store.kv_get("survival_alert") is None

    @pytest.mark.asyncio
    async def test_check_credits_critical_raises_alert_and_wakes(self, shared, sandbox, store):
        sandbox.credits = 0.05
        store.kv_set("sleep_until", "2999-01-01T00:00:00+00:00")
        result = await HeartbeatTasks(shared, sandbox).check_credits({})
        assert result == "0.05 USD (tier: critical)"
        assert store.kv_get("survival_alert") == "Credits critically low: 0.05 USD. Tier: critical"
        assert store.kv_get("sleep_until") is None
        assert store.kv_get("survival_tier") == "critical"

    @pytest.mark.asyncio
    async def test_usdc_counts_toward_tier(self, shared, sandbox, store):
        sandbox.credits = 0.05
        store.kv_set("usdc_balance", "1.0")
        result = await HeartbeatTasks(shared, sandbox).check_credits({})
        assert result.endswith("(tier: normal)")

    @pytest.mark.asyncio
    async def test_usdc_skipped_without_wallet(self, shared, sandbox):
        result = await HeartbeatTasks(shared, sandbox).check_usdc_balance({})
        assert result.startswith("Skipped")

    @pytest.mark.asyncio
    async def test_usdc_balance_from_rpc(self, shared, sandbox, store):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": hex(2_500_000)})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            tasks = HeartbeatTasks(
                shared,
                sandbox,
                wallet_address="0x" + "ab" * 20,
                base_rpc_url="https://rpc.example",
                rpc_client=client,
            )
            assert await tasks.check_usdc_balance({}) == "2.500000 USDC"
        assert float(store.kv_get("usdc_balance")) == 2.5

    @pytest.mark.asyncio
    async def test_inbox_skipped_without_relay(self, shared, sandbox):
        assert (await HeartbeatTasks(shared, sandbox).check_social_inbox({})).startswith("Skipped")

    @pytest.mark.asyncio
    async def test_inbox_wakes_only_for_new_messages(self, shared, sandbox, store):
        messages = [
            InboxMessage(id=f"m{i}", from_address="0xfriend", to_address="0xme",
                         content=f"hello {i}", timestamp=NOW)
            for i in range(2)
        ]
        tasks = HeartbeatTasks(shared, sandbox, social=FakeSocial(messages))
        store.kv_set("sleep_until", "2999-01-01T00:00:00+00:00")

        assert await tasks.check_social_inbox({}) == "2 new messages"
        assert store.kv_take("wake_reason") == "2 new messages in inbox"
        assert store.kv_get("sleep_until") is None

        assert await tasks.check_social_inbox({}) == "0 new messages"
        assert store.kv_get("wake_reason") is None

    @pytest.mark.asyncio
    async def test_check_upstream_counts_new_commits(self, shared, sandbox):
        from automaton.api.conway import ExecResult

        sandbox.exec_results["git log"] = ExecResult(stdout="abc1234|Fix|alice", stderr="", exit_code=0)
        tasks = HeartbeatTasks(shared, sandbox)
        assert await tasks.run("check_upstream") == "1 new upstream commits"
        assert await tasks.run("check_upstream") == "0 new upstream commits"
