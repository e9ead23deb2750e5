"""Tests for the SQLite state store and its shared async handle."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from automaton.errors import StoreError
from automaton.state.store import SharedStore, StateStore
from automaton.types import (
    AgentState,
    ChatMessage,
    ChatRole,
    ChildRecord,
    InboxMessage,
    ModificationEntry,
    ModificationType,
    Skill,
    TokenUsage,
    ToolCall,
    ToolCallResult,
    Turn,
    new_id,
    utcnow,
)


def _turn(number: int, calls: tuple = (), results: tuple = ()) -> Turn:
    return Turn(
        id=new_id(),
        turn_number=number,
        state=AgentState.RUNNING,
        messages=(ChatMessage(role=ChatRole.USER, content="hello"),),
        tool_calls=calls,
        tool_results=results,
        usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        cost_estimate=0.001,
        created_at=utcnow(),
    )


class TestKeyValue:
    def test_set_get_overwrite(self, store: StateStore):
        store.kv_set("a", "1")
        store.kv_set("a", "2")
        assert store.kv_get("a") == "2"

    def test_take_is_one_shot(self, store: StateStore):
        store.kv_set("wake_reason", "3 new messages")
        assert store.kv_take("wake_reason") == "3 new messages"
        assert store.kv_take("wake_reason") is None

    def test_missing_key(self, store: StateStore):
        assert store.kv_get("nope") is None


class TestAgentState:
    def test_defaults_to_uninitialized(self, store: StateStore):
        assert store.get_agent_state() is AgentState.UNINITIALIZED

    def test_dead_is_terminal(self, store: StateStore):
        store.set_agent_state(AgentState.DEAD)
        assert store.set_agent_state(AgentState.RUNNING) is AgentState.DEAD
        assert store.get_agent_state() is AgentState.DEAD

    def test_unknown_persisted_value(self, store: StateStore):
        store.kv_set("agent_state", "zombie")
        assert store.get_agent_state() is AgentState.UNINITIALIZED


class TestTurns:
    def test_turn_numbers_increase(self, store: StateStore):
        assert store.next_turn_number() == 1
        store.save_turn(_turn(1))
        assert store.next_turn_number() == 2
        assert store.turn_count() == 1

    def test_turn_with_tool_calls_round_trips(self, store: StateStore):
        call = ToolCall(id="c1", name="exec", arguments={"command": "ls"})
        result = ToolCallResult(tool_call_id="c1", name="exec", output="file.txt", success=True)
        turn = _turn(1, (call,), (result,))
        store.save_turn(turn)

        [saved] = store.recent_turns(1)
        assert saved["turn_number"] == 1
        assert saved["messages"] == [{"role": "user", "content": "hello"}]
        assert saved["token_usage"]["total_tokens"] == 15

        [saved_call] = store.tool_calls_for_turn(turn.id)
        assert saved_call["tool_name"] == "exec"
        assert saved_call["arguments"] == {"command": "ls"}
        assert saved_call["success"] is True

    def test_saving_the_same_turn_twice_is_a_store_error(self, store: StateStore):
        turn = _turn(1)
        store.save_turn(turn)
        with pytest.raises(StoreError):
            store.save_turn(turn)
        assert store.turn_count() == 1


class TestHeartbeatLog:
    def test_newest_first(self, store: StateStore):
        now = utcnow()
        store.log_heartbeat("ping", "pong", True, executed_at=now - timedelta(minutes=5))
        store.log_heartbeat("credits", "Error: boom", False, executed_at=now)
        entries = store.recent_heartbeats(10)
        assert [e.task_name for e in entries] == ["credits", "ping"]
        assert entries[0].success is False


class TestTransactions:
    def test_record_returns_id_and_counts(self, store: StateStore):
        first = store.record_transaction("topup", 5.0, balance_after=5.25)
        second = store.record_transaction("inference", -0.01, description="turn 1")
        assert first != second
        assert store.stats()["transactions"] == 2


class TestModifications:
    def test_append_and_read(self, store: StateStore):
        entry = ModificationEntry(
            id=new_id(),
            timestamp=utcnow(),
            mod_type=ModificationType.CODE_EDIT,
            description="edit",
            file_path="workspace/a.py",
            diff="--- a\n+++ b\n",
        )
        store.log_modification(entry)
        assert store.count_modifications() == 1
        [read] = store.recent_modifications()
        assert read.id == entry.id
        assert read.mod_type is ModificationType.CODE_EDIT
        assert read.reversible is True


class TestInbox:
    def _message(self, message_id: str) -> InboxMessage:
        return InboxMessage(
            id=message_id,
            from_address="0xabc",
            to_address="0xdef",
            content="hi",
            timestamp=utcnow(),
        )

    def test_redelivered_message_is_ignored(self, store: StateStore):
        assert store.save_inbox_message(self._message("m1")) is True
        assert store.save_inbox_message(self._message("m1")) is False
        assert len(store.unread_messages()) == 1

    def test_mark_read(self, store: StateStore):
        store.save_inbox_message(self._message("m1"))
        store.mark_message_read("m1")
        assert store.unread_messages() == []


class TestSkillsChildrenUpstream:
    def test_auto_activate_filter(self, store: StateStore):
        store.save_skill(Skill(name="a", description="", instructions="x", auto_activate=True))
        store.save_skill(Skill(name="b", description="", instructions="y"))
        assert [s.name for s in store.auto_activate_skills()] == ["a"]
        assert store.get_skill("b").instructions == "y"

    def test_active_children_count(self, store: StateStore):
        store.add_child(ChildRecord(id="c1", name="kid", sandbox_id="s1", wallet_address="0x1"))
        store.add_child(
            ChildRecord(id="c2", name="old", sandbox_id="s2", wallet_address="0x2", status="dead")
        )
        assert store.active_children_count() == 1
        assert len(store.list_children()) == 2

    def test_upstream_commit_recorded_once(self, store: StateStore):
        assert store.record_upstream_commit("abc1234", "fix") is True
        assert store.record_upstream_commit("abc1234", "fix") is False
        store.mark_upstream_applied("abc1234")


def test_file_backed_store_creates_parent(tmp_path):
    db = StateStore(tmp_path / "nested" / "state.db")
    db.initialize()
    db.kv_set("x", "1")
    db.close()

    reopened = StateStore(tmp_path / "nested" / "state.db")
    reopened.initialize()
    assert reopened.kv_get("x") == "1"
    reopened.close()


def test_uninitialized_store_raises():
    with pytest.raises(StoreError):
        StateStore(":memory:").kv_get("x")


@pytest.mark.asyncio
async def test_shared_store_serializes_critical_sections(shared: SharedStore):
    order: list[str] = []

    async def writer(name: str) -> None:
        async with shared.locked() as db:
            order.append(f"{name}-start")
            await asyncio.sleep(0)
            db.kv_set(name, "1")
            order.append(f"{name}-end")

    await asyncio.gather(writer("a"), writer("b"))
    assert order in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )


class TestReadOnly:
    def test_reads_but_refuses_writes(self, tmp_path):
        path = tmp_path / "state.db"
        writer = StateStore(path)
        writer.initialize()
        writer.kv_set("x", "1")
        writer.close()

        reader = StateStore(path)
        reader.initialize(read_only=True)
        assert reader.kv_get("x") == "1"
        with pytest.raises(StoreError):
            reader.kv_set("x", "2")
        reader.close()

    def test_missing_file_is_not_created(self, tmp_path):
        path = tmp_path / "absent.db"
        with pytest.raises(StoreError):
            StateStore(path).initialize(read_only=True)
        assert not path.exists()
