"""
State Store — the automaton's single source of truth.

Everything both loops share lives here: the key-value signal namespace, the
append-only turn ledger, the heartbeat log, the self-modification audit
trail and the social inbox.

The store uses synchronous SQLite. Every operation is a short read or write
of one record or a small batch, so callers can hold the shared lock around
it without blocking the event loop for long. ``SharedStore`` is the one
handle both loops hold; it owns the lock.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import structlog

from automaton.errors import StoreError
from automaton.types import (
    AgentState,
    ChildRecord,
    HeartbeatLogEntry,
    InboxMessage,
    ModificationEntry,
    ModificationType,
    Skill,
    Turn,
    new_id,
    parse_timestamp,
    utcnow,
)

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 3

CORE_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS kv (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS turns (
    id               TEXT PRIMARY KEY,
    turn_number      INTEGER NOT NULL,
    state            TEXT NOT NULL DEFAULT 'running',
    messages_json    TEXT NOT NULL DEFAULT '[]',
    token_usage_json TEXT NOT NULL DEFAULT '{}',
    cost_estimate    REAL NOT NULL DEFAULT 0.0,
    created_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tool_calls (
    id             TEXT PRIMARY KEY,
    turn_id        TEXT NOT NULL REFERENCES turns(id),
    tool_call_id   TEXT,
    tool_name      TEXT NOT NULL,
    arguments_json TEXT NOT NULL DEFAULT '{}',
    output         TEXT,
    success        INTEGER NOT NULL DEFAULT 1,
    duration_ms    INTEGER,
    created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS heartbeat_entries (
    id          TEXT PRIMARY KEY,
    task_name   TEXT NOT NULL,
    result      TEXT,
    success     INTEGER NOT NULL DEFAULT 1,
    executed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    id            TEXT PRIMARY KEY,
    tx_type       TEXT NOT NULL,
    amount        REAL NOT NULL,
    currency      TEXT NOT NULL DEFAULT 'credits',
    description   TEXT,
    balance_after REAL,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS modifications (
    id             TEXT PRIMARY KEY,
    mod_type       TEXT NOT NULL,
    description    TEXT NOT NULL,
    file_path      TEXT,
    diff           TEXT,
    diff_truncated INTEGER NOT NULL DEFAULT 0,
    reversible     INTEGER NOT NULL DEFAULT 1,
    created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS skills (
    name          TEXT PRIMARY KEY,
    description   TEXT NOT NULL,
    version       TEXT NOT NULL DEFAULT '1.0.0',
    auto_activate INTEGER NOT NULL DEFAULT 0,
    instructions  TEXT NOT NULL,
    requirements  TEXT NOT NULL DEFAULT '[]',
    file_path     TEXT,
    loaded_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS children (
    id             TEXT PRIMARY KEY,
    name           TEXT NOT NULL,
    sandbox_id     TEXT NOT NULL,
    wallet_address TEXT NOT NULL,
    status         TEXT NOT NULL DEFAULT 'active',
    created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS inbox (
    id           TEXT PRIMARY KEY,
    from_address TEXT NOT NULL,
    to_address   TEXT NOT NULL,
    content      TEXT NOT NULL,
    read         INTEGER NOT NULL DEFAULT 0,
    timestamp    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS upstream_commits (
    commit_hash TEXT PRIMARY KEY,
    message     TEXT,
    applied     INTEGER NOT NULL DEFAULT 0,
    reviewed    INTEGER NOT NULL DEFAULT 0,
    fetched_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_turns_number ON turns(turn_number);
CREATE INDEX IF NOT EXISTS idx_tool_calls_turn ON tool_calls(turn_id);
CREATE INDEX IF NOT EXISTS idx_heartbeat_task ON heartbeat_entries(task_name);
CREATE INDEX IF NOT EXISTS idx_inbox_read ON inbox(read);
CREATE INDEX IF NOT EXISTS idx_modifications_created ON modifications(created_at);
"""

# Older databases predate the turn state column and upstream tracking.
MIGRATIONS: dict[int, str] = {
    2: "ALTER TABLE turns ADD COLUMN state TEXT NOT NULL DEFAULT 'running'",
    3: "ALTER TABLE modifications ADD COLUMN diff_truncated INTEGER NOT NULL DEFAULT 0",
}


def _iso(value: datetime) -> str:
    return value.isoformat()


class StateStore:
    """
    Durable persistence for all cross-loop state.

    Turns, heartbeat log entries and modification entries are append-only:
    there is no update or delete method for them.
    """

    def __init__(self, db_path: Path | str):
        self._db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

    @classmethod
    def in_memory(cls) -> "StateStore":
        store = cls(":memory:")
        store.initialize()
        return store

    @property
    def path(self) -> Path | str:
        return self._db_path

    def initialize(self, read_only: bool = False) -> None:
        """Create database connection and ensure schema exists.

        With ``read_only`` the file must already exist and is opened as-is:
        no migration, no schema writes, and every write raises StoreError.
        """
        if self._conn is not None:
            return

        if read_only:
            self._open_read_only()
            return
        if isinstance(self._db_path, Path):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
            self._conn.executescript(CORE_SCHEMA)
            self._conn.execute("DELETE FROM schema_version")
            self._conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open state store at {self._db_path}: {e}") from e

        logger.info("state_store.initialized", path=str(self._db_path))

    def _open_read_only(self) -> None:
        if not isinstance(self._db_path, Path) or not self._db_path.is_file():
            raise StoreError(f"No state database at {self._db_path}")
        try:
            self._conn = sqlite3.connect(
                f"{self._db_path.resolve().as_uri()}?mode=ro", uri=True, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open state store at {self._db_path}: {e}") from e
        logger.debug("state_store.opened_read_only", path=str(self._db_path))

    def _migrate(self) -> None:
        """Bring an existing database forward to SCHEMA_VERSION."""
        conn = self._require_connection()
        has_version_table = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        ).fetchone()
        if not has_version_table:
            return
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        current = int(row[0]) if row and row[0] is not None else SCHEMA_VERSION
        for version in range(current + 1, SCHEMA_VERSION + 1):
            statement = MIGRATIONS.get(version)
            if statement is None:
                continue
            try:
                conn.execute(statement)
            except sqlite3.OperationalError as e:
                # Column already present: the file was created by a newer build.
                logger.debug("state_store.migration_skipped", version=version, error=str(e))
            logger.info("state_store.migrated", to_version=version)

    def _require_connection(self) -> sqlite3.Connection:
        """Return an initialized SQLite connection or raise a clear error."""
        if self._conn is None:
            raise StoreError("StateStore is not initialized. Call initialize() first.")
        return self._conn

    def _write(self, sql: str, params: tuple | list = ()) -> None:
        conn = self._require_connection()
        try:
            conn.execute(sql, params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # -------------------------------------------------------------------------
    # Key-value signals
    # -------------------------------------------------------------------------

    def kv_get(self, key: str) -> Optional[str]:
        row = self._require_connection().execute(
            "SELECT value FROM kv WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row is not None else None

    def kv_set(self, key: str, value: str) -> None:
        self._write(
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, str(value)),
        )

    def kv_delete(self, key: str) -> None:
        self._write("DELETE FROM kv WHERE key = ?", (key,))

    def kv_take(self, key: str) -> Optional[str]:
        """Read and delete a one-shot signal."""
        value = self.kv_get(key)
        if value is not None:
            self.kv_delete(key)
        return value

    def get_agent_state(self) -> AgentState:
        raw = self.kv_get("agent_state")
        try:
            return AgentState(raw) if raw else AgentState.UNINITIALIZED
        except ValueError:
            logger.warning("state_store.unknown_agent_state", value=raw)
            return AgentState.UNINITIALIZED

    def set_agent_state(self, state: AgentState) -> AgentState:
        """Persist the lifecycle state. Nothing leaves DEAD."""
        current = self.get_agent_state()
        if current is AgentState.DEAD and state is not AgentState.DEAD:
            logger.warning("state_store.dead_is_terminal", requested=state.value)
            return current
        self.kv_set("agent_state", state.value)
        return state

    # -------------------------------------------------------------------------
    # Turns
    # -------------------------------------------------------------------------

    def save_turn(self, turn: Turn) -> None:
        """Persist a turn and its tool calls in one transaction."""
        conn = self._require_connection()
        created_at = _iso(turn.created_at)
        results = {r.tool_call_id: r for r in turn.tool_results}
        try:
            conn.execute(
                """INSERT INTO turns
                   (id, turn_number, state, messages_json, token_usage_json,
                    cost_estimate, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    turn.id,
                    turn.turn_number,
                    turn.state.value,
                    json.dumps([m.to_dict() for m in turn.messages]),
                    json.dumps(turn.usage.to_dict()),
                    turn.cost_estimate,
                    created_at,
                ),
            )
            for call in turn.tool_calls:
                result = results.get(call.id)
                conn.execute(
                    """INSERT INTO tool_calls
                       (id, turn_id, tool_call_id, tool_name, arguments_json,
                        output, success, duration_ms, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        new_id(),
                        turn.id,
                        call.id,
                        call.name,
                        json.dumps(call.arguments, default=str),
                        result.output if result else None,
                        int(result.success) if result else 0,
                        result.duration_ms if result else None,
                        created_at,
                    ),
                )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Failed to save turn {turn.turn_number}: {e}") from e

    def turn_count(self) -> int:
        row = self._require_connection().execute("SELECT COUNT(*) FROM turns").fetchone()
        return int(row[0]) if row is not None else 0

    def next_turn_number(self) -> int:
        row = self._require_connection().execute(
            "SELECT MAX(turn_number) FROM turns"
        ).fetchone()
        current = row[0] if row is not None else None
        return (int(current) if current is not None else 0) + 1

    def recent_turns(self, limit: int = 10) -> list[dict[str, Any]]:
        cursor = self._require_connection().execute(
            "SELECT * FROM turns ORDER BY turn_number DESC LIMIT ?", (limit,)
        )
        turns = []
        for row in cursor.fetchall():
            data = dict(row)
            data["messages"] = json.loads(data.pop("messages_json") or "[]")
            data["token_usage"] = json.loads(data.pop("token_usage_json") or "{}")
            turns.append(data)
        return turns

    def tool_calls_for_turn(self, turn_id: str) -> list[dict[str, Any]]:
        cursor = self._require_connection().execute(
            "SELECT * FROM tool_calls WHERE turn_id = ? ORDER BY rowid", (turn_id,)
        )
        calls = []
        for row in cursor.fetchall():
            data = dict(row)
            data["arguments"] = json.loads(data.pop("arguments_json") or "{}")
            data["success"] = bool(data["success"])
            calls.append(data)
        return calls

    # -------------------------------------------------------------------------
    # Heartbeat log
    # -------------------------------------------------------------------------

    def log_heartbeat(
        self,
        task_name: str,
        result: str,
        success: bool,
        executed_at: Optional[datetime] = None,
    ) -> None:
        self._write(
            """INSERT INTO heartbeat_entries (id, task_name, result, success, executed_at)
               VALUES (?, ?, ?, ?, ?)""",
            (new_id(), task_name, result, int(success), _iso(executed_at or utcnow())),
        )

    def recent_heartbeats(self, limit: int = 20) -> list[HeartbeatLogEntry]:
        cursor = self._require_connection().execute(
            "SELECT * FROM heartbeat_entries ORDER BY executed_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        return [
            HeartbeatLogEntry(
                task_name=row["task_name"],
                result=row["result"] or "",
                success=bool(row["success"]),
                executed_at=parse_timestamp(row["executed_at"]) or utcnow(),
            )
            for row in cursor.fetchall()
        ]

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def record_transaction(
        self,
        tx_type: str,
        amount: float,
        currency: str = "credits",
        description: str = "",
        balance_after: Optional[float] = None,
    ) -> str:
        tx_id = new_id()
        self._write(
            """INSERT INTO transactions
               (id, tx_type, amount, currency, description, balance_after, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (tx_id, tx_type, amount, currency, description, balance_after, _iso(utcnow())),
        )
        return tx_id

    # -------------------------------------------------------------------------
    # Modification audit log
    # -------------------------------------------------------------------------

    def log_modification(self, entry: ModificationEntry) -> None:
        self._write(
            """INSERT INTO modifications
               (id, mod_type, description, file_path, diff, diff_truncated,
                reversible, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                entry.mod_type.value,
                entry.description,
                entry.file_path,
                entry.diff,
                int(entry.diff_truncated),
                int(entry.reversible),
                _iso(entry.timestamp),
            ),
        )

    def count_modifications(self) -> int:
        row = self._require_connection().execute(
            "SELECT COUNT(*) FROM modifications"
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def recent_modifications(self, limit: int = 20) -> list[ModificationEntry]:
        cursor = self._require_connection().execute(
            "SELECT * FROM modifications ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        return [
            ModificationEntry(
                id=row["id"],
                timestamp=parse_timestamp(row["created_at"]) or utcnow(),
                mod_type=ModificationType(row["mod_type"]),
                description=row["description"],
                file_path=row["file_path"],
                diff=row["diff"],
                diff_truncated=bool(row["diff_truncated"]),
                reversible=bool(row["reversible"]),
            )
            for row in cursor.fetchall()
        ]

    # -------------------------------------------------------------------------
    # Children
    # -------------------------------------------------------------------------

    def add_child(self, child: ChildRecord) -> None:
        self._write(
            """INSERT INTO children (id, name, sandbox_id, wallet_address, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                child.id,
                child.name,
                child.sandbox_id,
                child.wallet_address,
                child.status,
                _iso(child.created_at),
            ),
        )

    def active_children_count(self) -> int:
        row = self._require_connection().execute(
            "SELECT COUNT(*) FROM children WHERE status = 'active'"
        ).fetchone()
        return int(row[0]) if row is not None else 0

    def list_children(self) -> list[ChildRecord]:
        cursor = self._require_connection().execute(
            "SELECT * FROM children ORDER BY created_at"
        )
        return [
            ChildRecord(
                id=row["id"],
                name=row["name"],
                sandbox_id=row["sandbox_id"],
                wallet_address=row["wallet_address"],
                status=row["status"],
                created_at=parse_timestamp(row["created_at"]) or utcnow(),
            )
            for row in cursor.fetchall()
        ]

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    def save_inbox_message(self, message: InboxMessage) -> bool:
        """Store a message. Returns False when the id was already stored."""
        conn = self._require_connection()
        try:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO inbox
                   (id, from_address, to_address, content, read, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    message.id,
                    message.from_address,
                    message.to_address,
                    message.content,
                    int(message.read),
                    _iso(message.timestamp),
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        return cursor.rowcount > 0

    def unread_messages(self) -> list[InboxMessage]:
        cursor = self._require_connection().execute(
            "SELECT * FROM inbox WHERE read = 0 ORDER BY timestamp ASC, rowid ASC"
        )
        return [
            InboxMessage(
                id=row["id"],
                from_address=row["from_address"],
                to_address=row["to_address"],
                content=row["content"],
                timestamp=parse_timestamp(row["timestamp"]) or utcnow(),
                read=bool(row["read"]),
            )
            for row in cursor.fetchall()
        ]

    def mark_message_read(self, message_id: str) -> None:
        self._write("UPDATE inbox SET read = 1 WHERE id = ?", (message_id,))

    # -------------------------------------------------------------------------
    # Skills
    # -------------------------------------------------------------------------

    def save_skill(self, skill: Skill) -> None:
        self._write(
            """INSERT OR REPLACE INTO skills
               (name, description, version, auto_activate, instructions,
                requirements, file_path, loaded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                skill.name,
                skill.description,
                skill.version,
                int(skill.auto_activate),
                skill.instructions,
                json.dumps(skill.requirements),
                skill.file_path,
                _iso(utcnow()),
            ),
        )

    def get_skill(self, name: str) -> Optional[Skill]:
        row = self._require_connection().execute(
            "SELECT * FROM skills WHERE name = ?", (name,)
        ).fetchone()
        return self._row_to_skill(row) if row is not None else None

    def list_skills(self, auto_activate_only: bool = False) -> list[Skill]:
        query = "SELECT * FROM skills"
        if auto_activate_only:
            query += " WHERE auto_activate = 1"
        query += " ORDER BY name"
        cursor = self._require_connection().execute(query)
        return [self._row_to_skill(row) for row in cursor.fetchall()]

    def auto_activate_skills(self) -> list[Skill]:
        return self.list_skills(auto_activate_only=True)

    @staticmethod
    def _row_to_skill(row: sqlite3.Row) -> Skill:
        return Skill(
            name=row["name"],
            description=row["description"],
            instructions=row["instructions"],
            version=row["version"],
            auto_activate=bool(row["auto_activate"]),
            requirements=json.loads(row["requirements"] or "[]"),
            file_path=row["file_path"],
        )

    # -------------------------------------------------------------------------
    # Upstream
    # -------------------------------------------------------------------------

    def record_upstream_commit(self, commit_hash: str, message: str) -> bool:
        """Remember an upstream commit. Returns False if it was already known."""
        conn = self._require_connection()
        try:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO upstream_commits (commit_hash, message, fetched_at)
                   VALUES (?, ?, ?)""",
                (commit_hash, message, _iso(utcnow())),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        return cursor.rowcount > 0

    def mark_upstream_applied(self, commit_hash: str) -> None:
        self._write(
            "UPDATE upstream_commits SET applied = 1, reviewed = 1 WHERE commit_hash = ?",
            (commit_hash,),
        )

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        conn = self._require_connection()

        def _count(table: str) -> int:
            return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])

        return {
            "turns": _count("turns"),
            "heartbeat_entries": _count("heartbeat_entries"),
            "modifications": _count("modifications"),
            "transactions": _count("transactions"),
            "inbox_unread": int(
                conn.execute("SELECT COUNT(*) FROM inbox WHERE read = 0").fetchone()[0]
            ),
            "skills": _count("skills"),
            "db_path": str(self._db_path),
        }


class SharedStore:
    """
    The one store handle shared by the turn loop and the heartbeat scheduler.

    All access goes through a single ``asyncio.Lock``. Critical sections are a
    single store call or a small batch inside ``locked()``; callers must never
    await network I/O or timers while holding it.
    """

    def __init__(self, store: StateStore):
        self._store = store
        self._lock = asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[StateStore]:
        async with self._lock:
            yield self._store

    async def kv_get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._store.kv_get(key)

    async def kv_set(self, key: str, value: str) -> None:
        async with self._lock:
            self._store.kv_set(key, value)

    async def kv_delete(self, key: str) -> None:
        async with self._lock:
            self._store.kv_delete(key)

    async def kv_take(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._store.kv_take(key)

    async def set_agent_state(self, state: AgentState) -> AgentState:
        async with self._lock:
            return self._store.set_agent_state(state)

    async def get_agent_state(self) -> AgentState:
        async with self._lock:
            return self._store.get_agent_state()

    def close(self) -> None:
        self._store.close()
