"""
Heartbeat Scheduler — the automaton's background pulse.

A second loop, independent of the turn loop, that runs short tasks on cron
schedules: a liveness ping, balance checks, the inbox. It never calls the
turn loop; everything it learns goes into the store, and anything urgent is
left as a one-shot signal for the next turn to pick up.

Each tick walks the entries in order. An entry is due when the next cron
fire time strictly after its last run has already passed, so a tick that
lands late still catches up exactly once. The last run is recorded as the
cron slot that fired, not the tick time: an every-5-minutes entry that ran
for the 12:00 slot at 12:03:30 is due again at 12:05, five minutes after
its recorded run. It is updated whether the task succeeds or not, which
keeps a failing task from firing on every tick.

Task failures are logged and recorded; the tick goes on. Failing to write
the heartbeat log is different: it aborts the tick with HeartbeatError.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import structlog
import yaml
from croniter import croniter

from automaton.config import HeartbeatConfig
from automaton.errors import ConfigError, HeartbeatError, StoreError
from automaton.heartbeat.tasks import HeartbeatTasks
from automaton.state.store import SharedStore
from automaton.types import HeartbeatEntry, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_HEARTBEAT_ENTRIES: tuple[HeartbeatEntry, ...] = (
    HeartbeatEntry(name="heartbeat_ping", schedule="*/5 * * * *", task="heartbeat_ping"),
    HeartbeatEntry(name="check_credits", schedule="*/10 * * * *", task="check_credits"),
    HeartbeatEntry(name="check_usdc_balance", schedule="*/10 * * * *", task="check_usdc_balance"),
    HeartbeatEntry(name="check_social_inbox", schedule="*/5 * * * *", task="check_social_inbox"),
)


def default_heartbeat_entries() -> list[HeartbeatEntry]:
    return [
        HeartbeatEntry(e.name, e.schedule, e.task, e.enabled, dict(e.params))
        for e in DEFAULT_HEARTBEAT_ENTRIES
    ]


def _entry_from_dict(item: Any) -> HeartbeatEntry:
    if not isinstance(item, dict):
        raise ValueError(f"entry must be a mapping, got {type(item).__name__}")
    name = item.get("name")
    schedule = item.get("schedule")
    if not isinstance(name, str) or not name:
        raise ValueError("entry is missing a name")
    if not isinstance(schedule, str) or not schedule.strip():
        raise ValueError(f"entry '{name}' is missing a schedule")
    params = item.get("params") or {}
    if not isinstance(params, dict):
        raise ValueError(f"entry '{name}' params must be a mapping")
    return HeartbeatEntry(
        name=name,
        schedule=schedule.strip(),
        task=str(item.get("task") or name),
        enabled=bool(item.get("enabled", True)),
        params=params,
    )


def load_heartbeat_entries(path: Path) -> list[HeartbeatEntry]:
    """Read heartbeat.yml. A missing file yields the default entries."""
    if not path.exists():
        logger.debug("heartbeat.config_missing", path=str(path))
        return default_heartbeat_entries()

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e

    raw_entries = data.get("entries", []) if isinstance(data, dict) else data
    if not isinstance(raw_entries, list):
        raise ConfigError(f"{path}: expected a list of entries")

    entries: list[HeartbeatEntry] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_entries):
        try:
            entry = _entry_from_dict(item)
        except ValueError as e:
            logger.warning("heartbeat.entry_skipped", index=index, error=str(e))
            continue
        if entry.name in seen:
            logger.warning("heartbeat.duplicate_entry_skipped", name=entry.name)
            continue
        seen.add(entry.name)
        entries.append(entry)

    logger.info("heartbeat.config_loaded", path=str(path), entries=len(entries))
    return entries


def write_heartbeat_entries(path: Path, entries: Iterable[HeartbeatEntry]) -> None:
    """Atomically write entries to heartbeat.yml."""
    payload = {"entries": [entry.to_dict() for entry in entries]}
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp", prefix=".heartbeat_")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(payload, f, sort_keys=False)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class HeartbeatScheduler:
    def __init__(
        self,
        shared: SharedStore,
        tasks: HeartbeatTasks,
        entries: list[HeartbeatEntry],
        config: HeartbeatConfig,
        cancel_event: Optional[asyncio.Event] = None,
        clock: Callable = utcnow,
    ):
        self._shared = shared
        self._tasks = tasks
        self._entries = list(entries)
        self._config = config
        self._cancel = cancel_event or asyncio.Event()
        self._clock = clock
        self._last_run: dict[str, datetime] = {}

        self._tick_count = 0
        self._tasks_run = 0
        self._task_failures = 0
        self._tick_failures = 0
        self._last_tick_at: Optional[datetime] = None

    @property
    def entries(self) -> list[HeartbeatEntry]:
        return list(self._entries)

    @property
    def last_run(self) -> dict[str, datetime]:
        return dict(self._last_run)

    def is_due(self, entry: HeartbeatEntry, last_run: Optional[datetime], now: datetime) -> bool:
        """True when the first fire time strictly after ``last_run`` is not in the future.

        A malformed schedule is never due.
        """
        if last_run is None:
            last_run = now - timedelta(minutes=self._config.default_lookback_minutes)
        try:
            next_fire = croniter(entry.schedule, last_run).get_next(datetime)
        except (ValueError, KeyError) as e:
            logger.warning(
                "heartbeat.invalid_schedule",
                entry=entry.name,
                schedule=entry.schedule,
                error=str(e),
            )
            return False
        return next_fire <= now

    @staticmethod
    def fired_slot(entry: HeartbeatEntry, now: datetime) -> datetime:
        """The latest fire time at or before ``now``, recorded as the entry's last run."""
        slot = croniter(entry.schedule, now + timedelta(seconds=1)).get_prev(datetime)
        return min(slot, now)

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Run every due entry once, in order. Returns how many ran."""
        now = now or self._clock()
        self._tick_count += 1
        self._last_tick_at = now
        ran = 0

        for entry in self._entries:
            if self._cancel.is_set():
                break
            if not entry.enabled:
                continue
            if not self.is_due(entry, self._last_run.get(entry.name), now):
                continue

            logger.debug("heartbeat.task_running", entry=entry.name, task=entry.task)
            try:
                result = await self._tasks.run(entry.task, entry.params)
                success = True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result = f"Error: {e}"
                success = False
                self._task_failures += 1
                logger.warning("heartbeat.task_failed", entry=entry.name, task=entry.task, error=str(e))

            self._last_run[entry.name] = self.fired_slot(entry, now)
            ran += 1
            self._tasks_run += 1

            try:
                async with self._shared.locked() as db:
                    db.log_heartbeat(entry.name, result, success, executed_at=now)
            except StoreError as e:
                raise HeartbeatError(f"Failed to log heartbeat '{entry.name}': {e}") from e

        return ran

    async def run(self) -> None:
        """Tick every ``tick_seconds`` until cancelled."""
        logger.info(
            "heartbeat.started",
            entries=len(self._entries),
            tick_seconds=self._config.tick_seconds,
        )
        while not self._cancel.is_set():
            try:
                await self.tick()
            except HeartbeatError as e:
                self._tick_failures += 1
                logger.error("heartbeat.tick_failed", error=str(e))

            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=self._config.tick_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("heartbeat.stopped", ticks=self._tick_count)

    @property
    def status(self) -> dict[str, Any]:
        return {
            "entries": len(self._entries),
            "enabled_entries": sum(1 for e in self._entries if e.enabled),
            "ticks": self._tick_count,
            "tasks_run": self._tasks_run,
            "task_failures": self._task_failures,
            "tick_failures": self._tick_failures,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_run": {name: ts.isoformat() for name, ts in self._last_run.items()},
        }
