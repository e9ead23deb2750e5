from automaton.heartbeat.scheduler import (
    DEFAULT_HEARTBEAT_ENTRIES,
    HeartbeatScheduler,
    load_heartbeat_entries,
    write_heartbeat_entries,
)
from automaton.heartbeat.tasks import HeartbeatTasks

__all__ = [
    "DEFAULT_HEARTBEAT_ENTRIES",
    "HeartbeatScheduler",
    "HeartbeatTasks",
    "load_heartbeat_entries",
    "write_heartbeat_entries",
]
