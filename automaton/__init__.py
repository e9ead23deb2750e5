"""
Automaton — a self-sustaining autonomous agent runtime.

An automaton pays for its own compute. It runs a continuous think -> act ->
observe loop, modifies its own files through an audited policy layer, and
degrades (and eventually halts) as its balance runs out.

Architecture (bottom to top):
    1. State store (sqlite, one lock-guarded shared handle)
    2. Survival tiers (balance -> behavioral mode)
    3. Self-modification safety layer (path/command policy + audit log)
    4. Heartbeat scheduler (cron-driven background tasks)
    5. Turn loop (inference + sequential tool execution)
    6. Daemon (runs both loops, coordinates shutdown)
"""

__version__ = "0.1.0"
__author__ = "Automaton Contributors"
