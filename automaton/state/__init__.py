"""Persisted state — the store both loops share."""
from automaton.state.store import SCHEMA_VERSION, SharedStore, StateStore

__all__ = ["StateStore", "SharedStore", "SCHEMA_VERSION"]
