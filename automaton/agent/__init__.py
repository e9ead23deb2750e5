"""Prompt and per-turn context assembly for the turn loop."""
