"""Rich rendering for the CLI: consoles, state badges, tables, durations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text

from automaton.types import AgentState, SurvivalTier

# Agent states and survival tiers share one badge vocabulary.
_BADGES: dict[str, tuple[str, str]] = {
    AgentState.RUNNING.value: ("+", "green"),
    SurvivalTier.NORMAL.value: ("+", "green"),
    AgentState.INITIALIZING.value: ("~", "cyan"),
    AgentState.WAKING.value: ("~", "cyan"),
    AgentState.SLEEPING.value: ("z", "blue"),
    SurvivalTier.LOW_COMPUTE.value: ("!", "yellow"),
    SurvivalTier.CRITICAL.value: ("!", "bold red"),
    SurvivalTier.DEAD.value: ("x", "red"),
}


def make_console(obj: dict[str, Any]) -> Console:
    """A console honoring the global ``--no-color`` flag stored on the click context."""
    return Console(no_color=bool(obj.get("no_color")), highlight=False)


def badge(value: str, label: Optional[str] = None) -> Text:
    """``"+ state: running"`` style line, colored by the value."""
    glyph, style = _BADGES.get(value, ("?", "dim"))
    text = Text(f"{glyph} ", style=style)
    text.append(f"{label}: {value}" if label else value)
    return text


def humanize_seconds(seconds: float) -> str:
    whole = max(0, int(seconds))
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def when(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value is not None else "-"


def rows_table(title: str, columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> Table:
    table = Table(title=title, header_style="bold", title_justify="left")
    for column in columns:
        table.add_column(column, overflow="fold")
    for row in rows:
        table.add_row(*(str(cell) for cell in row))
    return table
