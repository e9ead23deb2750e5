"""automaton.toml: where it lives, and dotted-key access to its tables.

Each top-level table (``[loop]``, ``[inference]``, ...) feeds one settings
section in ``automaton.config``. Values set from the CLI are written back
atomically so the daemon never reads a half-written file.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any

import tomli_w

CONFIG_FILENAME = "automaton.toml"


def config_search_path() -> list[Path]:
    """Candidate locations, most specific first: cwd, agent home, XDG config."""
    home = Path(os.environ.get("AUTOMATON_HOME", "~/.automaton")).expanduser()
    return [
        Path.cwd() / CONFIG_FILENAME,
        home / CONFIG_FILENAME,
        Path.home() / ".config" / "automaton" / CONFIG_FILENAME,
    ]


def find_config() -> Path | None:
    return next((p for p in config_search_path() if p.is_file()), None)


def load_config(path: Path) -> dict[str, Any]:
    with path.open("rb") as fh:
        return tomllib.load(fh)


def write_config(path: Path, data: dict[str, Any]) -> None:
    """Serialize to a sibling temp file, then rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "wb", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    ) as tmp:
        staged = Path(tmp.name)
        try:
            tomli_w.dump(data, tmp)
        except BaseException:
            tmp.close()
            with contextlib.suppress(OSError):
                staged.unlink()
            raise
    staged.replace(path)


def parse_key(dotted_key: str) -> list[str]:
    """``"loop.max_tool_calls_per_turn"`` -> ``["loop", "max_tool_calls_per_turn"]``."""
    parts = dotted_key.strip().split(".")
    if parts == [""]:
        raise ValueError("empty config key")
    if "" in parts:
        raise ValueError(f"config key has an empty segment: {dotted_key!r}")
    return parts


def get_value(data: dict[str, Any], dotted_key: str) -> Any:
    node: Any = data
    for part in parse_key(dotted_key):
        try:
            node = node[part]
        except (KeyError, TypeError):
            raise KeyError(dotted_key) from None
    return node


def set_value(data: dict[str, Any], dotted_key: str, value: Any) -> dict[str, Any]:
    """Assign ``value`` under ``dotted_key``, creating (or replacing non-table) parents."""
    *parents, leaf = parse_key(dotted_key)
    node = data
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value
    return data


def coerce_cli_value(raw: str) -> Any:
    """Read ``true``/``false`` as bools and numeric text as int or float."""
    text = raw.strip()
    if text.lower() in ("true", "false"):
        return text.lower() == "true"
    with contextlib.suppress(ValueError):
        return int(text)
    with contextlib.suppress(ValueError):
        return float(text)
    return raw
