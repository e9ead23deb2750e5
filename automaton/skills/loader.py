"""
Skill Loader — discovers and parses SKILL.md files.

A skill is a directory under the skills dir holding a SKILL.md: Markdown
instructions with an optional YAML frontmatter block:

    ---
    name: web-scraper
    description: Scrape and summarize pages for paying clients
    version: 1.2.0
    auto_activate: true
    requirements:
      - {type: bin, value: curl}
    ---

    Instructions for the model...

Auto-activated skills are injected into the system prompt every turn. A
skill file that cannot be read or parsed is skipped with a warning; the
other skills still load.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

from automaton.self_mod.audit import AuditLog
from automaton.state.store import SharedStore
from automaton.types import Skill

logger = structlog.get_logger(__name__)

SKILL_FILENAME = "SKILL.md"

# Match --- YAML block --- at the very start of the file
_FRONTMATTER_RE = re.compile(r"^\s*---\s*\n(.*?)\n---\s*(?:\n|$)(.*)", re.DOTALL)


def _requirement_text(item: Any) -> str:
    if isinstance(item, dict):
        kind = item.get("type") or item.get("kind") or "requirement"
        return f"{kind}:{item.get('value', '')}"
    return str(item)


def parse_skill_file(path: Path) -> Optional[Skill]:
    """
    Parse one SKILL.md into a Skill.

    Returns None (with a warning logged) if the file cannot be parsed. A
    file without frontmatter is all instructions, named after its directory.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("skill_loader.read_error", path=str(path), error=str(e))
        return None

    meta: dict[str, Any] = {}
    body = raw
    match = _FRONTMATTER_RE.match(raw)
    if match:
        try:
            loaded = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as e:
            logger.warning("skill_loader.invalid_yaml", path=str(path), error=str(e))
            return None
        if not isinstance(loaded, dict):
            logger.warning("skill_loader.frontmatter_not_mapping", path=str(path))
            return None
        meta = loaded
        body = match.group(2)

    requirements = meta.get("requirements") or []
    if not isinstance(requirements, list):
        logger.warning("skill_loader.invalid_requirements", path=str(path))
        return None

    return Skill(
        name=str(meta.get("name") or path.parent.name or "unnamed"),
        description=str(meta.get("description") or ""),
        instructions=body.strip(),
        version=str(meta.get("version") or "1.0.0"),
        auto_activate=bool(meta.get("auto_activate", False)),
        requirements=[_requirement_text(r) for r in requirements],
        file_path=str(path),
    )


def discover_skills(directory: Path) -> list[Skill]:
    """Parse every ``<dir>/<skill>/SKILL.md`` (and a top-level SKILL.md), sorted by path."""
    if not directory.is_dir():
        logger.debug("skill_loader.no_directory", path=str(directory))
        return []

    candidates = sorted(directory.glob(f"*/{SKILL_FILENAME}"))
    top_level = directory / SKILL_FILENAME
    if top_level.is_file():
        candidates.insert(0, top_level)

    skills: list[Skill] = []
    for skill_file in candidates:
        if skill_file.parent.name.startswith("."):
            continue
        skill = parse_skill_file(skill_file)
        if skill is None:
            logger.warning("skill_loader.skipped", file=str(skill_file))
            continue
        skills.append(skill)
        logger.info("skill_loader.loaded", name=skill.name, version=skill.version)
    return skills


async def load_skills(shared: SharedStore, audit: AuditLog, directory: Path) -> list[Skill]:
    """Discover skills and persist them. Skills not seen before are audited as additions."""
    skills = discover_skills(directory)
    added: list[Skill] = []
    async with shared.locked() as db:
        for skill in skills:
            if db.get_skill(skill.name) is None:
                added.append(skill)
            db.save_skill(skill)

    for skill in added:
        await audit.log_skill_add(skill.name, skill.file_path or "")

    logger.info("skill_loader.synced", total=len(skills), added=len(added))
    return skills
