"""Tests for SKILL.md parsing, discovery and syncing into the store."""

from __future__ import annotations

from pathlib import Path

import pytest

from automaton.self_mod.audit import AuditLog
from automaton.skills.loader import discover_skills, load_skills, parse_skill_file
from automaton.types import ModificationType


def _write_skill(root: Path, name: str, text: str) -> Path:
    path = root / name / "SKILL.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


SCRAPER = """\
---
name: web-scraper
description: Scrape pages for clients
version: 1.2.0
auto_activate: true
requirements:
  - {type: bin, value: curl}
  - python3
---

Fetch the page with curl, then summarize it.
"""


class TestParseSkillFile:
    def test_frontmatter_and_body(self, tmp_path):
        skill = parse_skill_file(_write_skill(tmp_path, "scraper", SCRAPER))
        assert skill.name == "web-scraper"
        assert skill.version == "1.2.0"
        assert skill.auto_activate is True
        assert skill.requirements == ["bin:curl", "python3"]
        assert skill.instructions == "Fetch the page with curl, then summarize it."

    def test_no_frontmatter_uses_directory_name(self, tmp_path):
        skill = parse_skill_file(_write_skill(tmp_path, "notes-helper", "Just instructions.\n"))
        assert skill.name == "notes-helper"
        assert skill.version == "1.0.0"
        assert skill.auto_activate is False
        assert skill.instructions == "Just instructions."

    @pytest.mark.parametrize(
        "text",
        [
            "---\nname: [unclosed\n---\nbody\n",
            "---\n- a list\n---\nbody\n",
            "---\nname: x\nrequirements: curl\n---\nbody\n",
        ],
    )
    def test_unparseable_files_return_none(self, tmp_path, text: str):
        assert parse_skill_file(_write_skill(tmp_path, "bad", text)) is None


def test_discover_skips_broken_and_hidden(tmp_path):
    _write_skill(tmp_path, "scraper", SCRAPER)
    _write_skill(tmp_path, "broken", "---\nname: [oops\n---\n")
    _write_skill(tmp_path, ".draft", "hidden\n")
    assert [s.name for s in discover_skills(tmp_path)] == ["web-scraper"]


def test_discover_missing_directory(tmp_path):
    assert discover_skills(tmp_path / "nope") == []


@pytest.mark.asyncio
async def test_load_skills_audits_only_new_skills(tmp_path, shared, store):
    _write_skill(tmp_path, "scraper", SCRAPER)
    audit = AuditLog(shared)

    await load_skills(shared, audit, tmp_path)
    await load_skills(shared, audit, tmp_path)

    [entry] = await audit.recent()
    assert entry.mod_type is ModificationType.SKILL_ADD
    assert entry.description == "Added skill: web-scraper"
    assert [s.name for s in store.auto_activate_skills()] == ["web-scraper"]
