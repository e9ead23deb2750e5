"""
Audit Log — the append-only record of every self-modification.

Each method builds one immutable ModificationEntry outside the store lock
(diffs are truncated there too, so a large edit never holds the lock longer
than a single INSERT) and appends it. There is no update or
delete path: the creator reviews the trail, the automaton only adds to it.
"""

from __future__ import annotations

from typing import Optional

import structlog

from automaton.self_mod.code import truncate_diff
from automaton.state.store import SharedStore
from automaton.types import ModificationEntry, ModificationType, new_id, utcnow

logger = structlog.get_logger(__name__)


class AuditLog:
    def __init__(self, shared: SharedStore):
        self._shared = shared

    async def _append(
        self,
        mod_type: ModificationType,
        description: str,
        file_path: Optional[str] = None,
        diff: Optional[str] = None,
        reversible: bool = True,
    ) -> ModificationEntry:
        truncated = False
        if diff is not None:
            diff, truncated = truncate_diff(diff)
        entry = ModificationEntry(
            id=new_id(),
            timestamp=utcnow(),
            mod_type=mod_type,
            description=description,
            file_path=file_path,
            diff=diff,
            diff_truncated=truncated,
            reversible=reversible,
        )
        async with self._shared.locked() as db:
            db.log_modification(entry)
        logger.info(
            "audit.appended",
            mod_type=mod_type.value,
            file_path=file_path,
            reversible=reversible,
        )
        return entry

    async def log_code_edit(self, description: str, file_path: str, diff: str) -> ModificationEntry:
        return await self._append(ModificationType.CODE_EDIT, description, file_path, diff)

    async def log_tool_install(self, tool_name: str, description: str) -> ModificationEntry:
        logger.debug("audit.tool_install", tool=tool_name)
        return await self._append(ModificationType.TOOL_INSTALL, description)

    async def log_config_update(self, description: str, diff: str) -> ModificationEntry:
        return await self._append(
            ModificationType.CONFIG_UPDATE, description, "automaton.toml", diff
        )

    async def log_skill_add(self, skill_name: str, file_path: str) -> ModificationEntry:
        return await self._append(
            ModificationType.SKILL_ADD, f"Added skill: {skill_name}", file_path
        )

    async def log_heartbeat_update(self, description: str) -> ModificationEntry:
        return await self._append(
            ModificationType.HEARTBEAT_UPDATE, description, "heartbeat.yml"
        )

    async def log_upstream_pull(
        self, commit_hash: str, description: str, diff: str
    ) -> ModificationEntry:
        # A merge cannot be undone by the agent itself.
        return await self._append(
            ModificationType.UPSTREAM,
            f"Upstream pull {commit_hash}: {description}",
            diff=diff,
            reversible=False,
        )

    async def recent(self, limit: int = 20) -> list[ModificationEntry]:
        async with self._shared.locked() as db:
            return db.recent_modifications(limit)

    async def count(self) -> int:
        async with self._shared.locked() as db:
            return db.count_modifications()
