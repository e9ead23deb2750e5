"""
Upstream awareness — see and apply updates to the automaton's own runtime.

The runtime checkout lives at /app inside the sandbox. Checking is read-only
(fetch + log); applying is a git merge and is recorded as an irreversible
audit entry.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from automaton.api.conway import ConwayClient
from automaton.errors import UpstreamError
from automaton.self_mod.audit import AuditLog

logger = structlog.get_logger(__name__)

REPO_DIR = "/app"
_COMMIT_HASH_RE = re.compile(r"^[0-9a-fA-F]{7,40}$")


@dataclass(frozen=True)
class UpstreamCommit:
    hash: str
    message: str
    author: str


def _require_commit_hash(commit_hash: str) -> str:
    # The hash is interpolated into a shell command.
    if not _COMMIT_HASH_RE.match(commit_hash):
        raise UpstreamError(f"Invalid commit hash: {commit_hash!r}")
    return commit_hash


def parse_commit_log(output: str) -> list[UpstreamCommit]:
    """Parse ``git log --pretty=format:'%H|%s|%an'`` output, skipping odd lines."""
    commits = []
    for line in output.splitlines():
        parts = line.split("|", 2)
        if len(parts) == 3:
            commits.append(UpstreamCommit(hash=parts[0], message=parts[1], author=parts[2]))
    return commits


async def check_upstream(sandbox: ConwayClient) -> list[UpstreamCommit]:
    """Commits on origin/main that are not yet in HEAD. Empty when fetch fails."""
    fetch = await sandbox.exec(f"cd {REPO_DIR} && git fetch origin main 2>&1", timeout_ms=30_000)
    if fetch.exit_code != 0:
        logger.warning("upstream.fetch_failed", stderr=fetch.stderr[:500], stdout=fetch.stdout[:500])
        return []

    log = await sandbox.exec(
        f"cd {REPO_DIR} && git log HEAD..origin/main --pretty=format:'%H|%s|%an' 2>/dev/null",
        timeout_ms=10_000,
    )
    if not log.stdout.strip():
        return []

    commits = parse_commit_log(log.stdout)
    logger.info("upstream.commits_found", count=len(commits))
    return commits


async def show_commit_diff(sandbox: ConwayClient, commit_hash: str) -> str:
    commit_hash = _require_commit_hash(commit_hash)
    result = await sandbox.exec(
        f"cd {REPO_DIR} && git diff HEAD..{commit_hash} 2>/dev/null", timeout_ms=10_000
    )
    return result.stdout


async def apply_upstream(sandbox: ConwayClient, audit: AuditLog, commit_hash: str) -> str:
    """Merge one upstream commit and record the irreversible audit entry."""
    commit_hash = _require_commit_hash(commit_hash)
    diff = await show_commit_diff(sandbox, commit_hash)

    result = await sandbox.exec(f"cd {REPO_DIR} && git merge {commit_hash} 2>&1", timeout_ms=30_000)
    if result.exit_code != 0:
        raise UpstreamError(f"Upstream merge failed: {result.stderr or result.stdout}")

    await audit.log_upstream_pull(commit_hash, "merged origin/main", diff)
    logger.info("upstream.applied", commit=commit_hash)
    return f"Applied upstream commit: {commit_hash}"
