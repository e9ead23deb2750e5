"""
Code editing — the one way the automaton rewrites its own files.

Every edit goes through the same contract: validate the target path, read
the previous content (a missing file means the edit creates it), write the
full new content, then compute a unified diff for the audit trail. The
recorded diff is capped at 64 KiB; the file itself is never truncated.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass

import structlog

from automaton.api.conway import ConwayClient
from automaton.errors import SandboxError
from automaton.harness.safety import validate_write_path

logger = structlog.get_logger(__name__)

MAX_DIFF_BYTES = 64 * 1024
TRUNCATION_MARKER = "\n... [diff truncated, exceeded 64KB limit]\n"


def compute_diff(old: str, new: str, path: str) -> str:
    """Unified diff of two texts with 3 lines of context."""
    diff_lines = list(difflib.unified_diff(
        old.splitlines(keepends=True),
        new.splitlines(keepends=True),
        n=3,
    ))
    # The header is always present, even for identical texts; drop difflib's own.
    body = []
    for line in diff_lines[2:]:
        if not line.endswith("\n"):
            line += "\n\\ No newline at end of file\n"
        body.append(line)
    return f"--- a/{path}\n+++ b/{path}\n" + "".join(body)


def truncate_diff(diff: str) -> tuple[str, bool]:
    """Cap a diff at MAX_DIFF_BYTES of UTF-8, appending a marker when cut.

    Returns ``(text, truncated)``. The cut never splits a multi-byte
    character, so the kept prefix may be a few bytes short of the cap.
    """
    encoded = diff.encode("utf-8")
    if len(encoded) <= MAX_DIFF_BYTES:
        return diff, False
    kept = encoded[:MAX_DIFF_BYTES].decode("utf-8", errors="ignore")
    return kept + TRUNCATION_MARKER, True


@dataclass(frozen=True)
class EditResult:
    path: str
    created: bool
    old_lines: int
    new_lines: int
    diff: str
    diff_truncated: bool
    summary: str


async def edit_file(sandbox: ConwayClient, path: str, content: str) -> EditResult:
    """Validate, read, write and diff one file in the sandbox.

    Raises PathPolicyViolation before any I/O if the path is not writable.
    """
    normalized = validate_write_path(path)

    try:
        old_content = await sandbox.read_file(normalized)
        created = False
    except SandboxError as e:
        logger.info("self_mod.creating_file", path=normalized, reason=str(e)[:200])
        old_content = ""
        created = True

    await sandbox.write_file(normalized, content)

    diff, truncated = truncate_diff(compute_diff(old_content, content, normalized))
    old_lines = len(old_content.splitlines())
    new_lines = len(content.splitlines())
    delta = new_lines - old_lines
    summary = (
        f"{normalized}: {'created' if created else 'modified'} "
        f"({old_lines} -> {new_lines} lines, {'+' if delta >= 0 else ''}{delta})\n{diff}"
    )

    logger.info(
        "self_mod.file_edited",
        path=normalized,
        created=created,
        old_lines=old_lines,
        new_lines=new_lines,
        diff_truncated=truncated,
    )
    return EditResult(
        path=normalized,
        created=created,
        old_lines=old_lines,
        new_lines=new_lines,
        diff=diff,
        diff_truncated=truncated,
        summary=summary,
    )
