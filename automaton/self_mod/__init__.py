"""Self-modification: policy-checked edits, tool installs and upstream merges, all audited."""

from automaton.self_mod.audit import AuditLog
from automaton.self_mod.code import EditResult, compute_diff, edit_file, truncate_diff

__all__ = ["AuditLog", "EditResult", "compute_diff", "edit_file", "truncate_diff"]
