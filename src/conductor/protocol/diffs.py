"""Summaries of unified diffs and patch change maps."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .events import DiffEvent, FileChange

__all__ = ["changes_from_mapping", "changes_from_sequence", "summarize_unified_diff"]

_HEADER_RE = re.compile(r"^(---|\+\+\+) (.+?)(?:\t.*)?$")
_DEV_NULL = "/dev/null"


def _strip_prefix(path: str) -> Optional[str]:
    if path == _DEV_NULL:
        return None
    if path.startswith("a/") or path.startswith("b/"):
        return path[2:]
    return path


def _merge_change(existing: Optional[str], kind: str) -> str:
    if existing is None or existing == kind:
        return kind
    return "updated"


def summarize_unified_diff(diff: str, *, source: str = "diff") -> DiffEvent:
    """Extract touched files and +/- line counts from a unified diff."""
    files: List[str] = []
    changes: Dict[str, str] = {}
    added = 0
    removed = 0
    old_path: Optional[str] = None

    for line in diff.split("\n"):
        header = _HEADER_RE.match(line)
        if header:
            marker, raw_path = header.groups()
            normalised = _strip_prefix(raw_path)
            if normalised and normalised not in files:
                files.append(normalised)
            if marker == "---":
                old_path = raw_path
                continue
            new_path = raw_path
            old_normalised = _strip_prefix(old_path) if old_path else None
            if old_path == _DEV_NULL and normalised:
                changes[normalised] = _merge_change(changes.get(normalised), "added")
            elif new_path == _DEV_NULL and old_normalised:
                changes[old_normalised] = _merge_change(changes.get(old_normalised), "removed")
            else:
                target = normalised or old_normalised
                if target:
                    changes[target] = _merge_change(changes.get(target), "updated")
            old_path = None
            continue
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1

    if not changes:
        changes = {path: "updated" for path in files}

    return DiffEvent(
        files=tuple(files),
        added=added,
        removed=removed,
        changes=tuple(FileChange(path=path, change=kind) for path, kind in changes.items()),
        source=source,
    )


def changes_from_mapping(changes: Mapping[str, Any], *, source: str) -> DiffEvent:
    """Build a diff event from a ``{path: {"add"|"update"|"delete"|"remove": ...}}`` map."""
    summary: List[FileChange] = []
    for path, change in changes.items():
        kind = "updated"
        if isinstance(change, Mapping):
            if "add" in change:
                kind = "added"
            elif "delete" in change or "remove" in change:
                kind = "removed"
        summary.append(FileChange(path=str(path), change=kind))
    return DiffEvent(
        files=tuple(item.path for item in summary),
        changes=tuple(summary),
        source=source,
    )


def changes_from_sequence(changes: Sequence[Any], *, source: str) -> DiffEvent:
    """Build a diff event from a ``[{"path": ..., "kind": ...}]`` list."""
    summary: List[FileChange] = []
    for change in changes:
        if not isinstance(change, Mapping):
            continue
        path = str(change.get("path") or "(unknown path)")
        raw_kind = str(change.get("kind") or "")
        if raw_kind == "add":
            kind = "added"
        elif raw_kind in {"remove", "delete"}:
            kind = "removed"
        else:
            kind = "updated"
        summary.append(FileChange(path=path, change=kind))
    return DiffEvent(
        files=tuple(item.path for item in summary),
        changes=tuple(summary),
        source=source,
    )
