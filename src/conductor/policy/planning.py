"""Detect implementer runs that narrated a plan without touching the repository."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..tools.vcs import RepositoryState

__all__ = [
    "ESCALATION_SUFFIXES",
    "PlanningDetection",
    "detect_planning_without_implementation",
    "escalation_suffix",
    "find_planning_indicators",
]

ESCALATION_SUFFIXES: tuple[str, ...] = (
    "Please implement the changes now, not just plan them.",
    "IMPORTANT: Execute the actual code changes immediately.",
    "CRITICAL: You must write actual code files NOW.",
)

_LIST_MARKER = r"(?:[-*+]\s+|\d+[.)]\s+)?"
_EMPHASIS = r"(?:[*_]{1,2})?"

# Section labels that introduce an outline rather than a change summary.
PLAN_HEADING_RE = re.compile(
    rf"^\s*{_LIST_MARKER}(?:#{{1,6}}\s*)?{_EMPHASIS}"
    r"(?:plan|implementation plan|proposed plan|proposed changes|plan of action|next steps|approach|outline|steps|todo)"
    rf"{_EMPHASIS}\s*:{_EMPHASIS}",
    re.IGNORECASE,
)

# Forward-looking narration at the start of a line.
INTENT_RE = re.compile(
    rf"^\s*{_LIST_MARKER}{_EMPHASIS}"
    r"(?:here(?:'s| is) (?:the|my) plan"
    r"|i(?: will|'ll| plan to| am going to| intend to| would)\b"
    r"|i'm going to\b"
    r"|let me\b"
    r"|(?:first|next|then),? i(?: will|'ll)\b"
    r"|we (?:will|'ll|should|need to)\b"
    r"|the plan is\b)",
    re.IGNORECASE,
)

# Deferral phrases that mark work as not yet done.
DEFERRAL_RE = re.compile(
    r"\b(?:before (?:coding|implementing|making changes)"
    r"|awaiting (?:confirmation|approval)"
    r"|in a follow-?up"
    r"|(?:will|to) (?:implement|apply|make) (?:the )?changes (?:later|shortly|soon|next))\b",
    re.IGNORECASE,
)

ENUMERATED_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\S")

MAX_FOLLOWING_ITEMS = 3


@dataclass(slots=True)
class PlanningDetection:
    """Outcome of the planning-without-implementation heuristic."""

    detected: bool
    commit_changed: bool = False
    working_tree_changed: bool = False
    repository_status_unavailable: bool = False
    planning_indicators: List[str] = field(default_factory=list)


def find_planning_indicators(text: Optional[str]) -> List[str]:
    """Return the lines of ``text`` that read like a plan rather than a result.

    A plan heading also pulls in the enumerated items directly beneath it
    (up to a few) so diagnostics show what was outlined.
    """
    if not text:
        return []
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    indicators: List[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        stripped = line.strip()
        index += 1
        if not stripped:
            continue
        if PLAN_HEADING_RE.match(line):
            indicators.append(stripped)
            taken = 0
            while index < len(lines) and taken < MAX_FOLLOWING_ITEMS:
                candidate = lines[index]
                if not candidate.strip():
                    index += 1
                    continue
                if not ENUMERATED_RE.match(candidate):
                    break
                indicators.append(candidate.strip())
                taken += 1
                index += 1
            continue
        if INTENT_RE.match(line) or DEFERRAL_RE.search(line):
            indicators.append(stripped)
    return indicators


def _snapshot_unavailable(state: Optional[RepositoryState]) -> bool:
    return state is None or state.status_check_failed or state.commit_hash is None


def detect_planning_without_implementation(
    text: Optional[str],
    before: Optional[RepositoryState],
    after: Optional[RepositoryState],
) -> PlanningDetection:
    """Flag output that contains plan language while the repository is unchanged.

    Both snapshots must be usable; otherwise the result reports
    ``repository_status_unavailable`` and never flags the attempt.
    """
    indicators = find_planning_indicators(text)
    if _snapshot_unavailable(before) or _snapshot_unavailable(after):
        return PlanningDetection(
            detected=False,
            repository_status_unavailable=True,
            planning_indicators=indicators,
        )
    assert before is not None and after is not None

    commit_changed = before.commit_hash != after.commit_hash
    working_tree_changed = (
        before.has_changes != after.has_changes
        or (before.status_output or "") != (after.status_output or "")
        or before.diff_hash != after.diff_hash
    )
    detected = not commit_changed and not working_tree_changed and bool(indicators)
    return PlanningDetection(
        detected=detected,
        commit_changed=commit_changed,
        working_tree_changed=working_tree_changed,
        planning_indicators=indicators,
    )


def escalation_suffix(retry: int) -> str:
    """Return the instruction appended on planning retry number ``retry`` (1-based)."""
    if retry <= 0:
        return ""
    return ESCALATION_SUFFIXES[min(retry, len(ESCALATION_SUFFIXES)) - 1]
