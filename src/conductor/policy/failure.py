"""Failure sentinel detection and structured failure reports.

Agents signal an unrecoverable problem by starting their final message with
``FAILED:``. The rest of the message may carry labelled sections::

    FAILED: Cannot proceed due to conflicting requirements

    Requirements:
    - ...
    Problems:
    - ...
    Possible solutions:
    - ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

__all__ = [
    "AgentRole",
    "FailureReport",
    "detect_failure",
    "first_content_line",
    "format_failure_report",
    "infer_source_agent",
    "parse_failure_report",
]

FAILED_PREFIX_RE = re.compile(r"^\s*FAILED:\s*", re.IGNORECASE)

_SECTION_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:[*_]{1,2})?"
    r"(?P<label>requirements|problems|possible solutions|solutions)"
    r"(?P<colon>\s*:)?(?:[*_]{1,2})?(?(colon)|\s*:)\s*(?P<rest>.*)$",
    re.IGNORECASE,
)
_HEADING_RE = re.compile(
    r"^\s*#{1,6}\s*(?P<label>requirements|problems|possible solutions|solutions)\s*:?\s*$",
    re.IGNORECASE,
)
_AGENT_PREFIX_RE = re.compile(
    r"^\s*(?P<agent>implementer|tester|reviewer|fixer|verifier)\b", re.IGNORECASE
)


class AgentRole(str, Enum):
    """Agents that can produce a failure report."""

    IMPLEMENTER = "implementer"
    TESTER = "tester"
    REVIEWER = "reviewer"
    FIXER = "fixer"
    VERIFIER = "verifier"
    ORCHESTRATOR = "orchestrator"


@dataclass(slots=True)
class FailureReport:
    """Structured view of an explicit ``FAILED:`` message."""

    source_agent: AgentRole
    summary: str
    requirements: str = ""
    problems: str = ""
    solutions: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "source_agent": self.source_agent.value,
            "summary": self.summary,
            "requirements": self.requirements,
            "problems": self.problems,
            "solutions": self.solutions,
        }


def _normalise_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def first_content_line(text: Optional[str]) -> Optional[str]:
    """Return the first line of ``text`` containing non-whitespace."""
    if not text:
        return None
    for line in _normalise_newlines(text).split("\n"):
        if line.strip():
            return line
    return None


def detect_failure(text: Optional[str]) -> bool:
    """Return True when the first non-blank line starts with ``FAILED:``."""
    line = first_content_line(text)
    if line is None:
        return False
    return FAILED_PREFIX_RE.match(line) is not None


def _section_key(label: str) -> str:
    lowered = label.lower()
    if lowered.endswith("solutions"):
        return "solutions"
    return lowered


def _split_sections(lines: List[str]) -> tuple[Dict[str, List[str]], List[str]]:
    sections: Dict[str, List[str]] = {}
    preamble: List[str] = []
    current: Optional[List[str]] = None
    for line in lines:
        heading = _HEADING_RE.match(line)
        match = heading or _SECTION_RE.match(line)
        if match:
            current = sections.setdefault(_section_key(match.group("label")), [])
            rest = "" if heading else match.group("rest").strip()
            if rest:
                current.append(rest)
            continue
        if current is None:
            preamble.append(line)
        else:
            current.append(line)
    return sections, preamble


def infer_source_agent(summary: str) -> Optional[AgentRole]:
    """Guess the reporting agent from summaries such as ``Reviewer reported ...``."""
    match = _AGENT_PREFIX_RE.match(summary)
    if not match:
        return None
    return AgentRole(match.group("agent").lower())


def parse_failure_report(
    text: Optional[str],
    source_agent: AgentRole | str | None = None,
) -> Optional[FailureReport]:
    """Parse a ``FAILED:`` message into a :class:`FailureReport`.

    Returns ``None`` when ``text`` does not carry the failure sentinel. When
    no labelled sections exist the text after the summary line becomes the
    problem description, falling back to the summary itself.
    """
    if not detect_failure(text):
        return None
    assert text is not None

    lines = _normalise_newlines(text).split("\n")
    index = next(i for i, line in enumerate(lines) if line.strip())
    summary = FAILED_PREFIX_RE.sub("", lines[index], count=1).strip()
    remainder = lines[index + 1 :]

    sections, preamble = _split_sections(remainder)
    if sections:
        requirements = "\n".join(sections.get("requirements", [])).strip()
        problems = "\n".join(sections.get("problems", [])).strip()
        solutions = "\n".join(sections.get("solutions", [])).strip()
        if not problems:
            problems = "\n".join(preamble).strip() or summary
    else:
        requirements = ""
        solutions = ""
        problems = "\n".join(remainder).strip() or summary or "FAILED"

    if source_agent is None:
        role = infer_source_agent(summary) or AgentRole.ORCHESTRATOR
    else:
        role = AgentRole(source_agent)

    return FailureReport(
        source_agent=role,
        summary=summary,
        requirements=requirements,
        problems=problems,
        solutions=solutions,
    )


def format_failure_report(report: FailureReport) -> str:
    """Render ``report`` back into the sentinel text layout."""
    parts = [f"FAILED: {report.summary or report.source_agent.value + ' reported a failure'}"]
    if report.requirements:
        parts.append(f"Requirements:\n{report.requirements}")
    if report.problems:
        parts.append(f"Problems:\n{report.problems}")
    if report.solutions:
        parts.append(f"Possible solutions:\n{report.solutions}")
    return "\n\n".join(parts)
