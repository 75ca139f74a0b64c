"""Prompt text and context composition for each backend phase.

The wording here is intentionally short; what matters to the orchestrator is
the section layout the downstream phases rely on and the sentinel contract
(``FAILED:`` first line, ``VERDICT: ...`` line) every prompt restates.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from ..plans.schema import Plan
from . import PhaseName

__all__ = [
    "FAILURE_PROTOCOL",
    "VERDICT_PROTOCOL",
    "build_phase_prompt",
    "compose_fix_review_context",
    "compose_fixer_context",
    "compose_reviewer_context",
    "compose_tester_context",
    "compose_verifier_context",
    "render_plan_context",
]

FAILURE_PROTOCOL = (
    "If you cannot complete your work because of conflicting or impossible requirements, "
    "start your final message with a line `FAILED: <one-line summary>` followed by "
    "`Requirements:`, `Problems:` and `Possible solutions:` sections."
)

VERDICT_PROTOCOL = (
    "End your final message with exactly one line `VERDICT: ACCEPTABLE` when the work "
    "meets the requirements, or `VERDICT: NEEDS_FIXES` followed by the issues to fix."
)

_ROLE_INSTRUCTIONS = {
    PhaseName.IMPLEMENT: (
        "You are the implementer. Make the code changes for the pending tasks now; do not "
        "wait for approval. In your final message list the titles of the tasks you completed."
    ),
    PhaseName.TEST: (
        "You are the tester. Write or update tests covering the implementer's changes, run "
        "them, and report the results."
    ),
    PhaseName.REVIEW: (
        "You are the reviewer. Review the changes for correctness, missing requirements and "
        "regressions. Do not modify files."
    ),
    PhaseName.VERIFY: (
        "You are the verifier. Run the project's checks against the implementer's changes and "
        "confirm the completed tasks actually work."
    ),
    PhaseName.FIX: (
        "You are the fixer. Address every issue listed under Review Feedback, then summarise "
        "what you changed."
    ),
}


def _bullets(titles: Iterable[str]) -> str:
    return "\n- ".join(titles)


def _section(heading: str, titles: Sequence[str]) -> str:
    if not titles:
        return ""
    return f"\n\n### {heading}\n- {_bullets(titles)}"


def render_plan_context(plan: Plan) -> str:
    """Render the plan document as the initial context for a run."""
    lines = [f"# Plan {plan.id}: {plan.display_title}"]
    if plan.goal:
        lines.extend(["", "## Goal", plan.goal.strip()])
    if plan.details:
        lines.extend(["", "## Details", plan.details.strip()])
    if plan.tasks:
        lines.extend(["", "## Tasks"])
        for task in plan.tasks:
            marker = "x" if task.is_complete else " "
            lines.append(f"- [{marker}] {task.title}")
            if task.description:
                lines.append(f"  {task.description.strip()}")
            for step in task.steps:
                step_marker = "x" if step.done else " "
                lines.append(f"  - [{step_marker}] {step.prompt}")
    return "\n".join(lines)


def compose_tester_context(
    original_context: str,
    implementer_output: str,
    newly_completed: Sequence[str],
) -> str:
    tasks_section = _section("Newly Completed Tasks", newly_completed)
    return f"{original_context}\n\n### Implementer Output\n{implementer_output}{tasks_section}"


def compose_reviewer_context(
    original_context: str,
    implementer_output: str,
    tester_output: str,
    completed: Sequence[str],
    pending: Sequence[str],
) -> str:
    return (
        f"{original_context}"
        f"{_section('Completed Tasks', completed)}"
        f"{_section('Pending Tasks', pending)}"
        f"\n\n### Implementer Output\n{implementer_output}"
        f"\n\n### Tester Output\n{tester_output}"
    )


def compose_verifier_context(
    original_context: str,
    implementer_output: str,
    newly_completed: Sequence[str],
    previously_completed: Sequence[str],
    pending: Sequence[str],
) -> str:
    return (
        f"{original_context}"
        f"{_section('Completed Tasks', previously_completed)}"
        f"{_section('Pending Tasks', pending)}"
        f"{_section('Newly Completed Tasks', newly_completed)}"
        f"\n\n### Implementer Output\n{implementer_output}"
    )


def compose_fixer_context(
    original_context: str,
    implementer_output: str,
    completed: Sequence[str],
    fix_instructions: str,
    *,
    tester_output: Optional[str] = None,
) -> str:
    tester_section = f"\n\n### Tester Output\n{tester_output}" if tester_output else ""
    return (
        f"{original_context}"
        f"{_section('Completed Tasks', completed)}"
        f"\n\n### Implementer Output\n{implementer_output}"
        f"{tester_section}"
        f"\n\n### Review Feedback\n{fix_instructions}"
    )


def compose_fix_review_context(base_context: str, previous_review: str, fixer_output: str) -> str:
    """Context for re-running the review or verify phase after a fix."""
    return (
        f"{base_context}"
        f"\n\n### Review Feedback\n{previous_review}"
        f"\n\n### Fixer Output\n{fixer_output}"
    )


def build_phase_prompt(phase: PhaseName, context: str, *, extra_instructions: str = "") -> str:
    """Wrap ``context`` with the role instructions for ``phase``."""
    parts = [_ROLE_INSTRUCTIONS[phase], FAILURE_PROTOCOL]
    if phase in (PhaseName.REVIEW, PhaseName.VERIFY):
        parts.append(VERDICT_PROTOCOL)
    if extra_instructions:
        parts.append(extra_instructions.strip())
    instructions = "\n\n".join(parts)
    return f"{instructions}\n\n---\n\n{context}"
