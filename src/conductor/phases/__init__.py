"""Phase names and per-phase helpers (prompts, transcript logs)."""

from __future__ import annotations

from enum import Enum

from ..policy.failure import AgentRole


class PhaseName(str, Enum):
    """Backend phases the orchestrator can run."""

    IMPLEMENT = "implement"
    TEST = "test"
    REVIEW = "review"
    VERIFY = "verify"
    FIX = "fix"

    @property
    def role(self) -> AgentRole:
        return _PHASE_ROLES[self]

    @property
    def label(self) -> str:
        return self.role.value.capitalize()


_PHASE_ROLES = {
    PhaseName.IMPLEMENT: AgentRole.IMPLEMENTER,
    PhaseName.TEST: AgentRole.TESTER,
    PhaseName.REVIEW: AgentRole.REVIEWER,
    PhaseName.VERIFY: AgentRole.VERIFIER,
    PhaseName.FIX: AgentRole.FIXER,
}


__all__ = ["PhaseName"]
