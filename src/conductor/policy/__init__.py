"""Pure text heuristics used to steer orchestration decisions."""

from .failure import AgentRole, FailureReport, detect_failure, parse_failure_report
from .planning import PlanningDetection, detect_planning_without_implementation, find_planning_indicators
from .verdict import Verdict, parse_verdict

__all__ = [
    "AgentRole",
    "FailureReport",
    "PlanningDetection",
    "Verdict",
    "detect_failure",
    "detect_planning_without_implementation",
    "find_planning_indicators",
    "parse_failure_report",
    "parse_verdict",
]
