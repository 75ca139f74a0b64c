"""Plan documents, their schema, and the directory-backed store."""

from .document import PlanDocumentError, PlanParseError, PlanValidationError, load_plan, save_plan
from .schema import Plan, PlanStatus, Priority, Step, Task
from .store import (
    CycleError,
    DuplicatePlanIdError,
    InvalidTransitionError,
    PlanStore,
    PlanStoreError,
    ReadyFilter,
    TaskCategories,
    UnknownPlanError,
    UnknownTaskError,
    categorize_tasks,
    collect_dependencies_in_order,
    find_ready_plan,
    mark_tasks_done,
    ready_plans,
)

__all__ = [
    "CycleError",
    "DuplicatePlanIdError",
    "InvalidTransitionError",
    "Plan",
    "PlanDocumentError",
    "PlanParseError",
    "PlanStatus",
    "PlanStore",
    "PlanStoreError",
    "PlanValidationError",
    "Priority",
    "ReadyFilter",
    "Step",
    "Task",
    "TaskCategories",
    "UnknownPlanError",
    "UnknownTaskError",
    "categorize_tasks",
    "collect_dependencies_in_order",
    "find_ready_plan",
    "load_plan",
    "mark_tasks_done",
    "ready_plans",
    "save_plan",
]
