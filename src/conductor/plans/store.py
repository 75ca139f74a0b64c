"""Directory-backed plan store with readiness and dependency queries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .document import PlanDocumentError, load_plan, save_plan
from .schema import Plan, PlanStatus, priority_rank

LOGGER = logging.getLogger(__name__)

DEFAULT_TASKS_DIR = Path("tasks")
PLAN_SUFFIXES = (".plan.md", ".md", ".yml", ".yaml")

__all__ = [
    "CycleError",
    "DuplicatePlanIdError",
    "InvalidTransitionError",
    "PlanStore",
    "PlanStoreError",
    "ReadyFilter",
    "TaskCategories",
    "UnknownPlanError",
    "UnknownTaskError",
    "categorize_tasks",
    "collect_dependencies_in_order",
    "find_ready_plan",
    "is_ready",
    "mark_tasks_done",
    "ready_plans",
    "transition",
]


class PlanStoreError(RuntimeError):
    """Base error raised for plan store failures."""


class UnknownPlanError(PlanStoreError):
    """Raised when a plan id cannot be resolved."""


class UnknownTaskError(PlanStoreError):
    """Raised when a task title does not exist in the target plan."""


class InvalidTransitionError(PlanStoreError):
    """Raised when a plan status change is not permitted."""


class DuplicatePlanIdError(PlanStoreError):
    """Raised when two plan documents resolve to the same numeric id."""

    def __init__(self, duplicates: Mapping[int, Sequence[Path]]) -> None:
        self.duplicates = {plan_id: list(paths) for plan_id, paths in duplicates.items()}
        details = "; ".join(
            f"id {plan_id}: {', '.join(str(path) for path in paths)}"
            for plan_id, paths in sorted(self.duplicates.items())
        )
        super().__init__(f"Duplicate plan ids found ({details})")


class CycleError(PlanStoreError):
    """Raised when dependency resolution revisits a plan on the current path."""

    def __init__(self, cycle: Sequence[int]) -> None:
        self.cycle = list(cycle)
        super().__init__("Dependency cycle detected: " + " -> ".join(str(item) for item in self.cycle))


@dataclass(slots=True)
class TaskCategories:
    """Task titles split by completion state."""

    completed: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ReadyFilter:
    """Statuses considered when searching for the next ready plan."""

    include_pending: bool = True
    include_in_progress: bool = False


_ALLOWED_TRANSITIONS: Dict[PlanStatus, set[PlanStatus]] = {
    PlanStatus.PENDING: {PlanStatus.IN_PROGRESS, PlanStatus.DONE, PlanStatus.CANCELLED},
    PlanStatus.IN_PROGRESS: {PlanStatus.PENDING, PlanStatus.DONE, PlanStatus.CANCELLED},
    PlanStatus.DONE: {PlanStatus.IN_PROGRESS},
    PlanStatus.CANCELLED: {PlanStatus.PENDING},
}


# ---- pure queries ------------------------------------------------------------


def categorize_tasks(plan: Plan) -> TaskCategories:
    """Split the plan's task titles into completed and pending lists."""
    categories = TaskCategories()
    for task in plan.tasks:
        if task.is_complete:
            categories.completed.append(task.title)
        else:
            categories.pending.append(task.title)
    return categories


def _as_mapping(plans: Mapping[int, Plan] | Iterable[Plan]) -> Dict[int, Plan]:
    if isinstance(plans, Mapping):
        return dict(plans)
    return {plan.id: plan for plan in plans}


def is_ready(plan: Plan, plans: Mapping[int, Plan] | Iterable[Plan]) -> bool:
    """Return True when ``plan`` can be started now."""
    if plan.status is PlanStatus.IN_PROGRESS:
        return True
    if plan.status is not PlanStatus.PENDING:
        return False
    lookup = _as_mapping(plans)
    for dependency_id in plan.dependencies:
        dependency = lookup.get(dependency_id)
        if dependency is None or dependency.status is not PlanStatus.DONE:
            return False
    return True


def _ready_sort_key(plan: Plan) -> tuple[int, int, int]:
    status_rank = 0 if plan.status is PlanStatus.IN_PROGRESS else 1
    return (status_rank, -priority_rank(plan.priority), plan.id)


def ready_plans(
    plans: Mapping[int, Plan] | Iterable[Plan],
    ready_filter: Optional[ReadyFilter] = None,
) -> List[Plan]:
    """Return every ready plan in the order they should be worked on.

    Candidates are ordered by status (in-progress plans first when they are
    included), then by priority (urgent first, unset last), then by id.
    """
    criteria = ready_filter or ReadyFilter()
    lookup = _as_mapping(plans)
    statuses: set[PlanStatus] = set()
    if criteria.include_pending:
        statuses.add(PlanStatus.PENDING)
    if criteria.include_in_progress:
        statuses.add(PlanStatus.IN_PROGRESS)

    candidates = [plan for plan in lookup.values() if plan.status in statuses and is_ready(plan, lookup)]
    return sorted(candidates, key=_ready_sort_key)


def find_ready_plan(
    plans: Mapping[int, Plan] | Iterable[Plan],
    ready_filter: Optional[ReadyFilter] = None,
) -> Optional[Plan]:
    """Select the next plan to work on, or ``None``."""
    candidates = ready_plans(plans, ready_filter)
    return candidates[0] if candidates else None


def collect_dependencies_in_order(
    plan_id: int,
    plans: Mapping[int, Plan] | Iterable[Plan],
) -> List[Plan]:
    """Return ``plan_id`` and its transitive dependencies, dependencies first."""
    lookup = _as_mapping(plans)
    if plan_id not in lookup:
        raise UnknownPlanError(f"Plan {plan_id} not found")

    ordered: List[Plan] = []
    finished: set[int] = set()
    path: List[int] = []

    def _visit(current: int) -> None:
        if current in finished:
            return
        if current in path:
            start = path.index(current)
            raise CycleError(path[start:] + [current])
        plan = lookup.get(current)
        if plan is None:
            parent = path[-1] if path else plan_id
            raise UnknownPlanError(f"Plan {parent} depends on unknown plan {current}")
        path.append(current)
        for dependency_id in plan.dependencies:
            _visit(dependency_id)
        path.pop()
        finished.add(current)
        ordered.append(plan)

    _visit(plan_id)
    return ordered


def transition(plan: Plan, status: PlanStatus) -> Plan:
    """Move ``plan`` to ``status`` when the lifecycle allows it."""
    target = PlanStatus(status)
    if plan.status is target:
        return plan
    if target not in _ALLOWED_TRANSITIONS[plan.status]:
        raise InvalidTransitionError(
            f"Plan {plan.id} cannot move from {plan.status.value} to {target.value}"
        )
    if target is PlanStatus.DONE:
        unfinished = categorize_tasks(plan).pending
        if unfinished:
            raise InvalidTransitionError(
                f"Plan {plan.id} still has unfinished tasks: {', '.join(unfinished)}"
            )
    plan.status = target
    plan.touch()
    return plan


def mark_tasks_done(plan: Plan, titles: Iterable[str]) -> List[str]:
    """Mark the named tasks done and promote the plan status accordingly.

    Titles are matched exactly. Unknown titles raise before anything is
    modified. Returns the titles that changed state.
    """
    requested = list(dict.fromkeys(titles))
    missing = [title for title in requested if plan.task_by_title(title) is None]
    if missing:
        raise UnknownTaskError(f"Plan {plan.id} has no task titled: {', '.join(missing)}")

    changed: List[str] = []
    for title in requested:
        task = plan.task_by_title(title)
        assert task is not None
        if task.is_complete:
            continue
        task.mark_done()
        changed.append(title)

    if not changed:
        return changed

    plan.touch()
    if plan.all_tasks_done and plan.status is not PlanStatus.DONE:
        plan.status = PlanStatus.DONE
    elif plan.status is PlanStatus.PENDING:
        plan.status = PlanStatus.IN_PROGRESS
    return changed


# ---- store -------------------------------------------------------------------


def _is_plan_file(path: Path) -> bool:
    return path.is_file() and any(path.name.endswith(suffix) for suffix in PLAN_SUFFIXES)


class PlanStore:
    """Explicit cache over a directory of plan documents.

    ``load()`` reads every document once; ``clear()`` drops the cache so the
    next access re-reads from disk. Construct one per process invocation and
    pass it by reference.
    """

    def __init__(self, directory: Path | str = DEFAULT_TASKS_DIR) -> None:
        self.directory = Path(directory)
        self._plans: Optional[Dict[int, Plan]] = None
        self._paths: Dict[int, Path] = {}
        self.errors: Dict[Path, str] = {}

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, root: Path | None = None) -> "PlanStore":
        project = config.get("project") or {}
        tasks_dir = Path(project.get("tasks_dir") or DEFAULT_TASKS_DIR)
        if not tasks_dir.is_absolute() and root is not None:
            tasks_dir = root / tasks_dir
        return cls(tasks_dir)

    def clear(self) -> None:
        """Forget every cached plan."""
        self._plans = None
        self._paths = {}
        self.errors = {}

    def load(self) -> Dict[int, Plan]:
        """Scan the plan directory and cache every valid document."""
        self.clear()
        plans: Dict[int, Plan] = {}
        paths: Dict[int, List[Path]] = {}
        errors: Dict[Path, str] = {}

        if self.directory.exists():
            for path in sorted(self.directory.rglob("*")):
                if not _is_plan_file(path):
                    continue
                try:
                    plan = load_plan(path)
                except PlanDocumentError as error:
                    LOGGER.warning("Skipping unreadable plan document %s: %s", path, error)
                    errors[path] = str(error)
                    continue
                paths.setdefault(plan.id, []).append(path)
                plans.setdefault(plan.id, plan)

        duplicates = {plan_id: found for plan_id, found in paths.items() if len(found) > 1}
        if duplicates:
            raise DuplicatePlanIdError(duplicates)

        self._plans = plans
        self._paths = {plan_id: found[0] for plan_id, found in paths.items()}
        self.errors = errors
        LOGGER.debug("Loaded %d plan(s) from %s", len(plans), self.directory)
        return dict(plans)

    @property
    def plans(self) -> Dict[int, Plan]:
        if self._plans is None:
            self.load()
        assert self._plans is not None
        return self._plans

    def get(self, plan_id: int) -> Plan:
        try:
            return self.plans[plan_id]
        except KeyError:
            raise UnknownPlanError(f"Plan {plan_id} not found in {self.directory}") from None

    def path_for(self, plan_id: int) -> Path:
        self.get(plan_id)
        return self._paths[plan_id]

    def save(self, plan: Plan, path: Path | None = None) -> Path:
        """Persist ``plan`` and refresh the cached copy."""
        if path is None:
            if self._plans is not None and plan.id in self._paths:
                path = self._paths[plan.id]
            else:
                path = self.directory / f"{plan.id}.plan.md"
        written = save_plan(path, plan)
        if self._plans is not None:
            self._plans[plan.id] = plan
            self._paths[plan.id] = written
        return written

    def refresh(self, plan_id: int) -> Plan:
        """Re-read a single plan from disk, replacing the cached copy."""
        path = self.path_for(plan_id)
        plan = load_plan(path)
        self.plans[plan_id] = plan
        return plan

    def find_ready(self, ready_filter: Optional[ReadyFilter] = None) -> Optional[Plan]:
        return find_ready_plan(self.plans, ready_filter)

    def dependencies_of(self, plan_id: int) -> List[Plan]:
        return collect_dependencies_in_order(plan_id, self.plans)

    def set_status(self, plan_id: int, status: PlanStatus) -> Plan:
        plan = self.refresh(plan_id)
        transition(plan, status)
        self.save(plan)
        return plan

    def mark_tasks_done(self, plan_id: int, titles: Iterable[str]) -> List[str]:
        """Mark tasks done against the on-disk copy and save it."""
        plan = self.refresh(plan_id)
        changed = mark_tasks_done(plan, titles)
        if changed:
            self.save(plan)
            LOGGER.info("Marked %d task(s) done in plan %s", len(changed), plan_id)
        return changed
