"""Typed records describing plan documents and their tasks."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

__all__ = [
    "Plan",
    "PlanStatus",
    "Priority",
    "PRIORITY_RANK",
    "RecordModel",
    "Step",
    "Task",
    "priority_rank",
    "utc_now",
]


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False, populate_by_name=True)


class PlanStatus(str, Enum):
    """Lifecycle states for a plan."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    """Scheduling priority attached to a plan."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK = {
    Priority.URGENT: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


def priority_rank(priority: Optional[Priority]) -> int:
    """Return the sort weight for ``priority`` (0 when unset)."""
    if priority is None:
        return 0
    return PRIORITY_RANK.get(priority, 0)


class Step(RecordModel):
    """Single prompt-sized unit of work inside a task."""

    prompt: str
    done: bool = False


class Task(RecordModel):
    """Named unit of work; titles are unique within their plan."""

    title: str
    description: str = ""
    files: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)
    done: bool = False

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("task title must not be blank")
        return value

    @model_validator(mode="after")
    def _derive_done(self) -> "Task":
        if self.steps:
            self.done = all(step.done for step in self.steps)
        return self

    @property
    def is_complete(self) -> bool:
        """Completion derived from steps, falling back to the stored flag."""
        if self.steps:
            return all(step.done for step in self.steps)
        return self.done

    def mark_done(self) -> None:
        """Flag every step and the task itself as done."""
        for step in self.steps:
            step.done = True
        self.done = True


class Plan(RecordModel):
    """Persisted unit of work tracked by the conductor."""

    id: int = Field(gt=0)
    title: str = ""
    goal: str = ""
    details: str = ""
    status: PlanStatus = PlanStatus.PENDING
    priority: Optional[Priority] = None
    dependencies: List[int] = Field(default_factory=list)
    parent: Optional[int] = None
    assigned_to: Optional[str] = Field(default=None, alias="assignedTo")
    issue: List[str] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")

    @field_validator("priority", mode="before")
    @classmethod
    def _normalise_priority(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"", "none", "maybe"}:
                return None
            return lowered
        return value

    @field_validator("dependencies")
    @classmethod
    def _unique_dependencies(cls, value: List[int]) -> List[int]:
        seen: list[int] = []
        for item in value:
            if item not in seen:
                seen.append(item)
        return seen

    @model_validator(mode="after")
    def _check_invariants(self) -> "Plan":
        titles: set[str] = set()
        for task in self.tasks:
            if task.title in titles:
                raise ValueError(f"duplicate task title {task.title!r} in plan {self.id}")
            titles.add(task.title)
        if self.id in self.dependencies:
            raise ValueError(f"plan {self.id} cannot depend on itself")
        if self.status is PlanStatus.DONE:
            unfinished = [task.title for task in self.tasks if not task.is_complete]
            if unfinished:
                raise ValueError(
                    f"plan {self.id} is marked done but has unfinished tasks: {', '.join(unfinished)}"
                )
        return self

    @property
    def display_title(self) -> str:
        return self.title or self.goal or f"Plan {self.id}"

    def task_by_title(self, title: str) -> Optional[Task]:
        """Return the task whose title matches ``title`` exactly."""
        for task in self.tasks:
            if task.title == title:
                return task
        return None

    @property
    def all_tasks_done(self) -> bool:
        return bool(self.tasks) and all(task.is_complete for task in self.tasks)

    def touch(self) -> None:
        """Refresh the modification timestamp."""
        self.updated_at = utc_now()
