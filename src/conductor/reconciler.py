"""Best-effort task completion: classify finished tasks and persist them."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .models.llm_client import LLMClient, LLMClientError, LLMRequest
from .models.openai_responses import DEFAULT_MODEL, ResponsesClient
from .plans.document import PlanDocumentError
from .plans.store import PlanStore, PlanStoreError

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ClassifierError",
    "ClassifierUnavailable",
    "CompletedTasksResponse",
    "LLMTaskClassifier",
    "PersistError",
    "ReconcileOutcome",
    "TaskClassifier",
    "TaskReconciler",
    "classifier_from_environment",
    "resolve_classifier",
]

CLASSIFIER_SYSTEM_PROMPT = (
    "You read an engineer's report of a coding session and decide which of the listed "
    "tasks it says were completed. Only return titles copied exactly from the list. "
    "Return an empty list when none were clearly completed."
)


class ClassifierUnavailable(RuntimeError):
    """No classifier can be built in this environment."""


class ClassifierError(RuntimeError):
    """The classifier call failed or returned unusable output."""


class PersistError(RuntimeError):
    """Marking a single task done failed."""

    def __init__(self, title: str, reason: str) -> None:
        self.title = title
        self.reason = reason
        super().__init__(f"Failed to mark task {title!r} done: {reason}")


class CompletedTasksResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    completed_titles: List[str] = Field(default_factory=list)


class TaskClassifier(Protocol):
    def classify(self, narrative: str, candidates: Sequence[str]) -> List[str]:
        """Return the candidate titles ``narrative`` reports as completed."""


class LLMTaskClassifier:
    """Asks a structured-output model which candidate tasks were completed."""

    def __init__(self, client: LLMClient, *, model: Optional[str] = None) -> None:
        self._client = client
        self._model = model

    def classify(self, narrative: str, candidates: Sequence[str]) -> List[str]:
        if not candidates or not narrative.strip():
            return []
        task_list = "\n".join(f"- {title}" for title in candidates)
        prompt = f"## Tasks\n{task_list}\n\n## Report\n{narrative.strip()}"
        request = LLMRequest(
            prompt=prompt,
            response_model=CompletedTasksResponse,
            model=self._model,
            system_prompt=CLASSIFIER_SYSTEM_PROMPT,
            metadata={"purpose": "task_completion"},
        )
        try:
            response = self._client.invoke(request)
        except LLMClientError as error:
            raise ClassifierError(str(error)) from error
        return list(response.completed_titles)


def resolve_classifier(
    config: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> LLMTaskClassifier:
    """Build the configured classifier or raise :class:`ClassifierUnavailable`."""
    source = os.environ if env is None else env
    settings = (config or {}).get("classifier") or {}
    if (source.get("CONDUCTOR_DISABLE_CLASSIFIER") or "").strip().lower() in {"1", "true", "yes"}:
        raise ClassifierUnavailable("disabled by CONDUCTOR_DISABLE_CLASSIFIER")
    if settings.get("enabled") is False:
        raise ClassifierUnavailable("disabled in configuration")
    api_key = (source.get("OPENAI_API_KEY") or "").strip()
    if not api_key:
        raise ClassifierUnavailable("OPENAI_API_KEY is not set")
    client = ResponsesClient(api_key=api_key, model=settings.get("model") or DEFAULT_MODEL)
    return LLMTaskClassifier(client)


def classifier_from_environment(
    config: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> Optional[LLMTaskClassifier]:
    """Like :func:`resolve_classifier` but logs the reason and returns ``None``."""
    try:
        return resolve_classifier(config, env)
    except ClassifierUnavailable as reason:
        LOGGER.info("Task completion classifier unavailable: %s", reason)
        return None


@dataclass(slots=True)
class ReconcileOutcome:
    marked: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class TaskReconciler:
    """Turns a phase narrative into persisted task completions.

    Both halves are best effort: classifier problems yield no titles, and a
    failure persisting one title does not stop the others.
    """

    def __init__(self, store: PlanStore, classifier: Optional[TaskClassifier] = None) -> None:
        self.store = store
        self.classifier = classifier

    def identify_completed(self, narrative: str, pending: Sequence[str]) -> List[str]:
        """Titles from ``pending`` the classifier reports done, in ``pending`` order."""
        if self.classifier is None or not pending:
            return []
        try:
            reported = self.classifier.classify(narrative, list(pending))
        except (ClassifierError, ClassifierUnavailable) as error:
            LOGGER.warning("Could not identify completed tasks: %s", error)
            return []
        except Exception as error:
            LOGGER.warning(
                "Task classifier raised %s; skipping completion detection: %s", type(error).__name__, error
            )
            return []
        reported_set = set(reported)
        return [title for title in dict.fromkeys(pending) if title in reported_set]

    def persist(self, plan_id: int, titles: Sequence[str]) -> ReconcileOutcome:
        outcome = ReconcileOutcome()
        for title in dict.fromkeys(titles):
            try:
                self._persist_one(plan_id, title)
            except PersistError as error:
                LOGGER.warning("%s", error)
                outcome.failed[title] = error.reason
                continue
            outcome.marked.append(title)
        return outcome

    def _persist_one(self, plan_id: int, title: str) -> None:
        try:
            self.store.mark_tasks_done(plan_id, [title])
        except (PlanStoreError, PlanDocumentError, OSError) as error:
            raise PersistError(title, str(error)) from error
