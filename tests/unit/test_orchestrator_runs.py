from __future__ import annotations

import http.client
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

import pytest

from conductor.backend.runner import BackendError
from conductor.models.openai_responses import ResponsesClient
from conductor.orchestrator import (
    ExecutionMode,
    ExplicitFailure,
    Orchestrator,
    RunState,
    TRANSITIONS,
)
from conductor.phases import PhaseName
from conductor.phases.logs import PhaseLogger, list_phase_logs
from conductor.plans.schema import Plan, PlanStatus
from conductor.plans.store import PlanStore
from conductor.policy.failure import AgentRole
from conductor.policy.planning import ESCALATION_SUFFIXES
from conductor.policy.verdict import Verdict
from conductor.reconciler import LLMTaskClassifier, TaskReconciler

NEEDS_FIXES = "Looks fine.\nVERDICT: NEEDS_FIXES"
ACCEPTABLE = "Everything checks out.\nVERDICT: ACCEPTABLE"
BLOCKED = "FAILED: Blocked by a missing fixture\nProblems:\n- fixture data is absent"


class FixedClassifier:
    def __init__(self, titles: Sequence[str]) -> None:
        self.titles = list(titles)
        self.calls: List[Sequence[str]] = []

    def classify(self, narrative: str, candidates: Sequence[str]) -> List[str]:
        self.calls.append(list(candidates))
        return list(self.titles)


def _plan() -> Plan:
    return Plan.model_validate(
        {
            "id": 1,
            "title": "Exporter",
            "goal": "Export reports as CSV",
            "tasks": [
                {"title": "Task A"},
                {"title": "Task B"},
                {"title": "Task C", "done": True},
            ],
        }
    )


def test_planning_only_attempt_is_retried_with_escalation(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    runner = scripted_runner(
        ["Plan:\n- step one\n- step two", "Implemented the exporter.", "Tests pass.", ACCEPTABLE]
    )
    states = state_sequence("c0", "c0", "c1")
    orchestrator = Orchestrator(runner, root=tmp_path, capture_state=states)

    with caplog.at_level(logging.INFO, logger="conductor.orchestrator"):
        result = orchestrator.run(_plan())

    assert runner.titles == ["Implementer", "Implementer #2", "Tester", "Reviewer"]
    first, second = runner.prompts_for("Implementer")
    assert ESCALATION_SUFFIXES[0] not in first
    assert ESCALATION_SUFFIXES[0] in second
    assert result.planning_only_attempts == [1]
    assert result.state is RunState.ACCEPTED
    assert result.accepted and result.success
    assert "Implementer attempt 1/4 produced planning output without repository changes" in caplog.text
    assert "Retrying implementer with more explicit instructions (attempt 2/4)..." in caplog.text
    assert "resolved on attempt 2/4" in caplog.text


def test_planning_retries_are_bounded_then_continue(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    runner = scripted_runner(["I will add the exporter.", "Let me plan it.", "Tests pass.", ACCEPTABLE])
    orchestrator = Orchestrator(
        runner,
        root=tmp_path,
        capture_state=state_sequence("c0"),
        config={"iteration": {"max_implementer_attempts": 2}},
    )

    with caplog.at_level(logging.WARNING, logger="conductor.orchestrator"):
        result = orchestrator.run(_plan())

    assert result.planning_only_attempts == [1, 2]
    assert runner.titles == ["Implementer", "Implementer #2", "Tester", "Reviewer"]
    assert "after exhausting 2 attempts; continuing to tester." in caplog.text


def test_unavailable_repository_state_does_not_block(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    runner = scripted_runner(["Plan:\n- step one", "Tests pass.", ACCEPTABLE])
    orchestrator = Orchestrator(runner, root=tmp_path, capture_state=state_sequence(None))

    with caplog.at_level(logging.WARNING, logger="conductor.orchestrator"):
        result = orchestrator.run(_plan())

    assert result.planning_only_attempts == []
    assert runner.titles == ["Implementer", "Tester", "Reviewer"]
    assert "Could not verify repository state after implementer attempt 1/4" in caplog.text


def test_fix_loop_stops_when_review_accepts(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path
) -> None:
    runner = scripted_runner(
        [
            "Implemented the exporter.",
            "Tests pass.",
            NEEDS_FIXES,
            "Fixed issue 1.",
            NEEDS_FIXES,
            "Fixed issue 2.",
            NEEDS_FIXES,
            "Fixed issue 3.",
            ACCEPTABLE,
        ]
    )
    orchestrator = Orchestrator(runner, root=tmp_path, capture_state=state_sequence("c0", "c1"))

    result = orchestrator.run(_plan())

    assert result.state is RunState.ACCEPTED
    assert result.accepted
    assert result.iterations == 3
    assert result.verdict is Verdict.ACCEPTABLE
    assert sum(title.startswith("Fixer") for title in runner.titles) == 3
    assert sum(title.startswith("Reviewer") for title in runner.titles) == 4
    assert runner.titles[-2:] == ["Fixer #3", "Reviewer #4"]
    assert result.final_message == ACCEPTABLE

    fixer_prompt = runner.prompts_for("Fixer")[0]
    assert "### Review Feedback\n" + NEEDS_FIXES in fixer_prompt
    assert "### Tester Output\nTests pass." in fixer_prompt
    second_review = runner.prompts_for("Reviewer #2")[0]
    assert "### Fixer Output\nFixed issue 1." in second_review


def test_exhausted_fix_iterations_are_unresolved_and_not_persisted(
    scripted_runner: Callable,
    state_sequence: Callable,
    tasks_dir: Path,
    write_plan: Callable[..., Path],
    caplog: pytest.LogCaptureFixture,
) -> None:
    path = write_plan(1, tasks=[{"title": "Task A"}, {"title": "Task B"}])
    before = path.read_text(encoding="utf-8")
    runner = scripted_runner(
        ["Finished Task A.", "Tests pass.", NEEDS_FIXES, "Fix 1.", NEEDS_FIXES, "Fix 2.", NEEDS_FIXES]
    )
    reconciler = TaskReconciler(PlanStore(tasks_dir), FixedClassifier(["Task A"]))
    orchestrator = Orchestrator(
        runner,
        root=tasks_dir.parent,
        capture_state=state_sequence("c0", "c1"),
        reconciler=reconciler,
        config={"iteration": {"max_fix_iterations": 2}},
    )

    with caplog.at_level(logging.WARNING, logger="conductor.orchestrator"):
        result = orchestrator.run(1)

    assert result.state is RunState.UNRESOLVED
    assert result.success and not result.accepted
    assert result.iterations == 2
    assert result.completed_titles == ["Task A"]
    assert result.persisted is None
    assert path.read_text(encoding="utf-8") == before
    assert "Maximum fix iterations reached (2) and reviewer still reports issues." in caplog.text
    assert "Skipping automatic task completion marking due to unresolved review issues." in caplog.text


def test_explicit_failure_short_circuits_the_run(
    scripted_runner: Callable,
    state_sequence: Callable,
    tasks_dir: Path,
    write_plan: Callable[..., Path],
) -> None:
    write_plan(1, tasks=[{"title": "Task A"}])
    classifier = FixedClassifier(["Task A"])
    runner = scripted_runner(
        [
            "Finished Task A.",
            "FAILED: Cannot run the suite\n\nRequirements:\n- pytest available\nProblems:\n- pytest missing",
        ]
    )
    orchestrator = Orchestrator(
        runner,
        root=tasks_dir.parent,
        capture_state=state_sequence("c0", "c1"),
        reconciler=TaskReconciler(PlanStore(tasks_dir), classifier),
    )

    result = orchestrator.run(1)

    assert runner.titles == ["Implementer", "Tester"]
    assert result.state is RunState.FAILED
    assert not result.success
    assert result.failure is not None
    assert result.failure.source_agent is AgentRole.TESTER
    assert result.failure.problems == "- pytest missing"
    assert result.failure.requirements == "- pytest available"
    assert result.persisted is None
    assert PlanStore(tasks_dir).get(1).tasks[0].done is False
    assert "## Failure (tester)" in result.aggregated_output()
    with pytest.raises(ExplicitFailure):
        result.raise_for_failure()


def test_backend_error_is_attributed_to_the_phase(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path
) -> None:
    runner = scripted_runner(
        ["Implemented.", "Tests pass.", BackendError("Reviewer failed after 3 attempts (exited with code 1).")]
    )
    orchestrator = Orchestrator(runner, root=tmp_path, capture_state=state_sequence("c0", "c1"))

    result = orchestrator.run(_plan())

    assert result.state is RunState.FAILED
    assert result.failure is not None
    assert result.failure.source_agent is AgentRole.REVIEWER
    assert "exited with code 1" in result.failure.problems


def test_simple_mode_verifies_and_persists_confirmed_tasks(
    scripted_runner: Callable,
    state_sequence: Callable,
    tasks_dir: Path,
    write_plan: Callable[..., Path],
) -> None:
    write_plan(1, tasks=[{"title": "Task A"}, {"title": "Task B"}])
    classifier = FixedClassifier(["Task A", "Task Q"])
    runner = scripted_runner(["Finished Task A.", NEEDS_FIXES, "Fixed it.", ACCEPTABLE])
    store = PlanStore(tasks_dir)
    orchestrator = Orchestrator(
        runner,
        root=tasks_dir.parent,
        capture_state=state_sequence("c0", "c1"),
        reconciler=TaskReconciler(store, classifier),
    )

    result = orchestrator.run(1, ExecutionMode.SIMPLE)

    assert runner.titles == ["Implementer", "Verifier", "Fixer", "Verifier #2"]
    assert classifier.calls == [["Task A", "Task B"]]
    verifier_prompt = runner.prompts_for("Verifier")[0]
    assert "### Newly Completed Tasks\n- Task A" in verifier_prompt
    assert "### Pending Tasks\n- Task A\n- Task B" in verifier_prompt
    assert result.state is RunState.ACCEPTED
    assert result.persisted is not None
    assert result.persisted.marked == ["Task A"]

    store.clear()
    plan = store.get(1)
    assert plan.task_by_title("Task A").done
    assert not plan.task_by_title("Task B").done
    assert plan.status is PlanStatus.IN_PROGRESS


def test_review_mode_runs_a_single_review(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path
) -> None:
    runner = scripted_runner([NEEDS_FIXES])
    states = state_sequence("c0")
    orchestrator = Orchestrator(runner, root=tmp_path, capture_state=states)

    result = orchestrator.run(_plan(), "review")

    assert runner.titles == ["Reviewer"]
    assert states.captured == 0
    prompt = runner.prompts_for("Reviewer")[0]
    assert "### Completed Tasks\n- Task C" in prompt
    assert "### Pending Tasks\n- Task A\n- Task B" in prompt
    assert "VERDICT: ACCEPTABLE" in prompt
    assert result.state is RunState.DONE
    assert result.success and not result.accepted
    assert result.verdict is Verdict.NEEDS_FIXES
    assert result.iterations == 0


def test_transcript_titles_and_aggregated_output(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path
) -> None:
    runner = scripted_runner(["Implemented.", "Tests pass.", ACCEPTABLE])
    orchestrator = Orchestrator(runner, root=tmp_path, capture_state=state_sequence("c0", "c1"))

    result = orchestrator.run(None, context="Add a CSV exporter.")

    assert [entry.kind for entry in result.transcript] == [PhaseName.IMPLEMENT, PhaseName.TEST, PhaseName.REVIEW]
    assert result.aggregated_output().startswith("## Implementer\n\nImplemented.\n\n## Tester")
    assert "Add a CSV exporter." in runner.calls[0][1]


def test_run_by_id_requires_a_store(scripted_runner: Callable, tmp_path: Path) -> None:
    orchestrator = Orchestrator(scripted_runner([]), root=tmp_path)

    with pytest.raises(ValueError):
        orchestrator.run(1)


def test_every_non_terminal_state_has_a_failure_exit() -> None:
    for state, targets in TRANSITIONS.items():
        assert RunState.FAILED in targets, state


@pytest.mark.parametrize(
    ("mode", "replies", "titles", "source"),
    [
        (ExecutionMode.NORMAL, [BLOCKED], ["Implementer"], AgentRole.IMPLEMENTER),
        (
            ExecutionMode.NORMAL,
            ["Finished Task A.", "Tests pass.", BLOCKED],
            ["Implementer", "Tester", "Reviewer"],
            AgentRole.REVIEWER,
        ),
        (
            ExecutionMode.NORMAL,
            ["Finished Task A.", "Tests pass.", NEEDS_FIXES, BLOCKED],
            ["Implementer", "Tester", "Reviewer", "Fixer"],
            AgentRole.FIXER,
        ),
        (
            ExecutionMode.NORMAL,
            ["Finished Task A.", "Tests pass.", NEEDS_FIXES, "Fix 1.", NEEDS_FIXES, BLOCKED],
            ["Implementer", "Tester", "Reviewer", "Fixer", "Reviewer #2", "Fixer #2"],
            AgentRole.FIXER,
        ),
        (ExecutionMode.SIMPLE, [BLOCKED], ["Implementer"], AgentRole.IMPLEMENTER),
        (
            ExecutionMode.SIMPLE,
            ["Finished Task A.", BLOCKED],
            ["Implementer", "Verifier"],
            AgentRole.VERIFIER,
        ),
        (
            ExecutionMode.SIMPLE,
            ["Finished Task A.", NEEDS_FIXES, BLOCKED],
            ["Implementer", "Verifier", "Fixer"],
            AgentRole.FIXER,
        ),
    ],
)
def test_failing_phase_ends_the_run_without_persisting(
    mode: ExecutionMode,
    replies: List[str],
    titles: List[str],
    source: AgentRole,
    scripted_runner: Callable,
    state_sequence: Callable,
    tasks_dir: Path,
    write_plan: Callable[..., Path],
) -> None:
    path = write_plan(1, tasks=[{"title": "Task A"}, {"title": "Task B"}])
    before = path.read_text(encoding="utf-8")
    runner = scripted_runner(replies)
    orchestrator = Orchestrator(
        runner,
        root=tasks_dir.parent,
        capture_state=state_sequence("c0", "c1"),
        reconciler=TaskReconciler(PlanStore(tasks_dir), FixedClassifier(["Task A"])),
    )

    result = orchestrator.run(1, mode)

    assert runner.titles == titles
    assert result.state is RunState.FAILED
    assert not result.success and not result.accepted
    assert result.failure is not None
    assert result.failure.source_agent is source
    assert result.failure.problems == "- fixture data is absent"
    assert result.planning_only_attempts == []
    assert result.persisted is None
    assert result.completed_titles == ([] if source is AgentRole.IMPLEMENTER else ["Task A"])
    assert path.read_text(encoding="utf-8") == before


def test_classifier_transport_errors_do_not_abort_the_run(
    scripted_runner: Callable,
    state_sequence: Callable,
    tasks_dir: Path,
    write_plan: Callable[..., Path],
    caplog: pytest.LogCaptureFixture,
) -> None:
    path = write_plan(1, tasks=[{"title": "Task A"}])
    before = path.read_text(encoding="utf-8")

    def transport(payload: Dict[str, Any]) -> str:
        raise http.client.IncompleteRead(b"partial")

    classifier = LLMTaskClassifier(ResponsesClient(transport=transport, max_attempts=1, retry_delay=0))
    runner = scripted_runner(["Done editing.", "Tests pass.", ACCEPTABLE])
    orchestrator = Orchestrator(
        runner,
        root=tasks_dir.parent,
        capture_state=state_sequence("c0", "c1"),
        reconciler=TaskReconciler(PlanStore(tasks_dir), classifier),
    )

    with caplog.at_level(logging.WARNING):
        result = orchestrator.run(1)

    assert result.success and result.accepted
    assert result.completed_titles == []
    assert result.persisted is None
    assert path.read_text(encoding="utf-8") == before
    assert "Could not identify completed tasks" in caplog.text


def test_iteration_limits_are_taken_literally(scripted_runner: Callable, tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="max_implementer_attempts must be at least 1, got 0"):
        Orchestrator(scripted_runner([]), root=tmp_path, config={"iteration": {"max_implementer_attempts": 0}})
    with pytest.raises(ValueError, match="max_fix_iterations"):
        Orchestrator(scripted_runner([]), root=tmp_path, config={"iteration": {"max_fix_iterations": -1}})

    orchestrator = Orchestrator(
        scripted_runner([]),
        root=tmp_path,
        config={"iteration": {"max_implementer_attempts": 1, "max_fix_iterations": 0}},
    )
    assert orchestrator.max_implementer_attempts == 1
    assert orchestrator.max_fix_iterations == 0
    assert orchestrator.max_visits[RunState.FIX] == 0


def test_phase_logs_record_the_failure_report(
    scripted_runner: Callable, state_sequence: Callable, tmp_path: Path
) -> None:
    runner = scripted_runner(["Implemented.", BLOCKED])
    orchestrator = Orchestrator(
        runner,
        root=tmp_path,
        capture_state=state_sequence("c0", "c1"),
        phase_logger=PhaseLogger(tmp_path / "logs"),
    )

    result = orchestrator.run(_plan())

    entries = list_phase_logs(tmp_path / "logs")
    assert [entry.title for entry in entries] == ["Implementer", "Tester"]
    assert entries[0].failure is None and not entries[0].failed
    assert entries[1].failed
    assert entries[1].plan_id == 1
    assert result.failure is not None
    assert entries[1].failure == result.failure.to_dict()
