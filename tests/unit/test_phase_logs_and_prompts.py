from __future__ import annotations

from pathlib import Path

from conductor.phases import PhaseName
from conductor.phases.logs import PhaseLogger, list_phase_logs, load_phase_log, slugify
from conductor.phases.prompts import (
    FAILURE_PROTOCOL,
    VERDICT_PROTOCOL,
    build_phase_prompt,
    compose_reviewer_context,
    compose_tester_context,
    render_plan_context,
)
from conductor.plans.schema import Plan
from conductor.policy.failure import AgentRole, FailureReport


def test_phase_logger_writes_json_transcript(tmp_path: Path) -> None:
    logger = PhaseLogger(tmp_path / "logs")

    path = logger.write(
        phase="review",
        title="Reviewer #2",
        prompt="Review the change",
        final_message="VERDICT: ACCEPTABLE",
        failed=False,
        elapsed_seconds=1.23456,
        plan_id=4,
    )

    assert path is not None
    assert path.name.endswith("-review-reviewer-2.json")
    entry = load_phase_log(path)
    assert entry.phase == "review"
    assert entry.title == "Reviewer #2"
    assert entry.final_message == "VERDICT: ACCEPTABLE"
    assert not entry.failed
    assert entry.payload["elapsed_seconds"] == 1.235
    assert entry.payload["plan_id"] == 4
    assert "error" not in entry.payload


def test_phase_logger_swallows_write_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory", encoding="utf-8")

    path = PhaseLogger(blocker).write(
        phase="implement",
        title="Implementer",
        prompt="p",
        final_message=None,
        failed=True,
        elapsed_seconds=0.0,
        error="boom",
    )

    assert path is None


def test_slugify_limits_length() -> None:
    assert slugify("Implementer #3") == "implementer-3"
    assert slugify("  ") == "phase"
    long_slug = slugify("x" * 200)
    assert len(long_slug) == 60


def test_phase_roles_and_labels() -> None:
    assert PhaseName.VERIFY.role is AgentRole.VERIFIER
    assert PhaseName.FIX.label == "Fixer"


def test_render_plan_context_lists_tasks_and_steps() -> None:
    plan = Plan.model_validate(
        {
            "id": 3,
            "title": "Exporter",
            "goal": "Export CSV",
            "details": "Use the stdlib csv module.",
            "tasks": [
                {"title": "Writer", "steps": [{"prompt": "Add writer", "done": True}]},
                {"title": "Docs", "description": "Explain usage"},
            ],
        }
    )

    text = render_plan_context(plan)

    assert text.startswith("# Plan 3: Exporter\n\n## Goal\nExport CSV")
    assert "- [x] Writer\n  - [x] Add writer" in text
    assert "- [ ] Docs\n  Explain usage" in text


def test_context_sections_are_omitted_when_empty() -> None:
    tester = compose_tester_context("ctx", "impl out", [])
    reviewer = compose_reviewer_context("ctx", "impl out", "tests out", ["Done task"], [])

    assert tester == "ctx\n\n### Implementer Output\nimpl out"
    assert reviewer == (
        "ctx\n\n### Completed Tasks\n- Done task\n\n### Implementer Output\nimpl out\n\n### Tester Output\ntests out"
    )


def test_only_judging_phases_get_the_verdict_protocol() -> None:
    review = build_phase_prompt(PhaseName.REVIEW, "ctx")
    implement = build_phase_prompt(PhaseName.IMPLEMENT, "ctx", extra_instructions="Hurry.\n")

    assert VERDICT_PROTOCOL in review
    assert VERDICT_PROTOCOL not in implement
    assert FAILURE_PROTOCOL in implement
    assert implement.endswith("Hurry.\n\n---\n\nctx")


def test_list_phase_logs_filters_by_plan_and_skips_garbage(tmp_path: Path) -> None:
    root = tmp_path / "logs"
    logger = PhaseLogger(root)
    report = FailureReport(source_agent=AgentRole.TESTER, summary="Cannot run the suite", problems="- pytest missing")

    def _write(phase: str, title: str, plan_id: int, **extra) -> Path:
        path = logger.write(
            phase=phase,
            title=title,
            prompt="p",
            final_message="output",
            failed="failure" in extra,
            elapsed_seconds=0.1,
            plan_id=plan_id,
            **extra,
        )
        assert path is not None
        return path

    first = _write("implement", "Implementer", 1)
    second = _write("test", "Tester", 1, failure=report.to_dict())
    _write("implement", "Implementer #2", 2)
    (root / "zz-broken.json").write_text("{not json", encoding="utf-8")

    entries = list_phase_logs(root, plan_id=1)

    assert [entry.path for entry in entries] == [first.resolve(), second.resolve()]
    assert entries[0].failure is None
    assert entries[1].failed and entries[1].plan_id == 1
    assert entries[1].failure == {
        "source_agent": "tester",
        "summary": "Cannot run the suite",
        "requirements": "",
        "problems": "- pytest missing",
        "solutions": "",
    }
    assert len(list_phase_logs(root)) == 3
    assert list_phase_logs(tmp_path / "missing") == []
