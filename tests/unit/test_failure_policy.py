from __future__ import annotations

import pytest

from conductor.policy.failure import (
    AgentRole,
    FailureReport,
    detect_failure,
    format_failure_report,
    parse_failure_report,
)

FAILURE_TEXT = """
  FAILED: Cannot proceed due to conflicting requirements

**Requirements:**
- Output must be CSV
Problems:
- The schema demands JSON
## Possible solutions
- Pick one format
"""


@pytest.mark.parametrize(
    "text",
    [
        "FAILED: broken",
        "failed: lower case works too",
        "\n\n   FAILED: after blank lines and indentation",
        "\r\nFAILED: windows newlines",
    ],
)
def test_failed_on_first_content_line_is_detected(text: str) -> None:
    assert detect_failure(text)


@pytest.mark.parametrize(
    "text",
    [
        "All done.\nFAILED: quoted later",
        "The run FAILED: mid-line",
        "",
        None,
        "   \n  ",
    ],
)
def test_failed_elsewhere_is_not_detected(text: str | None) -> None:
    assert not detect_failure(text)


def test_parse_failure_report_extracts_labelled_sections() -> None:
    report = parse_failure_report(FAILURE_TEXT, AgentRole.TESTER)

    assert report is not None
    assert report.source_agent is AgentRole.TESTER
    assert report.summary == "Cannot proceed due to conflicting requirements"
    assert report.requirements == "- Output must be CSV"
    assert report.problems == "- The schema demands JSON"
    assert report.solutions == "- Pick one format"


def test_parse_failure_report_without_sections_uses_remaining_text() -> None:
    report = parse_failure_report("FAILED: Disk full\nCould not write build artifacts.")

    assert report is not None
    assert report.problems == "Could not write build artifacts."
    assert report.requirements == ""
    assert report.source_agent is AgentRole.ORCHESTRATOR


def test_parse_failure_report_infers_agent_from_summary() -> None:
    report = parse_failure_report("FAILED: Reviewer reported blocking issues")

    assert report is not None
    assert report.source_agent is AgentRole.REVIEWER
    assert report.problems == "Reviewer reported blocking issues"


def test_parse_failure_report_ignores_regular_output() -> None:
    assert parse_failure_report("Implemented everything.", "implementer") is None


def test_format_failure_report_round_trips_sections() -> None:
    report = FailureReport(
        source_agent=AgentRole.FIXER,
        summary="Cannot fix",
        requirements="r",
        problems="p",
        solutions="s",
    )

    text = format_failure_report(report)

    assert text == "FAILED: Cannot fix\n\nRequirements:\nr\n\nProblems:\np\n\nPossible solutions:\ns"
    assert parse_failure_report(text, AgentRole.FIXER) == report
