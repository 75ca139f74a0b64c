"""State machine that sequences backend phases for one plan."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Protocol

from .backend.runner import BackendError, StepResult
from .phases import PhaseName
from .phases.logs import PhaseLogger
from .phases.prompts import (
    build_phase_prompt,
    compose_fix_review_context,
    compose_fixer_context,
    compose_reviewer_context,
    compose_tester_context,
    compose_verifier_context,
    render_plan_context,
)
from .plans.schema import Plan
from .plans.store import PlanStore, categorize_tasks
from .policy.failure import FailureReport, format_failure_report, parse_failure_report
from .policy.planning import detect_planning_without_implementation, escalation_suffix
from .policy.verdict import Verdict, parse_verdict
from .reconciler import ReconcileOutcome, TaskReconciler
from .tools.vcs import RepositoryState, capture_repository_state

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ExecutionMode",
    "ExecutionResult",
    "ExplicitFailure",
    "MAX_VISITS",
    "Orchestrator",
    "PhaseRunner",
    "RunState",
    "TRANSITIONS",
    "TranscriptEntry",
]

DEFAULT_MAX_IMPLEMENTER_ATTEMPTS = 4
DEFAULT_MAX_FIX_ITERATIONS = 5


class ExecutionMode(str, Enum):
    NORMAL = "normal"
    SIMPLE = "simple"
    REVIEW = "review"


class RunState(str, Enum):
    IMPLEMENT = "implement"
    TEST = "test"
    VERIFY = "verify"
    REVIEW = "review"
    FIX = "fix"
    ACCEPTED = "accepted"
    UNRESOLVED = "unresolved"
    FAILED = "failed"
    DONE = "done"


TERMINAL_STATES: FrozenSet[RunState] = frozenset(
    {RunState.ACCEPTED, RunState.UNRESOLVED, RunState.FAILED, RunState.DONE}
)

TRANSITIONS: Dict[RunState, FrozenSet[RunState]] = {
    RunState.IMPLEMENT: frozenset({RunState.IMPLEMENT, RunState.TEST, RunState.VERIFY, RunState.FAILED}),
    RunState.TEST: frozenset({RunState.REVIEW, RunState.FAILED}),
    RunState.REVIEW: frozenset(
        {RunState.ACCEPTED, RunState.FIX, RunState.UNRESOLVED, RunState.FAILED, RunState.DONE}
    ),
    RunState.VERIFY: frozenset({RunState.ACCEPTED, RunState.FIX, RunState.UNRESOLVED, RunState.FAILED}),
    RunState.FIX: frozenset({RunState.REVIEW, RunState.VERIFY, RunState.FAILED}),
}

# Defaults for the per-state visit budget; recomputed from the configured
# attempt and iteration limits for each run.
MAX_VISITS: Dict[RunState, int] = {
    RunState.IMPLEMENT: DEFAULT_MAX_IMPLEMENTER_ATTEMPTS,
    RunState.TEST: 1,
    RunState.REVIEW: DEFAULT_MAX_FIX_ITERATIONS + 1,
    RunState.VERIFY: DEFAULT_MAX_FIX_ITERATIONS + 1,
    RunState.FIX: DEFAULT_MAX_FIX_ITERATIONS,
}


def _visit_budget(max_implementer_attempts: int, max_fix_iterations: int) -> Dict[RunState, int]:
    return {
        RunState.IMPLEMENT: max_implementer_attempts,
        RunState.TEST: 1,
        RunState.REVIEW: max_fix_iterations + 1,
        RunState.VERIFY: max_fix_iterations + 1,
        RunState.FIX: max_fix_iterations,
    }


class PhaseRunner(Protocol):
    def run(self, prompt: str, cwd: Path | str, *, title: Optional[str] = None) -> StepResult:
        ...


StateCapture = Callable[[Path], Optional[RepositoryState]]


class ExplicitFailure(RuntimeError):
    """Raised by :meth:`ExecutionResult.raise_for_failure` for failed runs."""

    def __init__(self, report: FailureReport) -> None:
        self.report = report
        super().__init__(f"{report.source_agent.value} failed: {report.summary or report.problems}")


@dataclass(slots=True)
class TranscriptEntry:
    kind: PhaseName
    title: str
    body: str


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one orchestration run.

    ``success`` is false only for explicit or backend failures. A run that
    exhausted its fix iterations is successful but not ``accepted``.
    """

    mode: ExecutionMode
    state: RunState
    success: bool
    accepted: bool
    verdict: Optional[Verdict] = None
    failure: Optional[FailureReport] = None
    transcript: List[TranscriptEntry] = field(default_factory=list)
    completed_titles: List[str] = field(default_factory=list)
    persisted: Optional[ReconcileOutcome] = None
    planning_only_attempts: List[int] = field(default_factory=list)
    iterations: int = 0

    @property
    def final_message(self) -> str:
        """Body of the last review or verify entry, else the last entry."""
        for entry in reversed(self.transcript):
            if entry.kind in (PhaseName.REVIEW, PhaseName.VERIFY):
                return entry.body.strip()
        if self.transcript:
            return self.transcript[-1].body.strip()
        return ""

    def aggregated_output(self) -> str:
        """Markdown rendering of every phase output in order."""
        sections = [f"## {entry.title}\n\n{entry.body.strip()}" for entry in self.transcript]
        if self.failure is not None:
            sections.append(f"## Failure ({self.failure.source_agent.value})\n\n{format_failure_report(self.failure)}")
        return "\n\n".join(sections)

    def raise_for_failure(self) -> "ExecutionResult":
        if self.failure is not None:
            raise ExplicitFailure(self.failure)
        return self


@dataclass(slots=True)
class _RunContext:
    mode: ExecutionMode
    plan: Optional[Plan]
    base_context: str
    completed: List[str]
    pending: List[str]
    visits: Dict[RunState, int] = field(default_factory=dict)
    titles: Dict[PhaseName, int] = field(default_factory=dict)
    transcript: List[TranscriptEntry] = field(default_factory=list)
    failure: Optional[FailureReport] = None
    verdict: Optional[Verdict] = None
    implement_attempt: int = 0
    planning_only_attempts: List[int] = field(default_factory=list)
    state_before: Optional[RepositoryState] = None
    implementer_output: str = ""
    tester_output: str = ""
    review_output: str = ""
    fixer_output: Optional[str] = None
    newly_completed: List[str] = field(default_factory=list)
    fix_iterations: int = 0

    def next_title(self, phase: PhaseName) -> str:
        count = self.titles.get(phase, 0) + 1
        self.titles[phase] = count
        return phase.label if count == 1 else f"{phase.label} #{count}"


class Orchestrator:
    """Runs implement/test/review/fix (or its simple and review-only variants).

    Each state handler returns the next state; :data:`TRANSITIONS` lists the
    legal moves and the visit budget bounds how often any state can run, so
    every run terminates even if a handler misbehaves.
    """

    def __init__(
        self,
        runner: PhaseRunner,
        *,
        root: Path | str,
        capture_state: StateCapture = capture_repository_state,
        reconciler: Optional[TaskReconciler] = None,
        store: Optional[PlanStore] = None,
        config: Optional[Mapping[str, Any]] = None,
        phase_logger: Optional[PhaseLogger] = None,
    ) -> None:
        iteration = (config or {}).get("iteration") or {}
        self.runner = runner
        self.root = Path(root)
        self.capture_state = capture_state
        self.reconciler = reconciler
        self.store = store if store is not None else (reconciler.store if reconciler else None)
        self.phase_logger = phase_logger
        attempts = iteration.get("max_implementer_attempts")
        self.max_implementer_attempts = DEFAULT_MAX_IMPLEMENTER_ATTEMPTS if attempts is None else int(attempts)
        fix_iterations = iteration.get("max_fix_iterations")
        self.max_fix_iterations = DEFAULT_MAX_FIX_ITERATIONS if fix_iterations is None else int(fix_iterations)
        if self.max_implementer_attempts < 1:
            raise ValueError(f"max_implementer_attempts must be at least 1, got {self.max_implementer_attempts}")
        if self.max_fix_iterations < 0:
            raise ValueError(f"max_fix_iterations must not be negative, got {self.max_fix_iterations}")
        self.max_visits = _visit_budget(self.max_implementer_attempts, self.max_fix_iterations)
        self._handlers: Dict[RunState, Callable[[_RunContext], RunState]] = {
            RunState.IMPLEMENT: self._implement,
            RunState.TEST: self._test,
            RunState.REVIEW: self._review,
            RunState.VERIFY: self._verify,
            RunState.FIX: self._fix,
        }

    # ---- entry point -------------------------------------------------------

    def run(
        self,
        plan: Plan | int | None,
        mode: ExecutionMode | str = ExecutionMode.NORMAL,
        context: Optional[str] = None,
    ) -> ExecutionResult:
        """Drive ``plan`` through the phases of ``mode`` until a terminal state.

        ``plan`` may be a plan id, resolved through the store.
        """
        mode = ExecutionMode(mode)
        if isinstance(plan, int):
            if self.store is None:
                raise ValueError("A plan store is required to run a plan by id")
            plan = self.store.get(plan)
        if plan is not None:
            categories = categorize_tasks(plan)
            completed, pending = list(categories.completed), list(categories.pending)
        else:
            completed, pending = [], []
        if context is None:
            context = render_plan_context(plan) if plan is not None else ""

        ctx = _RunContext(mode=mode, plan=plan, base_context=context, completed=completed, pending=pending)
        LOGGER.info(
            "Starting %s run%s: %d completed task(s), %d pending.",
            mode.value,
            f" for plan {plan.id}" if plan is not None else "",
            len(completed),
            len(pending),
        )

        state = RunState.REVIEW if mode is ExecutionMode.REVIEW else RunState.IMPLEMENT
        while state not in TERMINAL_STATES:
            visits = ctx.visits.get(state, 0) + 1
            if visits > self.max_visits[state]:
                raise RuntimeError(f"State {state.value} exceeded its visit budget of {self.max_visits[state]}")
            ctx.visits[state] = visits
            next_state = self._handlers[state](ctx)
            if next_state not in TRANSITIONS[state]:
                raise RuntimeError(f"Illegal transition {state.value} -> {next_state.value}")
            LOGGER.debug("Transition %s -> %s", state.value, next_state.value)
            state = next_state

        return self._finish(ctx, state)

    # ---- phase execution ---------------------------------------------------

    def _call_phase(self, ctx: _RunContext, phase: PhaseName, prompt: str) -> Optional[str]:
        """Run one backend call; ``None`` means the run has failed."""
        title = ctx.next_title(phase)
        LOGGER.info("Running %s...", title)
        try:
            step = self.runner.run(prompt, self.root, title=title)
        except BackendError as error:
            message = str(error)
            LOGGER.error("%s failed: %s", title, message)
            ctx.transcript.append(TranscriptEntry(kind=phase, title=title, body=message))
            ctx.failure = FailureReport(source_agent=phase.role, summary=message, problems=message)
            self._log_phase(
                ctx, phase, title, prompt, None, failed=True, elapsed=0.0, error=message, failure=ctx.failure
            )
            return None

        text = step.final_message
        ctx.transcript.append(TranscriptEntry(kind=phase, title=title, body=text))
        report = parse_failure_report(text, phase.role)
        self._log_phase(
            ctx, phase, title, prompt, text, failed=report is not None, elapsed=step.elapsed_seconds, failure=report
        )
        if report is not None:
            LOGGER.error("%s reported failure: %s", title, report.summary or "FAILED")
            ctx.failure = report
            return None
        return text

    def _log_phase(
        self,
        ctx: _RunContext,
        phase: PhaseName,
        title: str,
        prompt: str,
        text: Optional[str],
        *,
        failed: bool,
        elapsed: float,
        error: Optional[str] = None,
        failure: Optional[FailureReport] = None,
    ) -> None:
        if self.phase_logger is None:
            return
        self.phase_logger.write(
            phase=phase.value,
            title=title,
            prompt=prompt,
            final_message=text,
            failed=failed,
            elapsed_seconds=elapsed,
            plan_id=ctx.plan.id if ctx.plan is not None else None,
            error=error,
            failure=failure.to_dict() if failure is not None else None,
        )

    # ---- states ------------------------------------------------------------

    def _implement(self, ctx: _RunContext) -> RunState:
        ctx.implement_attempt += 1
        attempt = ctx.implement_attempt
        total = self.max_implementer_attempts
        if ctx.state_before is None:
            ctx.state_before = self.capture_state(self.root)

        prompt = build_phase_prompt(
            PhaseName.IMPLEMENT,
            ctx.base_context,
            extra_instructions=escalation_suffix(attempt - 1),
        )
        text = self._call_phase(ctx, PhaseName.IMPLEMENT, prompt)
        if text is None:
            return RunState.FAILED

        after = self.capture_state(self.root)
        detection = detect_planning_without_implementation(text, ctx.state_before, after)
        ctx.state_before = after

        if detection.repository_status_unavailable:
            LOGGER.warning(
                "Could not verify repository state after implementer attempt %d/%d; "
                "skipping planning-only detection for this attempt.",
                attempt,
                total,
            )

        if detection.detected:
            ctx.planning_only_attempts.append(attempt)
            preview = [line[:120] for line in detection.planning_indicators[:2]]
            LOGGER.warning(
                "Implementer attempt %d/%d produced planning output without repository changes "
                "(commit changed: %s, working tree changed: %s). Indicators: %s",
                attempt,
                total,
                str(detection.commit_changed).lower(),
                str(detection.working_tree_changed).lower(),
                " | ".join(preview) if preview else "<no indicators captured>",
            )
            if attempt < total:
                LOGGER.info(
                    "Retrying implementer with more explicit instructions (attempt %d/%d)...",
                    attempt + 1,
                    total,
                )
                return RunState.IMPLEMENT
            LOGGER.warning(
                "Implementer planned without executing changes after exhausting %d attempts; continuing to %s.",
                total,
                "verifier" if ctx.mode is ExecutionMode.SIMPLE else "tester",
            )
        elif ctx.planning_only_attempts and not detection.repository_status_unavailable:
            retries = len(ctx.planning_only_attempts)
            LOGGER.info(
                "Implementer produced repository changes after %d planning-only attempt%s "
                "(resolved on attempt %d/%d).",
                retries,
                "" if retries == 1 else "s",
                attempt,
                total,
            )

        ctx.implementer_output = text
        ctx.newly_completed = self._identify_completed(ctx, text)
        return RunState.VERIFY if ctx.mode is ExecutionMode.SIMPLE else RunState.TEST

    def _identify_completed(self, ctx: _RunContext, text: str) -> List[str]:
        if self.reconciler is None or ctx.plan is None or not ctx.pending:
            return []
        titles = self.reconciler.identify_completed(text, ctx.pending)
        if titles:
            LOGGER.info("Identified %d completed task(s): %s", len(titles), ", ".join(titles))
        return titles

    def _test(self, ctx: _RunContext) -> RunState:
        context = compose_tester_context(ctx.base_context, ctx.implementer_output, ctx.newly_completed)
        text = self._call_phase(ctx, PhaseName.TEST, build_phase_prompt(PhaseName.TEST, context))
        if text is None:
            return RunState.FAILED
        ctx.tester_output = text
        return RunState.REVIEW

    def _review(self, ctx: _RunContext) -> RunState:
        if ctx.mode is ExecutionMode.REVIEW:
            context = self._review_only_context(ctx)
        else:
            context = compose_reviewer_context(
                ctx.base_context, ctx.implementer_output, ctx.tester_output, ctx.completed, ctx.pending
            )
        if ctx.fixer_output is not None:
            context = compose_fix_review_context(context, ctx.review_output, ctx.fixer_output)

        text = self._call_phase(ctx, PhaseName.REVIEW, build_phase_prompt(PhaseName.REVIEW, context))
        if text is None:
            return RunState.FAILED
        return self._judge(ctx, text, "reviewer")

    def _review_only_context(self, ctx: _RunContext) -> str:
        sections = [ctx.base_context]
        if ctx.completed:
            sections.append("### Completed Tasks\n- " + "\n- ".join(ctx.completed))
        if ctx.pending:
            sections.append("### Pending Tasks\n- " + "\n- ".join(ctx.pending))
        return "\n\n".join(sections)

    def _verify(self, ctx: _RunContext) -> RunState:
        context = compose_verifier_context(
            ctx.base_context, ctx.implementer_output, ctx.newly_completed, ctx.completed, ctx.pending
        )
        if ctx.fixer_output is not None:
            context = compose_fix_review_context(context, ctx.review_output, ctx.fixer_output)
        text = self._call_phase(ctx, PhaseName.VERIFY, build_phase_prompt(PhaseName.VERIFY, context))
        if text is None:
            return RunState.FAILED
        return self._judge(ctx, text, "verifier")

    def _judge(self, ctx: _RunContext, text: str, reviewer: str) -> RunState:
        verdict = parse_verdict(text)
        ctx.verdict = verdict
        ctx.review_output = text
        LOGGER.info("%s verdict: %s", reviewer.capitalize(), verdict.value)
        if ctx.mode is ExecutionMode.REVIEW:
            return RunState.DONE
        if verdict.accepted:
            return RunState.ACCEPTED
        if ctx.fix_iterations >= self.max_fix_iterations:
            LOGGER.warning(
                "Maximum fix iterations reached (%d) and %s still reports issues. Exiting with warnings.",
                self.max_fix_iterations,
                reviewer,
            )
            return RunState.UNRESOLVED
        return RunState.FIX

    def _fix(self, ctx: _RunContext) -> RunState:
        ctx.fix_iterations += 1
        LOGGER.info("Starting fix iteration %d/%d...", ctx.fix_iterations, self.max_fix_iterations)
        context = compose_fixer_context(
            ctx.base_context,
            ctx.implementer_output,
            ctx.completed,
            ctx.review_output,
            tester_output=ctx.tester_output or None,
        )
        text = self._call_phase(ctx, PhaseName.FIX, build_phase_prompt(PhaseName.FIX, context))
        if text is None:
            return RunState.FAILED
        ctx.fixer_output = text
        return RunState.VERIFY if ctx.mode is ExecutionMode.SIMPLE else RunState.REVIEW

    # ---- completion --------------------------------------------------------

    def _finish(self, ctx: _RunContext, state: RunState) -> ExecutionResult:
        persisted: Optional[ReconcileOutcome] = None
        accepted = state is RunState.ACCEPTED or (
            state is RunState.DONE and ctx.verdict is not None and ctx.verdict.accepted
        )

        if state is RunState.FAILED:
            LOGGER.warning("Skipping automatic task completion marking due to executor failure.")
        elif state is RunState.UNRESOLVED and ctx.newly_completed:
            LOGGER.warning("Skipping automatic task completion marking due to unresolved review issues.")
        elif state is RunState.ACCEPTED and ctx.newly_completed and ctx.plan is not None:
            if self.reconciler is not None:
                persisted = self.reconciler.persist(ctx.plan.id, ctx.newly_completed)

        result = ExecutionResult(
            mode=ctx.mode,
            state=state,
            success=state is not RunState.FAILED,
            accepted=accepted,
            verdict=ctx.verdict,
            failure=ctx.failure,
            transcript=list(ctx.transcript),
            completed_titles=list(ctx.newly_completed),
            persisted=persisted,
            planning_only_attempts=list(ctx.planning_only_attempts),
            iterations=ctx.fix_iterations,
        )
        LOGGER.info("Run finished in state %s (accepted: %s).", state.value, accepted)
        return result
