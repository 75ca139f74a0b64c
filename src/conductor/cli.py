"""CLI commands for inspecting plans and running orchestrations."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

import typer

from .backend.command import BackendOptions
from .backend.runner import BackendRunner, Timeouts
from .config import DEFAULT_CONFIG_NAME, ConfigError, ConfigStore, write_default_config
from .orchestrator import ExecutionMode, ExecutionResult, Orchestrator
from .phases.logs import PhaseLogger, list_phase_logs
from .plans.schema import Plan, PlanStatus
from .plans.store import PlanStore, PlanStoreError, ReadyFilter, categorize_tasks, ready_plans
from .policy.failure import format_failure_report
from .protocol.events import AgentEvent
from .protocol.render import format_event
from .reconciler import TaskReconciler, classifier_from_environment
from .tools.workspace_lock import LockError, WorkspaceLock

APP_HELP = "Drive coding-agent backends through implement, test, review and fix phases."

app = typer.Typer(help=APP_HELP)
lock_app = typer.Typer(help="Inspect or release the workspace lock.")
app.add_typer(lock_app, name="lock")

CONFIG_HELP = "Path to the conductor configuration file."


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def load_config(config: str) -> ConfigStore:
    """Load and validate the configuration, exiting on errors."""
    store = ConfigStore(Path(config))
    try:
        store.load()
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    return store


def _plan_store(config_store: ConfigStore) -> PlanStore:
    store = PlanStore(config_store.resolve_path(config_store.config.project.tasks_dir))
    try:
        store.load()
    except PlanStoreError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    return store


def _get_plan(store: PlanStore, plan_id: int) -> Plan:
    try:
        return store.get(plan_id)
    except PlanStoreError as error:
        raise typer.BadParameter(str(error)) from error


def _format_plan_line(plan: Plan) -> str:
    priority = plan.priority.value if plan.priority is not None else "-"
    return f"{plan.id}: {plan.display_title} [{plan.status.value}, priority {priority}]"


@app.command()
def init(
    root: Path = typer.Argument(Path("."), help="Working tree to initialise."),
    name: str = typer.Option("", "--name", help="Project name recorded in the config."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file."),
) -> None:
    """Write the default configuration file."""
    config_path = root / DEFAULT_CONFIG_NAME
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_default_config(config_path, project_name=name or root.resolve().name)
    (root / "tasks").mkdir(parents=True, exist_ok=True)
    typer.echo(f"Wrote {config_path}")


@app.command("next")
def next_plan(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
    include_in_progress: bool = typer.Option(
        True,
        "--include-in-progress/--pending-only",
        help="Consider plans that are already in progress.",
    ),
    show_all: bool = typer.Option(False, "--all", help="List every ready plan, not just the first."),
) -> None:
    """Print the next plan that is ready to run."""
    store = _plan_store(load_config(config))
    ready = ready_plans(store.plans, ReadyFilter(include_pending=True, include_in_progress=include_in_progress))
    if not ready:
        typer.echo("No ready plans.")
        raise typer.Exit(code=1)
    for plan in ready if show_all else ready[:1]:
        typer.echo(_format_plan_line(plan))


@app.command()
def deps(
    plan_id: int = typer.Argument(..., help="Plan whose dependency chain to print."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Print the plan and its dependencies, dependencies first."""
    store = _plan_store(load_config(config))
    try:
        ordered = store.dependencies_of(plan_id)
    except PlanStoreError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    for plan in ordered:
        typer.echo(_format_plan_line(plan))


@app.command()
def show(
    plan_id: int = typer.Argument(..., help="Plan to display."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Print a plan with its completed and pending tasks."""
    store = _plan_store(load_config(config))
    plan = _get_plan(store, plan_id)
    categories = categorize_tasks(plan)
    typer.echo(_format_plan_line(plan))
    if plan.goal:
        typer.echo(f"Goal: {plan.goal}")
    if plan.dependencies:
        typer.echo("Depends on: " + ", ".join(str(dep) for dep in plan.dependencies))
    typer.echo(f"Completed ({len(categories.completed)}):")
    for title in categories.completed:
        typer.echo(f"  [x] {title}")
    typer.echo(f"Pending ({len(categories.pending)}):")
    for title in categories.pending:
        typer.echo(f"  [ ] {title}")


@app.command()
def done(
    plan_id: int = typer.Argument(..., help="Plan containing the tasks."),
    titles: List[str] = typer.Argument(..., help="Exact task titles to mark done."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Mark tasks done, one title at a time."""
    store = _plan_store(load_config(config))
    _get_plan(store, plan_id)
    outcome = TaskReconciler(store).persist(plan_id, titles)
    for title in outcome.marked:
        typer.echo(f"Marked done: {title}")
    for title, reason in outcome.failed.items():
        typer.echo(f"Failed: {title}: {reason}")
    if outcome.failed:
        raise typer.Exit(code=1)


@app.command()
def run(
    plan_id: int = typer.Argument(..., help="Plan to execute."),
    mode: ExecutionMode = typer.Option(ExecutionMode.NORMAL, "--mode", "-m", help="Execution mode."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
    transcript: bool = typer.Option(False, "--transcript", help="Print every phase output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not stream backend events to stderr."),
) -> None:
    """Run the orchestrator for one plan while holding the workspace lock."""
    config_store = load_config(config)
    store = _plan_store(config_store)
    plan = _get_plan(store, plan_id)

    lock = WorkspaceLock(config_store.resolve_path(config_store.config.paths.lock))
    try:
        lock.acquire(f"conductor run {plan_id} --mode {mode.value}")
    except LockError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    try:
        if mode is not ExecutionMode.REVIEW and plan.status is PlanStatus.PENDING:
            plan = store.set_status(plan_id, PlanStatus.IN_PROGRESS)
        orchestrator = build_orchestrator(config_store, store, on_event=None if quiet else _echo_event)
        result = orchestrator.run(plan, mode)
    finally:
        lock.release()

    _render_result(result, transcript=transcript)
    if not result.success:
        raise typer.Exit(code=1)


def build_orchestrator(
    config_store: ConfigStore,
    store: PlanStore,
    *,
    on_event: Optional[Callable[[AgentEvent], None]] = None,
) -> Orchestrator:
    """Wire the backend runner, classifier and logs from configuration."""
    settings = config_store.mapping()
    iteration = config_store.config.iteration
    runner = BackendRunner(
        BackendOptions.from_config(settings),
        timeouts=Timeouts.from_env(
            inactivity=iteration.inactivity_timeout_seconds,
            initial=iteration.initial_inactivity_timeout_seconds,
        ),
        max_attempts=iteration.max_backend_attempts,
        on_event=on_event,
    )
    reconciler = TaskReconciler(store, classifier_from_environment(settings))
    return Orchestrator(
        runner,
        root=config_store.root,
        reconciler=reconciler,
        store=store,
        config=settings,
        phase_logger=PhaseLogger(config_store.resolve_path(config_store.config.paths.logs)),
    )


def _echo_event(event: AgentEvent) -> None:
    text = format_event(event)
    if text:
        typer.echo(text, err=True)


def _render_result(result: ExecutionResult, *, transcript: bool) -> None:
    if transcript:
        typer.echo(result.aggregated_output())
    elif result.final_message:
        typer.echo(result.final_message)

    if result.failure is not None:
        typer.echo("")
        typer.echo(format_failure_report(result.failure))
        return
    verdict = result.verdict.value if result.verdict is not None else "none"
    typer.echo(f"Run finished: {result.state.value} (verdict: {verdict}, fix iterations: {result.iterations})")
    if result.persisted is not None:
        for title in result.persisted.marked:
            typer.echo(f"Marked done: {title}")


@app.command()
def logs(
    plan_id: Optional[int] = typer.Option(None, "--plan", "-p", help="Only show logs for this plan."),
    failed_only: bool = typer.Option(False, "--failed", help="Only show failed phase calls."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Show at most this many recent entries."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """List recorded phase calls, newest last."""
    config_store = load_config(config)
    entries = list_phase_logs(config_store.resolve_path(config_store.config.paths.logs), plan_id=plan_id)
    if failed_only:
        entries = [entry for entry in entries if entry.failed]
    if not entries:
        typer.echo("No phase logs found.")
        return
    for entry in entries[-limit:]:
        plan = f"plan {entry.plan_id}" if entry.plan_id is not None else "no plan"
        status = "FAILED" if entry.failed else "ok"
        typer.echo(f"{entry.path.name}  {entry.title} ({plan}) {status}")
        failure = entry.failure
        if failure:
            typer.echo(f"    {failure.get('source_agent')}: {failure.get('summary') or failure.get('problems')}")


@lock_app.command("status")
def lock_status(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
) -> None:
    """Show who holds the workspace lock."""
    config_store = load_config(config)
    lock = WorkspaceLock(config_store.resolve_path(config_store.config.paths.lock))
    info = lock.read()
    if info is None:
        typer.echo("Workspace is not locked.")
        return
    stale = " (stale)" if lock.is_stale(info) else ""
    typer.echo(
        f"Locked{stale}: pid {info.pid} on {info.hostname} since {info.started_at} "
        f"[{info.lock_type.value}] {info.command}"
    )


@lock_app.command("release")
def lock_release(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help=CONFIG_HELP),
    force: bool = typer.Option(False, "--force", help="Release even when another process owns it."),
) -> None:
    """Remove the workspace lock."""
    config_store = load_config(config)
    lock = WorkspaceLock(config_store.resolve_path(config_store.config.paths.lock))
    if lock.read() is None:
        typer.echo("Workspace is not locked.")
        return
    if not lock.release(force=force):
        typer.echo("Lock is owned by another process; use --force to remove it.")
        raise typer.Exit(code=1)
    typer.echo("Workspace lock released.")


if __name__ == "__main__":
    app()
