from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from conductor.backend.runner import StepResult  # noqa: E402
from conductor.plans.document import save_plan  # noqa: E402
from conductor.plans.schema import Plan  # noqa: E402
from conductor.policy.failure import detect_failure  # noqa: E402
from conductor.tools.vcs import RepositoryState  # noqa: E402

ScriptedResponse = Union[str, Exception]


@dataclass(slots=True)
class ScriptedRunner:
    """Backend stand-in that replays canned final messages in order."""

    responses: List[ScriptedResponse]
    calls: List[Tuple[str, str]] = field(default_factory=list)

    def run(self, prompt: str, cwd: Path | str, *, title: Optional[str] = None) -> StepResult:
        self.calls.append((title or "", prompt))
        if not self.responses:
            raise AssertionError(f"Unexpected backend call for {title}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return StepResult(final_message=response, failed=detect_failure(response))

    @property
    def titles(self) -> List[str]:
        return [title for title, _ in self.calls]

    def prompts_for(self, prefix: str) -> List[str]:
        return [prompt for title, prompt in self.calls if title.startswith(prefix)]


@dataclass(slots=True)
class StateSequence:
    """Repository snapshots handed out one per capture; the last one repeats."""

    states: List[Optional[RepositoryState]]
    captured: int = 0

    def __call__(self, root: Path) -> Optional[RepositoryState]:
        index = min(self.captured, len(self.states) - 1)
        self.captured += 1
        return self.states[index]


def clean_state(commit: str = "c0") -> RepositoryState:
    return RepositoryState(commit_hash=commit, has_changes=False, status_output="", diff_hash="d0")


@pytest.fixture()
def scripted_runner() -> Callable[[Sequence[ScriptedResponse]], ScriptedRunner]:
    def _factory(responses: Sequence[ScriptedResponse]) -> ScriptedRunner:
        return ScriptedRunner(list(responses))

    return _factory


@pytest.fixture()
def state_sequence() -> Callable[..., StateSequence]:
    def _factory(*commits: Optional[str]) -> StateSequence:
        return StateSequence([clean_state(commit) if commit is not None else None for commit in commits])

    return _factory


@pytest.fixture()
def tasks_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "tasks"
    directory.mkdir()
    return directory


@pytest.fixture()
def write_plan(tasks_dir: Path) -> Callable[..., Path]:
    """Persist a plan document built from keyword fields; returns its path."""

    def _write(plan_id: int, *, tasks: Iterable[Dict[str, Any]] = (), **fields: Any) -> Path:
        fields.setdefault("title", f"Plan {plan_id}")
        plan = Plan.model_validate({"id": plan_id, "tasks": list(tasks), **fields})
        return save_plan(tasks_dir / f"{plan_id}.plan.md", plan)

    return _write


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Create a git repository with one committed file."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir()

    def run_git(*cmd: str) -> None:
        subprocess.run(
            ["git", *cmd],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init")
    run_git("config", "user.email", "agent@example.com")
    run_git("config", "user.name", "Conductor Tests")
    (repo_root / "app.py").write_text("VALUE = 1\n", encoding="utf-8")
    run_git("add", ".")
    run_git("commit", "-m", "Initial state")
    return repo_root
