from __future__ import annotations

from pathlib import Path

import pytest

from conductor.tools.vcs import GitError, GitRepository, RepositoryState, capture_repository_state


def test_snapshot_of_clean_repository(git_repo: Path) -> None:
    state = GitRepository(git_repo).snapshot()

    assert state.commit_hash
    assert not state.has_changes
    assert state.status_output == ""
    assert not state.status_check_failed


def test_snapshot_tracks_edits_and_commits(git_repo: Path) -> None:
    repo = GitRepository(git_repo)
    clean = repo.snapshot()

    (git_repo / "app.py").write_text("VALUE = 2\n", encoding="utf-8")
    dirty = repo.snapshot()
    (git_repo / "app.py").write_text("VALUE = 3\n", encoding="utf-8")
    dirtier = repo.snapshot()

    assert dirty.has_changes
    assert dirty.status_output == " M app.py"
    assert dirty.diff_hash != clean.diff_hash
    assert dirtier.status_output == dirty.status_output
    assert dirtier.diff_hash != dirty.diff_hash

    repo.git("commit", "-am", "Bump value")
    committed = repo.snapshot()
    assert committed.commit_hash != clean.commit_hash
    assert not committed.has_changes


def test_untracked_files_count_as_changes(git_repo: Path) -> None:
    (git_repo / "notes.txt").write_text("todo\n", encoding="utf-8")

    state = capture_repository_state(git_repo)

    assert state.has_changes
    assert "?? notes.txt" in (state.status_output or "")


def test_capture_outside_a_repository_is_flagged(tmp_path: Path) -> None:
    state = capture_repository_state(tmp_path)

    assert state == RepositoryState.unavailable()
    assert state.status_check_failed


def test_repository_requires_git_directory(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_discover_walks_up_to_the_repository(git_repo: Path) -> None:
    nested = git_repo / "pkg" / "sub"
    nested.mkdir(parents=True)

    assert GitRepository.discover(nested).root == git_repo.resolve()
