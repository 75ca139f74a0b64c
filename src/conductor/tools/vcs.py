"""Minimal git helpers.

Only what orchestration needs: locate the repository, read ``HEAD`` and
summarise the working tree so two snapshots can be compared.
"""

from __future__ import annotations

import hashlib
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger(__name__)

__all__ = ["GitError", "GitRepository", "RepositoryState", "capture_repository_state"]


class GitError(RuntimeError):
    """A git command failed or the path is not a repository."""


@dataclass(frozen=True, slots=True)
class RepositoryState:
    """Point-in-time summary of a repository, compared before/after a phase."""

    commit_hash: Optional[str]
    has_changes: bool
    status_output: Optional[str] = None
    diff_hash: Optional[str] = None
    status_check_failed: bool = False

    @classmethod
    def unavailable(cls) -> "RepositoryState":
        return cls(commit_hash=None, has_changes=False, status_check_failed=True)


class GitRepository:
    """A working tree with a ``.git`` directory at ``root``."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"{self.root} has no .git directory")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Walk up from ``start`` (default: cwd) to the enclosing repository."""
        origin = Path(start or Path.cwd()).resolve()
        root = next((path for path in (origin, *origin.parents) if (path / ".git").exists()), None)
        if root is None:
            raise GitError(f"No git repository above {origin}")
        return cls(root)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run ``git args`` in the root; non-zero exits raise when ``check``."""
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.root,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as error:
            raise GitError(f"git could not be started: {error}") from error
        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
            raise GitError(f"git {args[0] if args else ''} failed: {detail}")
        return result

    # ---- queries -----------------------------------------------------------
    def current_commit(self) -> Optional[str]:
        """Return ``HEAD`` or ``None`` for a repository without commits."""
        result = self.git("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def status_porcelain(self) -> str:
        """Return ``git status --porcelain`` output including untracked files."""
        result = self.git("status", "--porcelain", "--untracked-files=all")
        return result.stdout.rstrip("\n")

    def diff_hash(self) -> str:
        """Digest of tracked changes, so edits to an already dirty file register."""
        digest = hashlib.sha256()
        if self.current_commit() is not None:
            digest.update(self.git("diff", "HEAD", "--binary").stdout.encode("utf-8"))
        else:
            digest.update(self.git("diff", "--cached", "--binary").stdout.encode("utf-8"))
        return digest.hexdigest()

    def snapshot(self) -> RepositoryState:
        """Capture commit, porcelain status and diff digest; raises ``GitError``."""
        commit = self.current_commit()
        status = self.status_porcelain()
        return RepositoryState(
            commit_hash=commit or "",
            has_changes=bool(status.strip()),
            status_output=status,
            diff_hash=self.diff_hash(),
        )


def capture_repository_state(root: Path | str) -> RepositoryState:
    """Snapshot ``root``; failures yield a state flagged ``status_check_failed``."""
    try:
        return GitRepository(root).snapshot()
    except GitError as error:
        LOGGER.warning("Unable to capture repository state for %s: %s", root, error)
        return RepositoryState.unavailable()
