"""Repository and workspace collaborators used by the orchestrator."""

from .vcs import GitError, GitRepository, RepositoryState, capture_repository_state
from .workspace_lock import LockError, LockHeldError, LockInfo, LockType, WorkspaceLock

__all__ = [
    "GitError",
    "GitRepository",
    "LockError",
    "LockHeldError",
    "LockInfo",
    "LockType",
    "RepositoryState",
    "WorkspaceLock",
    "capture_repository_state",
]
