"""Cross-process workspace lock so two runs never mutate the same tree.

The lock is a small JSON document naming its owner. Reads and writes of the
document are serialised by an ``fcntl`` guard on a sibling file; the
document itself outlives the owning process so a crashed run can be
detected and reclaimed:

* ``pid`` locks are stale once the owner process is gone (same host only)
  or once they are older than :data:`STALE_LOCK_TIMEOUT`.
* ``persistent`` locks are never reclaimed automatically.
"""

from __future__ import annotations

import atexit
import errno
import fcntl
import json
import logging
import os
import socket
import tempfile
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

LOGGER = logging.getLogger(__name__)

LOCK_VERSION = 2
STALE_LOCK_TIMEOUT = timedelta(hours=24)
DEFAULT_LOCK_PATH = Path(".conductor/workspace.lock")

__all__ = [
    "LockError",
    "LockHeldError",
    "LockInfo",
    "LockType",
    "WorkspaceLock",
    "is_process_alive",
]


class LockError(RuntimeError):
    """Base exception for workspace locking errors."""


class LockHeldError(LockError):
    """Raised when another live owner holds the workspace lock."""

    def __init__(self, info: "LockInfo", path: Path) -> None:
        self.info = info
        self.path = path
        super().__init__(
            f"Workspace is locked by pid {info.pid} on {info.hostname} "
            f"since {info.started_at} ({info.command})"
        )


class LockType(str, Enum):
    PERSISTENT = "persistent"
    PID = "pid"


@dataclass(slots=True)
class LockInfo:
    """Owner metadata recorded in the lock document."""

    lock_type: LockType
    pid: int
    command: str
    started_at: str
    hostname: str
    version: int = LOCK_VERSION

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["lock_type"] = self.lock_type.value
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LockInfo":
        return cls(
            lock_type=LockType(payload.get("lock_type") or LockType.PID.value),
            pid=int(payload.get("pid") or 0),
            command=str(payload.get("command") or ""),
            started_at=str(payload.get("started_at") or ""),
            hostname=str(payload.get("hostname") or ""),
            version=int(payload.get("version") or LOCK_VERSION),
        )

    @property
    def started(self) -> Optional[datetime]:
        try:
            stamp = datetime.fromisoformat(self.started_at)
        except ValueError:
            return None
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        return stamp


def is_process_alive(pid: int) -> bool:
    """Return True when ``pid`` names a running process."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as error:
        return error.errno != errno.ESRCH
    return True


class WorkspaceLock:
    """File-based lock guarding one working tree."""

    def __init__(
        self,
        path: Path | str = DEFAULT_LOCK_PATH,
        *,
        stale_after: timedelta = STALE_LOCK_TIMEOUT,
        pid: Optional[int] = None,
    ) -> None:
        self.path = Path(path)
        self.stale_after = stale_after
        self.pid = pid if pid is not None else os.getpid()
        self._guard_path = self.path.with_name(self.path.name + ".guard")
        self._held: Optional[LockInfo] = None
        self._cleanup_registered = False

    @classmethod
    def for_workspace(cls, root: Path | str, config: Optional[Mapping[str, Any]] = None) -> "WorkspaceLock":
        paths = (config or {}).get("paths") or {}
        lock_path = Path(paths.get("lock") or DEFAULT_LOCK_PATH)
        if not lock_path.is_absolute():
            lock_path = Path(root) / lock_path
        return cls(lock_path)

    # ---- guard --------------------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._guard_path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _read_unlocked(self) -> Optional[LockInfo]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("lock document is not an object")
            return LockInfo.from_dict(payload)
        except (ValueError, TypeError) as error:
            LOGGER.warning("Ignoring corrupt workspace lock %s: %s", self.path, error)
            return None

    def _write_unlocked(self, info: LockInfo) -> None:
        handle = tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.path.parent, prefix=f".{self.path.name}.", delete=False
        )
        try:
            with handle:
                json.dump(info.to_dict(), handle, indent=2)
            os.replace(handle.name, self.path)
        except BaseException:
            Path(handle.name).unlink(missing_ok=True)
            raise

    # ---- public API ---------------------------------------------------------

    def is_stale(self, info: LockInfo, *, now: Optional[datetime] = None) -> bool:
        """Return True when ``info`` belongs to an owner that can be reclaimed."""
        if info.lock_type is LockType.PERSISTENT:
            return False
        started = info.started
        if started is None:
            return True
        current = now or datetime.now(timezone.utc)
        if current - started > self.stale_after:
            return True
        if info.hostname and info.hostname != socket.gethostname():
            return False
        return not is_process_alive(info.pid)

    def read(self, *, include_stale: bool = True) -> Optional[LockInfo]:
        with self._guard():
            info = self._read_unlocked()
        if info is not None and not include_stale and self.is_stale(info):
            return None
        return info

    def is_locked(self) -> bool:
        return self.read(include_stale=False) is not None

    def acquire(self, command: str, *, lock_type: LockType = LockType.PID) -> LockInfo:
        """Take the lock, reclaiming a stale one; raises :class:`LockHeldError`."""
        with self._guard():
            existing = self._read_unlocked()
            if existing is not None:
                if existing.pid == self.pid and existing.hostname == socket.gethostname():
                    LOGGER.debug("Workspace lock %s already held by this process", self.path)
                    self._held = existing
                    return existing
                if not self.is_stale(existing):
                    raise LockHeldError(existing, self.path)
                LOGGER.warning(
                    "Reclaiming stale workspace lock held by pid %s since %s (%s)",
                    existing.pid,
                    existing.started_at,
                    existing.command,
                )
            info = LockInfo(
                lock_type=LockType(lock_type),
                pid=self.pid,
                command=command,
                started_at=datetime.now(timezone.utc).isoformat(),
                hostname=socket.gethostname(),
            )
            self._write_unlocked(info)
        self._held = info
        if info.lock_type is LockType.PID:
            self._register_cleanup()
        LOGGER.info("Acquired workspace lock %s", self.path)
        return info

    def release(self, *, force: bool = False) -> bool:
        """Remove the lock when owned by this process (or ``force``)."""
        with self._guard():
            existing = self._read_unlocked()
            if existing is None:
                self._held = None
                return False
            if not force and existing.pid != self.pid:
                LOGGER.warning(
                    "Not releasing workspace lock %s owned by pid %s", self.path, existing.pid
                )
                return False
            self.path.unlink(missing_ok=True)
        self._held = None
        self._unregister_cleanup()
        LOGGER.info("Released workspace lock %s", self.path)
        return True

    def _register_cleanup(self) -> None:
        if self._cleanup_registered:
            return
        atexit.register(self._cleanup_at_exit)
        self._cleanup_registered = True

    def _unregister_cleanup(self) -> None:
        if not self._cleanup_registered:
            return
        atexit.unregister(self._cleanup_at_exit)
        self._cleanup_registered = False

    def _cleanup_at_exit(self) -> None:
        if self._held is None:
            return
        try:
            self.release()
        except OSError as error:
            LOGGER.debug("Workspace lock cleanup failed: %s", error)

    def __enter__(self) -> "WorkspaceLock":
        if self._held is None:
            self.acquire("conductor")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
