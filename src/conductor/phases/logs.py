"""Structured JSON transcripts of each backend phase call."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

LOGGER = logging.getLogger(__name__)

__all__ = ["PhaseLogEntry", "PhaseLogger", "list_phase_logs", "load_phase_log", "slugify"]

_SLUG_PATTERN = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "phase", max_length: int = 60) -> str:
    """Normalize ``value`` into a filesystem-friendly slug."""
    slug = _SLUG_PATTERN.sub("-", (value or "").strip().lower())
    slug = _HYPHEN_COLLAPSE.sub("-", slug).strip("-") or fallback
    if len(slug) > max_length:
        digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
        slug = f"{slug[: max_length - len(digest) - 1].rstrip('-')}-{digest}"
    return slug


@dataclass(slots=True)
class PhaseLogEntry:
    """In-memory representation of a stored phase log."""

    path: Path
    phase: str
    payload: Mapping[str, Any]

    @property
    def title(self) -> str:
        return str(self.payload.get("title") or "")

    @property
    def failed(self) -> bool:
        return bool(self.payload.get("failed"))

    @property
    def final_message(self) -> str:
        return str(self.payload.get("final_message") or "")

    @property
    def plan_id(self) -> Optional[int]:
        value = self.payload.get("plan_id")
        return value if isinstance(value, int) else None

    @property
    def failure(self) -> Optional[Mapping[str, Any]]:
        value = self.payload.get("failure")
        return value if isinstance(value, dict) else None


class PhaseLogger:
    """Writes one JSON file per phase attempt under ``root``.

    Write errors are logged and otherwise ignored; a transcript file is a
    diagnostic aid and must not abort a run.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def write(
        self,
        *,
        phase: str,
        title: str,
        prompt: str,
        final_message: Optional[str],
        failed: bool,
        elapsed_seconds: float,
        plan_id: Optional[int] = None,
        error: Optional[str] = None,
        failure: Optional[Mapping[str, str]] = None,
    ) -> Optional[Path]:
        now = datetime.now(timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "phase": phase,
            "title": title,
            "plan_id": plan_id,
            "prompt": prompt,
            "final_message": final_message,
            "failed": failed,
            "elapsed_seconds": round(elapsed_seconds, 3),
        }
        if error is not None:
            entry["error"] = error
        if failure is not None:
            entry["failure"] = dict(failure)

        file_name = f"{now.strftime('%Y%m%dT%H%M%S%fZ')}-{phase}-{slugify(title)}.json"
        path = self.root / file_name
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
        except OSError as exc:
            LOGGER.warning("Failed to write phase log %s: %s", path, exc)
            return None
        return path


def load_phase_log(path: Path | str) -> PhaseLogEntry:
    """Load a structured phase log from disk."""
    log_path = Path(path).resolve()
    with log_path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    phase = str(payload.get("phase") or "").strip()
    return PhaseLogEntry(path=log_path, phase=phase, payload=payload)


def list_phase_logs(root: Path | str, *, plan_id: Optional[int] = None) -> List[PhaseLogEntry]:
    """Readable phase logs under ``root``, oldest first; unreadable files are skipped."""
    directory = Path(root)
    if not directory.is_dir():
        return []
    entries: List[PhaseLogEntry] = []
    for path in sorted(directory.glob("*.json")):
        try:
            entry = load_phase_log(path)
        except (OSError, ValueError, AttributeError) as exc:
            LOGGER.warning("Skipping unreadable phase log %s: %s", path, exc)
            continue
        if plan_id is not None and entry.plan_id != plan_id:
            continue
        entries.append(entry)
    return entries
