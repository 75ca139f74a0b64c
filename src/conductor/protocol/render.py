"""Human-readable rendering of canonical events for console output.

Truncation happens here only; the normalizer keeps full text for every
decision it feeds.
"""

from __future__ import annotations

import math
from typing import List, Optional

from .events import (
    AgentEvent,
    AgentMessageEvent,
    CommandEvent,
    CommandPhase,
    DiffEvent,
    InitEvent,
    PlanUpdateEvent,
    RateLimitWindow,
    ReasoningEvent,
    TaskStartedEvent,
    UnknownEvent,
    UsageEvent,
)

__all__ = ["MAX_OUTPUT_LINES", "TRUNCATION_MARKER", "format_event", "format_rate_limit", "truncate_output"]

MAX_OUTPUT_LINES = 20
TRUNCATION_MARKER = "(truncated long output...)"
MAX_FILES_LISTED = 3


def truncate_output(text: Optional[str], max_lines: int = MAX_OUTPUT_LINES) -> str:
    """Keep the first ``max_lines`` lines and append a marker when cut."""
    if not text:
        return ""
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    return "\n".join([*lines[:max_lines], TRUNCATION_MARKER])


def _format_minutes(minutes: int) -> str:
    days, minutes = divmod(minutes, 1440)
    hours, minutes = divmod(minutes, 60)
    parts = [f"{days}d" if days else "", f"{hours}h" if hours else "", f"{minutes}m" if minutes else ""]
    return ", ".join(part for part in parts if part)


def _format_resets(seconds: int) -> str:
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    if days > 1:
        return " ".join(part for part in (f"{days}d", f"{hours}h" if hours else "") if part)
    if hours > 1:
        return f"{hours}h"
    return f"{hours}h {seconds // 60}m"


def _rate_limit_pressure(limit: RateLimitWindow) -> bool:
    """True when usage is projected to exhaust the window before it resets."""
    if not limit.window_minutes or limit.window_minutes <= 0:
        return False
    if limit.used_percent >= 100:
        return True
    window_seconds = limit.window_minutes * 60
    resets = limit.resets_in_seconds if limit.resets_in_seconds is not None else window_seconds
    remaining = min(window_seconds, max(0, resets))
    elapsed = window_seconds - remaining
    if elapsed <= 0:
        return False
    projected = (max(0.0, limit.used_percent) / 100) * (window_seconds / elapsed)
    return projected >= 1


def format_rate_limit(limit: RateLimitWindow) -> str:
    window = limit.window_minutes or 0
    # Backends report 299/10079 for 5h/7d windows.
    if window % 10 == 9:
        window += 1
    text = f"{math.floor(limit.used_percent + 0.5)}% of {_format_minutes(window) or 'window'}"
    if limit.resets_in_seconds is not None:
        text += f" (New in {_format_resets(limit.resets_in_seconds)})"
    if _rate_limit_pressure(limit):
        text += " [!]"
    return text


def _format_usage(event: UsageEvent) -> str:
    parts: List[str] = []
    if event.input_tokens:
        parts.append(f"Input: {event.input_tokens:,} tokens")
    if event.cached_input_tokens:
        parts.append(f"  Cached: {event.cached_input_tokens:,} tokens")
        if event.effective_input_tokens:
            parts.append(f"  Effective Input: {event.effective_input_tokens:,} tokens")
    if event.output_tokens:
        parts.append(f"Output: {event.output_tokens:,} tokens")
    if event.reasoning_tokens:
        parts.append(f"Reasoning: {event.reasoning_tokens:,} tokens")
    if event.total_tokens:
        parts.append(f"Total: {event.total_tokens:,} tokens")
    limits = [format_rate_limit(limit) for limit in (event.primary_limit, event.secondary_limit) if limit]
    if limits:
        parts.append("Rate Limits: " + "\t\t".join(limits))
    return "### Usage\n" + "\n".join(parts)


def _format_command(event: CommandEvent) -> str:
    if event.phase is CommandPhase.BEGIN:
        header = f"### Exec Begin: {event.name}"
        details = [event.args] if event.args else []
        if event.cwd:
            details.append(f"CWD: {event.cwd}")
        return "\n".join([header, *details])
    if event.phase is CommandPhase.UPDATE:
        return truncate_output(event.output or event.stderr)
    header = f"### Exec End: {event.name}"
    details = [event.args] if event.args else []
    if event.exit_code not in (None, 0):
        details.append(f"Exit Code: {event.exit_code}")
    if event.duration_seconds is not None:
        details.append(f"Duration: {event.duration_seconds:.1f}s")
    body = truncate_output(event.output)
    if body:
        details.append(body)
    if event.stderr:
        details.append(truncate_output(event.stderr))
    return "\n".join([header, *details])


def _format_diff(event: DiffEvent) -> str:
    stats = []
    if event.added:
        stats.append(f"+{event.added}")
    if event.removed:
        stats.append(f"-{event.removed}")
    stats_text = f" ({', '.join(stats)})" if stats else ""
    if not event.files:
        return f"### Changes\nChanges detected{stats_text}"
    count = len(event.files)
    file_text = "1 file" if count == 1 else f"{count} files"
    listed = ", ".join(event.files[:MAX_FILES_LISTED])
    if count > MAX_FILES_LISTED:
        listed += f" and {count - MAX_FILES_LISTED} more"
    return f"### Changes\nChanges to {file_text}: {listed}{stats_text}"


def format_event(event: AgentEvent) -> str:
    """Return a short console rendering of ``event`` (empty when silent)."""
    if isinstance(event, InitEvent):
        fields = [
            f"{label}: {value}"
            for label, value in (
                ("Model", event.model),
                ("Provider", event.provider),
                ("Sandbox", event.sandbox),
                ("Thread", event.thread_id),
                ("Session", event.session_id),
            )
            if value
        ]
        return "### Session Start\n" + "\n".join(fields)
    if isinstance(event, TaskStartedEvent):
        return "### Task Started"
    if isinstance(event, ReasoningEvent):
        return f"### Thinking\n{event.text}" if event.text else ""
    if isinstance(event, CommandEvent):
        return _format_command(event)
    if isinstance(event, PlanUpdateEvent):
        lines = [f"- [{item.status}] {item.label}" for item in event.items]
        if event.explanation:
            lines.insert(0, event.explanation)
        return "### Plan Update\n" + "\n".join(lines)
    if isinstance(event, DiffEvent):
        return _format_diff(event)
    if isinstance(event, UsageEvent):
        return _format_usage(event)
    if isinstance(event, AgentMessageEvent):
        label = "### Agent Message (FAILED)" if event.failed else "### Agent Message"
        return f"{label}\n{event.text}"
    if isinstance(event, UnknownEvent):
        if event.error:
            return f"### {event.frame_type or 'Unknown'}\n{truncate_output(event.error)}"
        return f"### Unknown ({event.frame_type or 'unrecognised'})\n{truncate_output(event.raw)}"
    return ""
