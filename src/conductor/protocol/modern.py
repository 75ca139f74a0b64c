"""Mapping for the modern ``{type: "item.completed", item: {...}}`` stream grammar."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..policy.failure import detect_failure
from .diffs import changes_from_mapping, changes_from_sequence, summarize_unified_diff
from .events import (
    AgentEvent,
    AgentMessageEvent,
    CommandEvent,
    CommandPhase,
    InitEvent,
    PlanItem,
    PlanUpdateEvent,
    RateLimitWindow,
    ReasoningEvent,
    TaskStartedEvent,
    UnknownEvent,
    UsageEvent,
)

__all__ = ["is_modern_frame", "map_modern_frame", "map_usage"]

ITEM_EVENTS = {
    "item.started": CommandPhase.BEGIN,
    "item.updated": CommandPhase.UPDATE,
    "item.completed": CommandPhase.END,
}

ItemMapper = Callable[[str, Mapping[str, Any]], List[AgentEvent]]


def is_modern_frame(frame: Mapping[str, Any]) -> bool:
    return "msg" not in frame and isinstance(frame.get("type"), str)


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def resolve_item_type(item: Optional[Mapping[str, Any]]) -> str:
    if not item:
        return "unknown"
    value = item.get("item_type") or item.get("type")
    return value if isinstance(value, str) and value else "unknown"


def _normalise_command(command: Any) -> str:
    if isinstance(command, str):
        return command
    if isinstance(command, (list, tuple)):
        return " ".join(str(part) for part in command)
    return ""


# ---- item mappers -------------------------------------------------------------


def _reasoning(event_type: str, item: Mapping[str, Any]) -> List[AgentEvent]:
    text = _text(item.get("text"))
    return [ReasoningEvent(text=text, completed=event_type == "item.completed" and bool(text))]


def _agent_message(event_type: str, item: Mapping[str, Any]) -> List[AgentEvent]:
    text = _text(item.get("text"))
    if not text:
        return []
    return [AgentMessageEvent(text=text, failed=detect_failure(text))]


def _todo_list(event_type: str, item: Mapping[str, Any]) -> List[AgentEvent]:
    raw_items = item.get("items")
    entries: List[PlanItem] = []
    for todo in raw_items if isinstance(raw_items, list) else []:
        if not isinstance(todo, Mapping):
            continue
        label = _text(todo.get("text")).strip() or "(missing item text)"
        status = todo.get("status")
        if not isinstance(status, str) or not status:
            status = "completed" if todo.get("completed") else "pending"
        entries.append(PlanItem(label=label, status=status))
    return [PlanUpdateEvent(items=tuple(entries))]


def _command_execution(event_type: str, item: Mapping[str, Any]) -> List[AgentEvent]:
    output = ""
    for key in ("aggregated_output", "formatted_output", "stdout", "text"):
        candidate = item.get(key)
        if isinstance(candidate, str) and candidate:
            output = candidate
            break
    exit_code = item.get("exit_code")
    status = item.get("status")
    return [
        CommandEvent(
            phase=ITEM_EVENTS[event_type],
            name="command",
            args=_normalise_command(item.get("command")),
            call_id=str(item["id"]) if item.get("id") is not None else None,
            cwd=_text(item.get("cwd")) or None,
            output=output,
            stderr=_text(item.get("stderr")),
            exit_code=exit_code if isinstance(exit_code, int) else None,
            status=str(status).lower() if status else None,
        )
    ]


def _diff(event_type: str, item: Mapping[str, Any]) -> List[AgentEvent]:
    for key in ("unified_diff", "diff", "aggregated_output", "text"):
        candidate = item.get(key)
        if isinstance(candidate, str) and candidate:
            return [summarize_unified_diff(candidate)]
    return [summarize_unified_diff("")]


def _patch_apply(event_type: str, item: Mapping[str, Any]) -> List[AgentEvent]:
    changes = item.get("changes")
    events: List[AgentEvent] = [
        changes_from_mapping(changes if isinstance(changes, Mapping) else {}, source="patch_apply")
    ]
    status = item.get("status")
    if event_type == "item.completed" and isinstance(status, str) and status:
        events.append(
            CommandEvent(
                phase=CommandPhase.END,
                name="apply_patch",
                call_id=str(item["id"]) if item.get("id") is not None else None,
                exit_code=0 if status.lower() in {"completed", "applied", "success"} else 1,
                status=status.lower(),
            )
        )
    return events


def _file_change(event_type: str, item: Mapping[str, Any]) -> List[AgentEvent]:
    changes = item.get("changes")
    return [changes_from_sequence(changes if isinstance(changes, list) else [], source="file_change")]


ITEM_MAPPERS: Dict[str, ItemMapper] = {
    "reasoning": _reasoning,
    "agent_message": _agent_message,
    "todo_list": _todo_list,
    "command_execution": _command_execution,
    "diff": _diff,
    "turn_diff": _diff,
    "patch_apply": _patch_apply,
    "patch_application": _patch_apply,
    "file_change": _file_change,
}


def map_item(event_type: str, item: Optional[Mapping[str, Any]]) -> List[AgentEvent]:
    """Dispatch an ``item.*`` frame to the mapper for its item type."""
    item_type = resolve_item_type(item)
    mapper = ITEM_MAPPERS.get(item_type)
    if mapper is None or item is None:
        payload = dict(item) if item else {}
        return [
            UnknownEvent(
                raw=json.dumps(payload, sort_keys=True),
                frame_type=f"item.{item_type}",
                payload=payload,
            )
        ]
    return mapper(event_type, item)


# ---- frame mapper ------------------------------------------------------------


def map_usage(usage: Mapping[str, Any], rate_limits: Any = None) -> UsageEvent:
    """Compute token totals; explicit ``total_tokens`` wins over the computed sum."""
    input_tokens = _int(usage.get("input_tokens"))
    cached = _int(usage.get("cached_input_tokens"))
    output_tokens = _int(usage.get("output_tokens"))
    reasoning = _int(usage.get("reasoning_tokens") or usage.get("reasoning_output_tokens"))
    explicit_total = _int(usage.get("total_tokens"))
    computed = max(0, input_tokens - cached) + output_tokens + reasoning
    limits = rate_limits if isinstance(rate_limits, Mapping) else {}
    return UsageEvent(
        input_tokens=input_tokens,
        cached_input_tokens=cached,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning,
        total_tokens=explicit_total if explicit_total > 0 else computed,
        primary_limit=RateLimitWindow.from_payload(limits.get("primary")),
        secondary_limit=RateLimitWindow.from_payload(limits.get("secondary")),
    )


def map_modern_frame(frame: Mapping[str, Any]) -> List[AgentEvent]:
    """Translate one modern-grammar frame into canonical events."""
    frame_type = frame.get("type")
    if frame_type == "thread.started":
        return [InitEvent(thread_id=_text(frame.get("thread_id")) or None)]
    if frame_type == "session.created":
        session_id = frame.get("session_id") or frame.get("sessionId")
        return [InitEvent(session_id=_text(session_id) or None)]
    if frame_type == "turn.started":
        return [TaskStartedEvent()]
    if frame_type == "turn.completed":
        usage = frame.get("usage")
        return [map_usage(usage if isinstance(usage, Mapping) else {}, frame.get("rate_limits"))]
    if frame_type in ITEM_EVENTS:
        item = frame.get("item")
        return map_item(frame_type, item if isinstance(item, Mapping) else None)
    if frame_type == "item.delta":
        return []

    error: Optional[str] = None
    if frame_type in {"error", "turn.failed"}:
        detail = frame.get("error") if isinstance(frame.get("error"), Mapping) else frame
        error = _text(detail.get("message")) or "backend reported an error"
    payload = dict(frame)
    return [
        UnknownEvent(
            raw=json.dumps(payload, sort_keys=True, default=str),
            frame_type=str(frame_type) if frame_type else None,
            payload=payload,
            error=error,
        )
    ]
