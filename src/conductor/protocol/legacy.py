"""Mapping for the legacy ``{id, msg: {type, ...}}`` stream grammar."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..policy.failure import detect_failure
from .diffs import changes_from_mapping, summarize_unified_diff
from .events import (
    AgentEvent,
    AgentMessageEvent,
    CommandEvent,
    CommandPhase,
    InitEvent,
    PlanItem,
    PlanUpdateEvent,
    ReasoningEvent,
    TaskStartedEvent,
    UnknownEvent,
)
from .modern import map_usage

__all__ = ["INIT_FIELDS", "is_legacy_frame", "map_legacy_frame"]

INIT_FIELDS = ("model", "provider", "sandbox", "approval", "reasoning effort", "workdir")

MessageMapper = Callable[[Mapping[str, Any]], List[AgentEvent]]


def is_legacy_frame(frame: Mapping[str, Any]) -> bool:
    if isinstance(frame.get("msg"), Mapping):
        return True
    return "type" not in frame and any(key in frame for key in INIT_FIELDS)


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _command(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return " ".join(str(part) for part in value)
    return _text(value)


def _call_id(msg: Mapping[str, Any]) -> Optional[str]:
    value = msg.get("call_id")
    return str(value) if value is not None else None


def _decode_chunk(chunk: Any) -> str:
    """Output deltas arrive as base64 text or as a list of byte values."""
    if isinstance(chunk, list):
        try:
            return bytes(chunk).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return ""
    if not isinstance(chunk, str):
        return ""
    try:
        return base64.b64decode(chunk, validate=True).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return chunk


def _duration_seconds(value: Any) -> Optional[float]:
    if isinstance(value, Mapping):
        seconds = value.get("secs") or 0
        nanos = value.get("nanos") or 0
        try:
            return float(seconds) + float(nanos) / 1_000_000_000
        except (TypeError, ValueError):
            return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip().rstrip("s")
        try:
            return float(stripped)
        except ValueError:
            return None
    return None


# ---- message mappers ----------------------------------------------------------


def _task_started(msg: Mapping[str, Any]) -> List[AgentEvent]:
    window = msg.get("model_context_window")
    return [TaskStartedEvent(context_window=window if isinstance(window, int) else None)]


def _session_configured(msg: Mapping[str, Any]) -> List[AgentEvent]:
    return [
        InitEvent(
            model=_text(msg.get("model")) or None,
            session_id=_text(msg.get("session_id")) or None,
            cwd=_text(msg.get("cwd")) or None,
        )
    ]


def _agent_reasoning(msg: Mapping[str, Any]) -> List[AgentEvent]:
    text = _text(msg.get("text"))
    return [ReasoningEvent(text=text, completed=bool(text))]


def _agent_message(msg: Mapping[str, Any]) -> List[AgentEvent]:
    text = _text(msg.get("message"))
    if not text:
        return []
    return [AgentMessageEvent(text=text, failed=detect_failure(text))]


def _exec_begin(msg: Mapping[str, Any]) -> List[AgentEvent]:
    return [
        CommandEvent(
            phase=CommandPhase.BEGIN,
            name="command",
            args=_command(msg.get("command")),
            call_id=_call_id(msg),
            cwd=_text(msg.get("cwd")) or None,
        )
    ]


def _exec_output_delta(msg: Mapping[str, Any]) -> List[AgentEvent]:
    text = _decode_chunk(msg.get("chunk"))
    on_stderr = _text(msg.get("stream")) == "stderr"
    return [
        CommandEvent(
            phase=CommandPhase.UPDATE,
            name="command",
            call_id=_call_id(msg),
            output="" if on_stderr else text,
            stderr=text if on_stderr else "",
        )
    ]


def _exec_end(msg: Mapping[str, Any]) -> List[AgentEvent]:
    exit_code = msg.get("exit_code")
    output = _text(msg.get("aggregated_output")) or _text(msg.get("formatted_output")) or _text(msg.get("stdout"))
    return [
        CommandEvent(
            phase=CommandPhase.END,
            name="command",
            args=_command(msg.get("command")),
            call_id=_call_id(msg),
            output=output,
            stderr=_text(msg.get("stderr")),
            exit_code=exit_code if isinstance(exit_code, int) else None,
            duration_seconds=_duration_seconds(msg.get("duration")),
        )
    ]


def _mcp_begin(msg: Mapping[str, Any]) -> List[AgentEvent]:
    invocation = msg.get("invocation") if isinstance(msg.get("invocation"), Mapping) else {}
    server = _text(invocation.get("server"))
    tool = _text(invocation.get("tool"))
    arguments = invocation.get("arguments")
    return [
        CommandEvent(
            phase=CommandPhase.BEGIN,
            name=".".join(part for part in (server, tool) if part) or "tool",
            args=json.dumps(arguments, sort_keys=True) if arguments is not None else "",
            call_id=_call_id(msg),
        )
    ]


def _mcp_end(msg: Mapping[str, Any]) -> List[AgentEvent]:
    invocation = msg.get("invocation") if isinstance(msg.get("invocation"), Mapping) else {}
    server = _text(invocation.get("server"))
    tool = _text(invocation.get("tool"))
    result = msg.get("result")
    failed = isinstance(result, Mapping) and ("Err" in result or result.get("is_error") is True)
    return [
        CommandEvent(
            phase=CommandPhase.END,
            name=".".join(part for part in (server, tool) if part) or "tool",
            call_id=_call_id(msg),
            output=json.dumps(result, sort_keys=True, default=str) if result is not None else "",
            exit_code=1 if failed else 0,
            duration_seconds=_duration_seconds(msg.get("duration")),
        )
    ]


def _token_count(msg: Mapping[str, Any]) -> List[AgentEvent]:
    info = msg.get("info") if isinstance(msg.get("info"), Mapping) else None
    usage: Mapping[str, Any]
    if info is not None and isinstance(info.get("total_token_usage"), Mapping):
        usage = info["total_token_usage"]
    else:
        usage = msg
    return [map_usage(usage, msg.get("rate_limits"))]


def _plan_update(msg: Mapping[str, Any]) -> List[AgentEvent]:
    raw_plan = msg.get("plan")
    items: List[PlanItem] = []
    for entry in raw_plan if isinstance(raw_plan, list) else []:
        if not isinstance(entry, Mapping):
            continue
        label = _text(entry.get("step")).strip() or "(missing item text)"
        status = _text(entry.get("status")) or "pending"
        items.append(PlanItem(label=label, status=status))
    explanation = _text(msg.get("explanation")) or None
    return [PlanUpdateEvent(items=tuple(items), explanation=explanation)]


def _turn_diff(msg: Mapping[str, Any]) -> List[AgentEvent]:
    return [summarize_unified_diff(_text(msg.get("unified_diff")))]


def _patch_begin(msg: Mapping[str, Any]) -> List[AgentEvent]:
    changes = msg.get("changes")
    return [changes_from_mapping(changes if isinstance(changes, Mapping) else {}, source="patch_apply")]


def _patch_end(msg: Mapping[str, Any]) -> List[AgentEvent]:
    success = msg.get("success")
    return [
        CommandEvent(
            phase=CommandPhase.END,
            name="apply_patch",
            call_id=_call_id(msg),
            output=_text(msg.get("stdout")),
            stderr=_text(msg.get("stderr")),
            exit_code=0 if success else 1,
            status="completed" if success else "failed",
        )
    ]


def _ignored(msg: Mapping[str, Any]) -> List[AgentEvent]:
    return []


MESSAGE_MAPPERS: Dict[str, MessageMapper] = {
    "task_started": _task_started,
    "session_configured": _session_configured,
    "agent_reasoning": _agent_reasoning,
    "agent_reasoning_delta": _ignored,
    "agent_message_delta": _ignored,
    "agent_message": _agent_message,
    "exec_command_begin": _exec_begin,
    "exec_command_output_delta": _exec_output_delta,
    "exec_command_end": _exec_end,
    "mcp_tool_call_begin": _mcp_begin,
    "mcp_tool_call_end": _mcp_end,
    "token_count": _token_count,
    "plan_update": _plan_update,
    "turn_diff": _turn_diff,
    "patch_apply_begin": _patch_begin,
    "patch_apply_end": _patch_end,
}


def map_legacy_frame(frame: Mapping[str, Any]) -> List[AgentEvent]:
    """Translate one legacy-grammar frame into canonical events."""
    msg = frame.get("msg")
    if not isinstance(msg, Mapping):
        return [
            InitEvent(
                model=_text(frame.get("model")) or None,
                provider=_text(frame.get("provider")) or None,
                sandbox=_text(frame.get("sandbox")) or None,
                cwd=_text(frame.get("workdir")) or None,
            )
        ]

    msg_type = _text(msg.get("type"))
    mapper = MESSAGE_MAPPERS.get(msg_type)
    if mapper is not None:
        return mapper(msg)

    error = None
    if msg_type in {"error", "stream_error"}:
        error = _text(msg.get("message")) or "backend reported an error"
    payload = dict(frame)
    return [
        UnknownEvent(
            raw=json.dumps(payload, sort_keys=True, default=str),
            frame_type=msg_type or None,
            payload=payload,
            error=error,
        )
    ]
