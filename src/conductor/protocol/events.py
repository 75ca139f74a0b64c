"""Canonical event model shared by every backend stream grammar."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

__all__ = [
    "AgentEvent",
    "AgentMessageEvent",
    "CommandEvent",
    "CommandPhase",
    "DiffEvent",
    "EventKind",
    "FileChange",
    "InitEvent",
    "PlanItem",
    "PlanUpdateEvent",
    "ProtocolParseError",
    "RateLimitWindow",
    "ReasoningEvent",
    "TaskStartedEvent",
    "UnknownEvent",
    "UsageEvent",
]


class ProtocolParseError(ValueError):
    """A single stream line could not be decoded; the stream continues."""

    def __init__(self, line: str, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line[:200]}")


class EventKind(str, Enum):
    """Discriminator carried by each canonical event."""

    INIT = "init"
    TASK_STARTED = "task_started"
    REASONING = "reasoning"
    TOOL_OR_COMMAND = "tool_or_command"
    PLAN_UPDATE = "plan_update"
    DIFF = "diff"
    USAGE = "usage"
    AGENT_MESSAGE = "agent_message"
    UNKNOWN = "unknown"


class CommandPhase(str, Enum):
    BEGIN = "begin"
    UPDATE = "update"
    END = "end"


@dataclass(frozen=True, slots=True)
class InitEvent:
    """Backend session metadata (model, sandbox, thread identifier)."""

    kind: ClassVar[EventKind] = EventKind.INIT

    model: Optional[str] = None
    provider: Optional[str] = None
    sandbox: Optional[str] = None
    thread_id: Optional[str] = None
    session_id: Optional[str] = None
    cwd: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TaskStartedEvent:
    kind: ClassVar[EventKind] = EventKind.TASK_STARTED

    context_window: Optional[int] = None


@dataclass(frozen=True, slots=True)
class ReasoningEvent:
    kind: ClassVar[EventKind] = EventKind.REASONING

    text: str = ""
    completed: bool = False


@dataclass(frozen=True, slots=True)
class CommandEvent:
    """A command execution or tool invocation at one point in its lifecycle."""

    kind: ClassVar[EventKind] = EventKind.TOOL_OR_COMMAND

    phase: CommandPhase = CommandPhase.BEGIN
    name: str = "command"
    args: str = ""
    call_id: Optional[str] = None
    cwd: Optional[str] = None
    output: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    status: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def succeeded(self) -> Optional[bool]:
        if self.phase is not CommandPhase.END:
            return None
        if self.exit_code is not None:
            return self.exit_code == 0
        return self.status not in {"failed", "error", "declined"}


@dataclass(frozen=True, slots=True)
class PlanItem:
    label: str
    status: str = "pending"


@dataclass(frozen=True, slots=True)
class PlanUpdateEvent:
    kind: ClassVar[EventKind] = EventKind.PLAN_UPDATE

    items: Tuple[PlanItem, ...] = ()
    explanation: Optional[str] = None


@dataclass(frozen=True, slots=True)
class FileChange:
    path: str
    change: str = "updated"


@dataclass(frozen=True, slots=True)
class DiffEvent:
    """Files touched by the agent plus line-level add/remove counts."""

    kind: ClassVar[EventKind] = EventKind.DIFF

    files: Tuple[str, ...] = ()
    added: int = 0
    removed: int = 0
    changes: Tuple[FileChange, ...] = ()
    source: str = "diff"


@dataclass(frozen=True, slots=True)
class RateLimitWindow:
    used_percent: float
    window_minutes: Optional[int] = None
    resets_in_seconds: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["RateLimitWindow"]:
        if not isinstance(payload, dict):
            return None
        try:
            used = float(payload.get("used_percent") or 0)
        except (TypeError, ValueError):
            return None
        return cls(
            used_percent=used,
            window_minutes=_optional_int(payload.get("window_minutes")),
            resets_in_seconds=_optional_int(payload.get("resets_in_seconds")),
        )


@dataclass(frozen=True, slots=True)
class UsageEvent:
    """Token accounting; ``total_tokens`` is the value used for dedupe."""

    kind: ClassVar[EventKind] = EventKind.USAGE

    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0
    primary_limit: Optional[RateLimitWindow] = None
    secondary_limit: Optional[RateLimitWindow] = None

    @property
    def effective_input_tokens(self) -> int:
        return max(0, self.input_tokens - self.cached_input_tokens)


@dataclass(frozen=True, slots=True)
class AgentMessageEvent:
    """Free text produced by the agent; the last one of a phase is authoritative."""

    kind: ClassVar[EventKind] = EventKind.AGENT_MESSAGE

    text: str = ""
    failed: bool = False


@dataclass(frozen=True, slots=True)
class UnknownEvent:
    """Passthrough for frames this version does not understand."""

    kind: ClassVar[EventKind] = EventKind.UNKNOWN

    raw: str = ""
    frame_type: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    error: Optional[str] = None


AgentEvent = Union[
    InitEvent,
    TaskStartedEvent,
    ReasoningEvent,
    CommandEvent,
    PlanUpdateEvent,
    DiffEvent,
    UsageEvent,
    AgentMessageEvent,
    UnknownEvent,
]


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
