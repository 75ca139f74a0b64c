"""Backend stream protocol: line splitting, grammar mapping, canonical events."""

from .events import (
    AgentEvent,
    AgentMessageEvent,
    CommandEvent,
    CommandPhase,
    DiffEvent,
    EventKind,
    InitEvent,
    PlanUpdateEvent,
    ReasoningEvent,
    TaskStartedEvent,
    UnknownEvent,
    UsageEvent,
)
from .normalizer import StreamNormalizer, parse_line
from .render import format_event, truncate_output
from .splitter import LineSplitter

__all__ = [
    "AgentEvent",
    "AgentMessageEvent",
    "CommandEvent",
    "CommandPhase",
    "DiffEvent",
    "EventKind",
    "InitEvent",
    "LineSplitter",
    "PlanUpdateEvent",
    "ReasoningEvent",
    "StreamNormalizer",
    "TaskStartedEvent",
    "UnknownEvent",
    "UsageEvent",
    "format_event",
    "parse_line",
    "truncate_output",
]
