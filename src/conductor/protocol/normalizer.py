"""Turn chunked backend stdout into canonical :mod:`events`."""

from __future__ import annotations

import json
import logging
from typing import Callable, Iterable, Iterator, List, Optional

from ..policy.failure import detect_failure
from .events import (
    AgentEvent,
    AgentMessageEvent,
    InitEvent,
    ProtocolParseError,
    ReasoningEvent,
    UnknownEvent,
    UsageEvent,
)
from .legacy import is_legacy_frame, map_legacy_frame
from .modern import is_modern_frame, map_modern_frame
from .splitter import LineSplitter

LOGGER = logging.getLogger(__name__)

__all__ = ["StreamNormalizer", "parse_line"]

EventCallback = Callable[[AgentEvent], None]


def parse_line(line: str) -> List[AgentEvent]:
    """Map one complete stream line to canonical events; never raises."""
    if not line.strip():
        return []
    try:
        frame = json.loads(line)
    except json.JSONDecodeError as error:
        problem = ProtocolParseError(line, f"invalid JSON ({error.msg})")
        LOGGER.debug("Skipping malformed stream line: %s", problem)
        return [UnknownEvent(raw=line, frame_type="parse_error", error=str(problem))]

    if not isinstance(frame, dict):
        return [UnknownEvent(raw=line)]
    if is_legacy_frame(frame):
        return map_legacy_frame(frame)
    if is_modern_frame(frame):
        return map_modern_frame(frame)
    return [UnknownEvent(raw=line, payload=frame)]


class StreamNormalizer:
    """Stateful normalizer fed with successive stdout chunks.

    The normalizer keeps the partial trailing line between calls and tracks
    the phase's authoritative agent message: the last failed message when
    one was seen, else the last agent message. A completed reasoning item
    stands in only when the stream carried no agent message at all.
    """

    def __init__(self, *, on_event: Optional[EventCallback] = None, keep_history: bool = True) -> None:
        self._splitter = LineSplitter()
        self._on_event = on_event
        self._keep_history = keep_history
        self.events: List[AgentEvent] = []
        self.last_agent_message: Optional[str] = None
        self.failed_agent_message: Optional[str] = None
        self._reasoning_fallback: Optional[str] = None
        self._last_usage_total: Optional[int] = None
        self.thread_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.parse_errors = 0

    # ---- feeding ------------------------------------------------------------

    def feed(self, chunk: str | bytes) -> Iterator[AgentEvent]:
        """Yield the events completed by ``chunk``."""
        yield from self._process(self._splitter.feed(chunk))

    def finish(self) -> Iterator[AgentEvent]:
        """Yield events for a trailing line that lacked a newline."""
        yield from self._process(self._splitter.flush())

    def consume(self, chunk: str | bytes) -> List[AgentEvent]:
        """Eager variant of :meth:`feed`."""
        return list(self.feed(chunk))

    def _process(self, lines: Iterable[str]) -> Iterator[AgentEvent]:
        for line in lines:
            for event in parse_line(line):
                if not self._accept(event):
                    continue
                if self._keep_history:
                    self.events.append(event)
                if self._on_event is not None:
                    self._on_event(event)
                yield event

    def _accept(self, event: AgentEvent) -> bool:
        if isinstance(event, UsageEvent) and event.total_tokens > 0:
            if event.total_tokens == self._last_usage_total:
                return False
            self._last_usage_total = event.total_tokens
        elif isinstance(event, AgentMessageEvent):
            self.last_agent_message = event.text
            if event.failed:
                self.failed_agent_message = event.text
        elif isinstance(event, ReasoningEvent) and event.completed:
            self._reasoning_fallback = event.text
        elif isinstance(event, InitEvent):
            if event.thread_id and not self.thread_id:
                self.thread_id = event.thread_id
            if event.session_id and not self.session_id:
                self.session_id = event.session_id
        elif isinstance(event, UnknownEvent) and event.frame_type == "parse_error":
            self.parse_errors += 1
        return True

    # ---- results ------------------------------------------------------------

    @property
    def final_agent_message(self) -> Optional[str]:
        """Message used downstream for failure and verdict checks."""
        if self.failed_agent_message is not None:
            return self.failed_agent_message
        if self.last_agent_message is not None:
            return self.last_agent_message
        return self._reasoning_fallback

    @property
    def failed(self) -> bool:
        if self.failed_agent_message is not None:
            return True
        if self.last_agent_message is None and self._reasoning_fallback is not None:
            return detect_failure(self._reasoning_fallback)
        return False
