from __future__ import annotations

import base64
import json
from typing import Any, Dict, List

from conductor.protocol import (
    AgentMessageEvent,
    CommandEvent,
    CommandPhase,
    DiffEvent,
    InitEvent,
    PlanUpdateEvent,
    ReasoningEvent,
    StreamNormalizer,
    UnknownEvent,
    UsageEvent,
    parse_line,
)
from conductor.protocol.splitter import LineSplitter


def _jsonl(*frames: Dict[str, Any]) -> str:
    return "".join(json.dumps(frame) + "\n" for frame in frames)


def _modern_message(text: str) -> Dict[str, Any]:
    return {"type": "item.completed", "item": {"id": "item_1", "type": "agent_message", "text": text}}


def _legacy_message(text: str) -> Dict[str, Any]:
    return {"id": "0", "msg": {"type": "agent_message", "message": text}}


def test_malformed_lines_never_raise_and_last_message_wins() -> None:
    stream = "\n".join(
        [
            "{not json",
            json.dumps(_modern_message("first answer")),
            "[1, 2",
            "",
            json.dumps(_modern_message("final answer")),
            '{"type": ',
        ]
    )
    normalizer = StreamNormalizer()

    events = normalizer.consume(stream)
    events.extend(normalizer.finish())

    assert normalizer.final_agent_message == "final answer"
    assert normalizer.parse_errors == 3
    assert not normalizer.failed
    parse_errors = [event for event in events if isinstance(event, UnknownEvent) and event.error]
    assert len(parse_errors) == 3


def test_chunk_boundaries_do_not_change_the_result() -> None:
    payload = _jsonl(
        {"type": "thread.started", "thread_id": "thread-42"},
        {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
        _modern_message("Implemented the exporter. ✓"),
    ).encode("utf-8")

    whole = StreamNormalizer()
    whole.consume(payload)
    byte_wise = StreamNormalizer()
    for index in range(len(payload)):
        byte_wise.consume(payload[index : index + 1])

    assert [type(event) for event in byte_wise.events] == [type(event) for event in whole.events]
    assert byte_wise.final_agent_message == "Implemented the exporter. ✓"
    assert byte_wise.thread_id == "thread-42"


def test_trailing_line_without_newline_is_flushed_on_finish() -> None:
    normalizer = StreamNormalizer()

    assert normalizer.consume(json.dumps(_modern_message("done"))) == []
    events = list(normalizer.finish())

    assert [event.text for event in events if isinstance(event, AgentMessageEvent)] == ["done"]


def test_failed_message_takes_priority_over_later_messages() -> None:
    normalizer = StreamNormalizer()
    normalizer.consume(
        _jsonl(
            _modern_message("FAILED: cannot reconcile the requirements"),
            _modern_message("Anything else?"),
        )
    )

    assert normalizer.failed
    assert normalizer.final_agent_message == "FAILED: cannot reconcile the requirements"
    assert normalizer.last_agent_message == "Anything else?"


def test_reasoning_is_used_only_without_agent_messages() -> None:
    reasoning = {"type": "item.completed", "item": {"type": "reasoning", "text": "FAILED: no access"}}

    fallback = StreamNormalizer()
    fallback.consume(_jsonl(reasoning))
    assert fallback.final_agent_message == "FAILED: no access"
    assert fallback.failed

    with_message = StreamNormalizer()
    with_message.consume(_jsonl(_modern_message("All good"), reasoning))
    assert with_message.final_agent_message == "All good"
    assert not with_message.failed


def test_repeated_usage_totals_are_deduplicated() -> None:
    usage = {"type": "turn.completed", "usage": {"input_tokens": 100, "cached_input_tokens": 40, "output_tokens": 10}}
    normalizer = StreamNormalizer()

    normalizer.consume(_jsonl(usage, usage))

    usage_events = [event for event in normalizer.events if isinstance(event, UsageEvent)]
    assert len(usage_events) == 1
    assert usage_events[0].total_tokens == 70


def test_legacy_and_modern_messages_normalize_identically() -> None:
    legacy = parse_line(json.dumps(_legacy_message("VERDICT: ACCEPTABLE")))
    modern = parse_line(json.dumps(_modern_message("VERDICT: ACCEPTABLE")))

    assert legacy == modern == [AgentMessageEvent(text="VERDICT: ACCEPTABLE", failed=False)]


def test_legacy_stream_maps_session_commands_and_usage() -> None:
    chunk = base64.b64encode(b"collected 3 items\n").decode("ascii")
    normalizer = StreamNormalizer()
    normalizer.consume(
        _jsonl(
            {"model": "gpt-5-codex", "provider": "openai", "sandbox": "workspace-write"},
            {"id": "0", "msg": {"type": "session_configured", "session_id": "sess-1", "model": "gpt-5-codex"}},
            {"id": "1", "msg": {"type": "exec_command_begin", "call_id": "c1", "command": ["pytest", "-q"]}},
            {"id": "1", "msg": {"type": "exec_command_output_delta", "call_id": "c1", "chunk": chunk}},
            {
                "id": "1",
                "msg": {
                    "type": "exec_command_end",
                    "call_id": "c1",
                    "exit_code": 1,
                    "aggregated_output": "1 failed",
                    "duration": {"secs": 2, "nanos": 500000000},
                },
            },
            {
                "id": "2",
                "msg": {
                    "type": "token_count",
                    "info": {"total_token_usage": {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15}},
                },
            },
            {"id": "3", "msg": {"type": "plan_update", "plan": [{"step": "Write tests", "status": "completed"}]}},
            _legacy_message("Done."),
        )
    )

    kinds = [type(event) for event in normalizer.events]
    assert kinds[:2] == [InitEvent, InitEvent]
    assert normalizer.session_id == "sess-1"

    commands: List[CommandEvent] = [event for event in normalizer.events if isinstance(event, CommandEvent)]
    assert [command.phase for command in commands] == [CommandPhase.BEGIN, CommandPhase.UPDATE, CommandPhase.END]
    assert commands[0].args == "pytest -q"
    assert commands[1].output == "collected 3 items\n"
    assert commands[2].exit_code == 1
    assert commands[2].duration_seconds == 2.5

    usage = next(event for event in normalizer.events if isinstance(event, UsageEvent))
    assert usage.total_tokens == 15
    plan = next(event for event in normalizer.events if isinstance(event, PlanUpdateEvent))
    assert plan.items[0].label == "Write tests"
    assert normalizer.final_agent_message == "Done."


def test_legacy_output_chunk_accepts_byte_lists() -> None:
    events = parse_line(
        json.dumps({"id": "1", "msg": {"type": "exec_command_output_delta", "chunk": list(b"ok"), "stream": "stderr"}})
    )

    assert events == [CommandEvent(phase=CommandPhase.UPDATE, stderr="ok")]


def test_modern_file_change_and_todo_items() -> None:
    diff = parse_line(
        json.dumps(
            {
                "type": "item.completed",
                "item": {
                    "type": "file_change",
                    "changes": [{"path": "src/a.py", "kind": "add"}, {"path": "src/b.py", "kind": "update"}],
                },
            }
        )
    )
    todo = parse_line(
        json.dumps(
            {
                "type": "item.updated",
                "item": {"item_type": "todo_list", "items": [{"text": "Ship it", "completed": True}]},
            }
        )
    )

    assert isinstance(diff[0], DiffEvent)
    assert diff[0].files == ("src/a.py", "src/b.py")
    assert [change.change for change in diff[0].changes] == ["added", "updated"]
    assert todo == [PlanUpdateEvent(items=todo[0].items)]
    assert todo[0].items[0].status == "completed"


def test_unknown_frames_keep_their_payload() -> None:
    events = parse_line(json.dumps({"type": "item.completed", "item": {"type": "web_search", "query": "x"}}))
    error = parse_line(json.dumps({"type": "error", "message": "rate limited"}))

    assert isinstance(events[0], UnknownEvent)
    assert events[0].frame_type == "item.web_search"
    assert events[0].payload["query"] == "x"
    assert error[0].error == "rate limited"


def test_event_callback_sees_every_accepted_event() -> None:
    seen: List[object] = []
    normalizer = StreamNormalizer(on_event=seen.append, keep_history=False)

    normalizer.consume(_jsonl({"type": "turn.started"}, _modern_message("hi")))

    assert normalizer.events == []
    assert len(seen) == 2
    assert isinstance(seen[-1], AgentMessageEvent)


def test_reasoning_start_is_not_a_fallback() -> None:
    events = parse_line(json.dumps({"type": "item.started", "item": {"type": "reasoning", "text": "partial"}}))

    assert events == [ReasoningEvent(text="partial", completed=False)]


def test_line_splitter_reassembles_split_multibyte_characters() -> None:
    splitter = LineSplitter()
    encoded = "héllo\r\nwörld".encode("utf-8")

    lines = splitter.feed(encoded[:2]) + splitter.feed(encoded[2:])

    assert lines == ["héllo"]
    assert splitter.pending == "wörld"
    assert splitter.flush() == ["wörld"]
    assert splitter.flush() == []
