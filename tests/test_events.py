import json

import pytest

from agentic_workflow.events import JsonlEventSink, MemoryEventSink, emit_event
from agentic_workflow.models import EventType
from agentic_workflow.state_store import WorkflowStateStore


def test_jsonl_sink_appends_canonical_lines(store: WorkflowStateStore) -> None:
    sink = JsonlEventSink(store)
    first = emit_event(sink, project_id="proj", event_type=EventType.EMIT, summary="Node A started", agent_id="writer")
    emit_event(sink, project_id="proj", event_type=EventType.COMPLETE, summary="Node A completed", confidence=0.9)

    lines = store.read_event_lines("proj")
    assert len(lines) == 2
    payload = json.loads(lines[0])
    assert payload["id"] == first
    assert payload["agent_id"] == "writer"
    assert payload["agent_name"] == "writer"
    assert list(payload) == sorted(payload)

    events = sink.read_events("proj")
    assert [event.summary for event in events] == ["Node A started", "Node A completed"]
    assert events[1].agent_id == "orchestrator"
    assert events[1].confidence == 0.9


def test_read_events_limit_keeps_newest(store: WorkflowStateStore) -> None:
    sink = JsonlEventSink(store)
    for index in range(5):
        emit_event(sink, project_id="proj", event_type=EventType.EMIT, summary=f"event {index}")
    assert [event.summary for event in sink.read_events("proj", limit=2)] == ["event 3", "event 4"]
    assert sink.read_events("proj", limit=0) == []
    assert sink.read_events("other") == []


def test_invalid_event_line_is_reported(store: WorkflowStateStore) -> None:
    store.append_event_line("proj", '{"summary": "half an event"}')
    with pytest.raises(ValueError, match="invalid line 1"):
        JsonlEventSink(store).read_events("proj")


def test_memory_sink_filters_by_type() -> None:
    sink = MemoryEventSink()
    emit_event(sink, project_id="p", event_type=EventType.ERROR, summary="boom", owner_visible=True)
    emit_event(sink, project_id="p", event_type=EventType.EMIT, summary="hello", metadata={"k": "v"})
    assert [event.summary for event in sink.of_type(EventType.ERROR)] == ["boom"]
    assert sink.events[0].owner_visible is True
    assert sink.events[1].metadata == {"k": "v"}


def test_emit_without_sink_or_with_broken_sink_returns_none() -> None:
    class BrokenSink:
        def emit(self, event: object) -> str:
            raise RuntimeError("sink offline")

    assert emit_event(None, project_id="p", event_type=EventType.EMIT, summary="x") is None
    assert emit_event(BrokenSink(), project_id="p", event_type=EventType.EMIT, summary="x") is None
