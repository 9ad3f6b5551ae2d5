"""Observability sinks for orchestration events.

Events are fire-and-forget: a sink that fails is logged and ignored, never
allowed to change the outcome of a node or a run.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import ValidationError

from .canonical import to_canonical_json
from .models import EventType, ObservabilityEvent
from .state_store import WorkflowStateStore

logger = logging.getLogger(__name__)

ORCHESTRATOR_AGENT_ID = "orchestrator"


class EventSink(Protocol):
    def emit(self, event: ObservabilityEvent) -> str:
        """Record *event* and return its id."""
        ...


class JsonlEventSink:
    """Append-only, one canonical JSON object per line, per project."""

    def __init__(self, store: WorkflowStateStore) -> None:
        self.store = store

    def emit(self, event: ObservabilityEvent) -> str:
        self.store.append_event_line(event.project_id, to_canonical_json(event))
        return event.id

    def read_events(self, project_id: str, *, limit: int | None = None) -> list[ObservabilityEvent]:
        """Return logged events oldest first; ``limit`` keeps only the newest N.

        Raises:
            ValueError: If a line in the log is not a valid event.
        """
        lines = self.store.read_event_lines(project_id)
        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []
        events: list[ObservabilityEvent] = []
        for number, line in enumerate(lines, start=1):
            try:
                events.append(ObservabilityEvent.model_validate_json(line))
            except ValidationError as exc:
                raise ValueError(f"event log for {project_id} has an invalid line {number}: {exc}") from exc
        return events


class MemoryEventSink:
    def __init__(self) -> None:
        self.events: list[ObservabilityEvent] = []

    def emit(self, event: ObservabilityEvent) -> str:
        self.events.append(event)
        return event.id

    def of_type(self, event_type: EventType) -> list[ObservabilityEvent]:
        return [event for event in self.events if event.event_type == event_type]


def emit_event(
    sink: EventSink | None,
    *,
    project_id: str,
    event_type: EventType,
    summary: str,
    agent_id: str = ORCHESTRATOR_AGENT_ID,
    agent_name: str = "",
    session_id: str | None = None,
    confidence: float | None = None,
    owner_visible: bool = False,
    metadata: dict[str, Any] | None = None,
) -> str | None:
    """Build an event and hand it to *sink*; returns the event id or ``None``."""
    if sink is None:
        return None
    event = ObservabilityEvent(
        agent_id=agent_id,
        agent_name=agent_name or agent_id,
        event_type=event_type,
        summary=summary,
        confidence=confidence,
        project_id=project_id,
        session_id=session_id,
        owner_visible=owner_visible,
        metadata=dict(metadata or {}),
    )
    try:
        return sink.emit(event)
    except Exception as exc:  # noqa: BLE001 - sinks must never break orchestration.
        logger.warning("Observability sink failed for %s event on %s: %s", event_type.value, project_id, exc)
        return None
