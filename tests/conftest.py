from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from agentic_workflow.delegates import DelegateContext, DelegateRegistry
from agentic_workflow.graph_loader import load
from agentic_workflow.models import DecisionOption, DecisionRecord, DelegateResult, Graph
from agentic_workflow.scheduler import WorkflowScheduler
from agentic_workflow.settings import RuntimeSettings
from agentic_workflow.state_store import WorkflowStateStore


class RecordingDelegate:
    """Succeeds with ``data`` after failing ``fail_times`` calls (or always, when ``always_fail``)."""

    def __init__(self, data: Any = None, *, fail_times: int = 0, always_fail: bool = False) -> None:
        self.data = data if data is not None else {"content": "ok", "confidence": 0.9, "provenance": "test"}
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.calls: list[DelegateContext] = []
        self.payloads: list[Any] = []

    def execute(
        self,
        payload: Any,
        project_id: str,
        session_id: str | None,
        context: DelegateContext,
    ) -> DelegateResult:
        self.calls.append(context)
        self.payloads.append(payload)
        if self.always_fail or len(self.calls) <= self.fail_times:
            raise RuntimeError(f"{context.node_id} boom #{len(self.calls)}")
        return DelegateResult(success=True, data=self.data, confidence=0.9, provenance="test")


class ApprovalDelegate:
    """Opens a decision and asks for approval; finishes via ``complete_decision``."""

    def __init__(
        self,
        decision_id: str = "d1",
        options: tuple[str, ...] = ("opt1", "opt2"),
        *,
        continuation_error: str | None = None,
    ) -> None:
        self.decision_id = decision_id
        self.options = options
        self.continuation_error = continuation_error
        self.calls = 0
        self.completed: list[str] = []

    def execute(
        self,
        payload: Any,
        project_id: str,
        session_id: str | None,
        context: DelegateContext,
    ) -> DelegateResult:
        self.calls += 1
        record = context.open_decision(
            "Which strategy should we pursue?",
            [
                {"id": option, "label": option.title(), "confidence": 0.7, "provenance": "fixture"}
                for option in self.options
            ],
            decision_id=self.decision_id,
        )
        return DelegateResult(success=True, data={"decisionId": record.id}, confidence=0.8)

    def complete_decision(
        self,
        decision: DecisionRecord,
        option: DecisionOption,
        project_id: str,
        session_id: str | None,
    ) -> DelegateResult:
        self.completed.append(option.id)
        if self.continuation_error is not None:
            raise RuntimeError(self.continuation_error)
        return DelegateResult(success=True, data={"selected": option.id}, confidence=option.confidence)


def make_graph(*nodes: dict[str, Any], name: str = "test_workflow") -> Graph:
    return load({"name": name, "nodes": list(nodes)})


def make_registry(delegates: dict[str, Any]) -> DelegateRegistry:
    registry = DelegateRegistry()
    for delegate_id, delegate in delegates.items():
        registry.register(delegate_id, delegate)
    return registry


@pytest.fixture
def store(tmp_path: Path) -> WorkflowStateStore:
    return WorkflowStateStore(tmp_path / "state_store", lease_timeout_seconds=0.2)


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def build_scheduler(store: WorkflowStateStore, settings: RuntimeSettings, sleeps: list[float]):
    def _build(graph: Graph, delegates: dict[str, Any], **kwargs: Any) -> WorkflowScheduler:
        return WorkflowScheduler(
            graph,
            store,
            make_registry(delegates),
            settings=settings,
            sleep=sleeps.append,
            **kwargs,
        )

    return _build
