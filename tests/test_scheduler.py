from typing import Any

import pytest

from agentic_workflow.decisions import DecisionLedger
from agentic_workflow.errors import (
    DecisionAlreadyResolvedError,
    DecisionNotFoundError,
    GraphStructureError,
    InvalidOptionError,
    StateNotFoundError,
    UnknownDelegateError,
    WorkflowError,
)
from agentic_workflow.events import MemoryEventSink
from agentic_workflow.models import DecisionStatus, EventType, RunStatus
from agentic_workflow.scheduler import WorkflowScheduler
from agentic_workflow.settings import RuntimeSettings
from agentic_workflow.state_store import WorkflowStateStore

from conftest import ApprovalDelegate, RecordingDelegate, make_graph, make_registry


LINEAR = (
    {"id": "A", "agentId": "a"},
    {"id": "B", "agentId": "b", "dependencies": ["A"]},
    {"id": "C", "agentId": "c", "dependencies": ["B"]},
)

APPROVAL = (
    {"id": "A", "agentId": "a"},
    {"id": "B", "agentId": "strategy", "dependencies": ["A"], "requiresApproval": True},
)


def test_linear_chain_completes_in_order(build_scheduler: Any, store: WorkflowStateStore) -> None:
    delegates = {"a": RecordingDelegate(), "b": RecordingDelegate(), "c": RecordingDelegate()}
    scheduler = build_scheduler(make_graph(*LINEAR), delegates)

    snapshot = scheduler.start("proj", {"brand": "acme"}, session_id="s-1")

    assert snapshot.status == RunStatus.COMPLETED
    assert snapshot.completed_nodes == ["A", "B", "C"]
    assert [item["node_id"] for item in snapshot.executed] == ["A", "B", "C"]
    assert all(delegate.payloads == [{"brand": "acme"}] for delegate in delegates.values())
    state = store.require("proj")
    assert state.current_node is None
    assert state.metadata["input"] == {"brand": "acme"}
    assert state.metadata["graph_name"] == "test_workflow"


def test_approval_pause_and_resume(build_scheduler: Any, store: WorkflowStateStore) -> None:
    strategy = ApprovalDelegate()
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": strategy})

    paused = scheduler.start("proj")
    assert paused.status == RunStatus.PAUSED
    assert paused.pending_decisions == ["d1"]
    assert paused.completed_nodes == ["A"]

    resumed = scheduler.approve_decision("proj", "d1", "opt2")
    assert resumed.status == RunStatus.COMPLETED
    assert resumed.completed_nodes == ["A", "B"]
    assert resumed.pending_decisions == []
    assert strategy.completed == ["opt2"]

    record = store.read_decision("proj", "d1")
    assert record.status == DecisionStatus.APPROVED
    assert record.selected_option_id == "opt2"
    assert store.require("proj").metadata["decisions"] == {"d1": "opt2"}


def test_paused_run_is_never_executed_again_by_start(build_scheduler: Any, store: WorkflowStateStore) -> None:
    strategy = ApprovalDelegate()
    first = RecordingDelegate()
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": first, "strategy": strategy})

    scheduler.start("proj")
    state_id = store.require("proj").state_id
    again = scheduler.start("proj")

    assert again.status == RunStatus.PAUSED
    assert again.completed_nodes == ["A"]
    assert again.executed == []
    assert store.require("proj").state_id == state_id
    assert len(first.calls) == 1
    assert strategy.calls == 1


def test_exhausted_retries_fail_the_run(build_scheduler: Any, sleeps: list[float]) -> None:
    delegate = RecordingDelegate(always_fail=True)
    graph = make_graph({"id": "A", "agentId": "a", "retryPolicy": {"maxAttempts": 2, "baseBackoffMs": 100}})
    scheduler = build_scheduler(graph, {"a": delegate})

    snapshot = scheduler.start("proj")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.failed_nodes == ["A"]
    assert len(delegate.calls) == 3
    assert snapshot.executed[0]["attempts"] == 3
    assert sleeps == [0.1, 0.2]


def test_cycle_is_rejected_before_any_execution(store: WorkflowStateStore, settings: RuntimeSettings) -> None:
    graph = make_graph(
        {"id": "A", "agentId": "a", "dependencies": ["B"]},
        {"id": "B", "agentId": "a", "dependencies": ["A"]},
    )
    with pytest.raises(GraphStructureError):
        WorkflowScheduler(graph, store, make_registry({"a": RecordingDelegate()}), settings=settings)
    assert store.get("proj") is None


def test_stuck_branch_leaves_run_failed(build_scheduler: Any) -> None:
    b, c = RecordingDelegate(), RecordingDelegate()
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": RecordingDelegate(always_fail=True), "b": b, "c": c})

    snapshot = scheduler.start("proj")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.failed_nodes == ["A"]
    assert snapshot.completed_nodes == []
    assert b.calls == [] and c.calls == []


def test_failure_does_not_cascade_to_independent_siblings_in_same_batch(build_scheduler: Any) -> None:
    graph = make_graph(
        {"id": "A", "agentId": "bad"},
        {"id": "B", "agentId": "good"},
        {"id": "C", "agentId": "good", "dependencies": ["B"]},
    )
    good = RecordingDelegate()
    scheduler = build_scheduler(graph, {"bad": RecordingDelegate(always_fail=True), "good": good})

    snapshot = scheduler.start("proj")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.failed_nodes == ["A"]
    assert snapshot.completed_nodes == ["B"]
    assert len(good.calls) == 1


def test_failed_run_is_not_revived_by_an_approval_sibling(build_scheduler: Any, store: WorkflowStateStore) -> None:
    graph = make_graph(
        {"id": "A", "agentId": "bad"},
        {"id": "B", "agentId": "strategy", "requiresApproval": True},
        {"id": "C", "agentId": "good", "dependencies": ["B"]},
    )
    strategy, good = ApprovalDelegate(), RecordingDelegate()
    scheduler = build_scheduler(graph, {"bad": RecordingDelegate(always_fail=True), "strategy": strategy, "good": good})

    snapshot = scheduler.start("proj")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.failed_nodes == ["A", "B"]
    assert snapshot.pending_decisions == []
    assert strategy.calls == 1
    assert good.calls == []
    assert store.read_decision("proj", "d1").status == DecisionStatus.REJECTED
    with pytest.raises(DecisionAlreadyResolvedError):
        scheduler.approve_decision("proj", "d1", "opt1")
    assert store.require("proj").status == RunStatus.FAILED
    assert strategy.completed == []


def test_dispatch_fails_a_running_state_with_failed_nodes(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": RecordingDelegate(), "b": RecordingDelegate(), "c": RecordingDelegate()})
    store.create("proj")
    store.update("proj", completed_nodes=["A"], failed_nodes=["B"])

    snapshot = scheduler.resume("proj")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.completed_nodes == ["A"]
    assert snapshot.failed_nodes == ["B"]


def test_start_resumes_running_state_without_resetting(build_scheduler: Any, store: WorkflowStateStore) -> None:
    a = RecordingDelegate()
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": a, "b": RecordingDelegate(), "c": RecordingDelegate()})
    state_id = store.create("proj", metadata={"input": {"stored": True}})
    store.update("proj", completed_nodes=["A"])

    snapshot = scheduler.start("proj", {"ignored": True})

    assert snapshot.status == RunStatus.COMPLETED
    assert snapshot.completed_nodes == ["A", "B", "C"]
    assert a.calls == []
    assert store.require("proj").state_id == state_id


def test_start_after_terminal_run_begins_fresh(build_scheduler: Any, store: WorkflowStateStore) -> None:
    a = RecordingDelegate()
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": a, "b": RecordingDelegate(), "c": RecordingDelegate()})

    scheduler.start("proj")
    first_id = store.require("proj").state_id
    snapshot = scheduler.start("proj")

    assert snapshot.status == RunStatus.COMPLETED
    assert store.require("proj").state_id != first_id
    assert len(a.calls) == 2


def test_restart_after_stop_reuses_decision_id(build_scheduler: Any, store: WorkflowStateStore) -> None:
    strategy = ApprovalDelegate()
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": strategy})
    scheduler.start("proj")
    scheduler.stop("proj")

    restarted = scheduler.start("proj")

    assert restarted.status == RunStatus.PAUSED
    assert restarted.pending_decisions == ["d1"]
    assert strategy.calls == 2
    assert store.read_decision("proj", "d1").status == DecisionStatus.PENDING
    assert scheduler.approve_decision("proj", "d1", "opt1").status == RunStatus.COMPLETED


def test_restart_after_completion_reuses_decision_id(build_scheduler: Any) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    scheduler.start("proj")
    scheduler.approve_decision("proj", "d1", "opt2")

    restarted = scheduler.start("proj")

    assert restarted.status == RunStatus.PAUSED
    assert restarted.pending_decisions == ["d1"]


def test_projects_use_the_same_decision_id_independently(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})

    first = scheduler.start("p1")
    second = scheduler.start("p2")

    assert first.pending_decisions == ["d1"]
    assert second.pending_decisions == ["d1"]
    assert scheduler.approve_decision("p1", "d1", "opt1").status == RunStatus.COMPLETED
    assert store.require("p2").status == RunStatus.PAUSED
    assert store.read_decision("p2", "d1").status == DecisionStatus.PENDING


def test_concurrent_start_joins_active_run(build_scheduler: Any, store: WorkflowStateStore) -> None:
    a = RecordingDelegate()
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": a, "b": RecordingDelegate(), "c": RecordingDelegate()})
    store.create("proj")

    with store.run_lease("proj", blocking=False):
        snapshot = scheduler.start("proj")

    assert snapshot.joined is True
    assert snapshot.status == RunStatus.RUNNING
    assert a.calls == []


def test_invalid_option_leaves_state_unchanged(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    scheduler.start("proj")
    before = store.require("proj")

    with pytest.raises(InvalidOptionError) as excinfo:
        scheduler.approve_decision("proj", "d1", "opt9")

    assert excinfo.value.valid_options == ["opt1", "opt2"]
    after = store.require("proj")
    assert after.model_dump() == before.model_dump()
    assert store.read_decision("proj", "d1").status == DecisionStatus.PENDING


def test_decision_cannot_be_approved_twice(build_scheduler: Any) -> None:
    strategy = ApprovalDelegate()
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": strategy})
    scheduler.start("proj")
    scheduler.approve_decision("proj", "d1", "opt1")

    with pytest.raises(DecisionAlreadyResolvedError):
        scheduler.approve_decision("proj", "d1", "opt2")
    assert strategy.completed == ["opt1"]


def test_interrupted_approval_is_finished_on_retry(build_scheduler: Any, store: WorkflowStateStore) -> None:
    strategy = ApprovalDelegate()
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": strategy})
    scheduler.start("proj")
    DecisionLedger(store).approve("d1", "opt1", project_id="proj")
    assert store.require("proj").pending_decisions == ["d1"]

    with pytest.raises(DecisionAlreadyResolvedError):
        scheduler.approve_decision("proj", "d1", "opt2")
    resumed = scheduler.approve_decision("proj", "d1", "opt1")

    assert resumed.status == RunStatus.COMPLETED
    assert resumed.completed_nodes == ["A", "B"]
    assert resumed.pending_decisions == []
    assert strategy.calls == 1
    assert strategy.completed == ["opt1"]
    assert store.require("proj").metadata["decisions"] == {"d1": "opt1"}
    with pytest.raises(DecisionAlreadyResolvedError):
        scheduler.approve_decision("proj", "d1", "opt1")


def test_interrupted_approval_cannot_be_rejected(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    scheduler.start("proj")
    DecisionLedger(store).approve("d1", "opt2", project_id="proj")

    with pytest.raises(DecisionAlreadyResolvedError):
        scheduler.reject_decision("proj", "d1")
    assert store.require("proj").status == RunStatus.PAUSED


def test_approving_unknown_or_foreign_decision_fails(build_scheduler: Any) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    scheduler.start("proj")
    other = build_scheduler(make_graph({"id": "A", "agentId": "a"}), {"a": RecordingDelegate()})
    other.start("other")

    with pytest.raises(DecisionNotFoundError):
        scheduler.approve_decision("proj", "nope", "opt1")
    with pytest.raises(DecisionNotFoundError):
        scheduler.approve_decision("other", "d1", "opt1")


def test_approve_without_state_raises(build_scheduler: Any) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    with pytest.raises(StateNotFoundError):
        scheduler.approve_decision("ghost", "d1", "opt1")


def test_failed_continuation_fails_node_and_run(build_scheduler: Any, store: WorkflowStateStore) -> None:
    strategy = ApprovalDelegate(continuation_error="calendar service down")
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": strategy})
    scheduler.start("proj")

    snapshot = scheduler.approve_decision("proj", "d1", "opt1")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.failed_nodes == ["B"]
    assert snapshot.completed_nodes == ["A"]
    assert "calendar service down" in snapshot.message
    assert store.read_decision("proj", "d1").status == DecisionStatus.APPROVED


def test_reject_decision_fails_node_and_run(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    scheduler.start("proj")

    snapshot = scheduler.reject_decision("proj", "d1", reason="off brand")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.failed_nodes == ["B"]
    assert snapshot.pending_decisions == []
    record = store.read_decision("proj", "d1")
    assert record.status == DecisionStatus.REJECTED
    assert record.resolution_note == "off brand"
    with pytest.raises(DecisionAlreadyResolvedError):
        scheduler.approve_decision("proj", "d1", "opt1")


def test_stop_is_idempotent_and_clears_pending_decisions(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    scheduler.start("proj")

    first = scheduler.stop("proj")
    second = scheduler.stop("proj")

    for snapshot in (first, second):
        assert snapshot.status == RunStatus.FAILED
        assert snapshot.current_node is None
        assert snapshot.pending_decisions == []
    state = store.require("proj")
    assert state.cancelled is True
    assert state.failed_nodes == []
    assert store.read_decision("proj", "d1").status == DecisionStatus.REJECTED
    with pytest.raises(DecisionAlreadyResolvedError):
        scheduler.approve_decision("proj", "d1", "opt1")


def test_stop_without_state_raises(build_scheduler: Any) -> None:
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": RecordingDelegate(), "b": RecordingDelegate(), "c": RecordingDelegate()})
    with pytest.raises(StateNotFoundError):
        scheduler.stop("ghost")


def test_stop_during_a_node_prevents_further_scheduling(build_scheduler: Any, store: WorkflowStateStore) -> None:
    holder: dict[str, WorkflowScheduler] = {}

    class StoppingDelegate(RecordingDelegate):
        def execute(self, payload: Any, project_id: str, session_id: str | None, context: Any) -> Any:
            holder["scheduler"].stop(project_id)
            return super().execute(payload, project_id, session_id, context)

    b = RecordingDelegate()
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": StoppingDelegate(), "b": b, "c": RecordingDelegate()})
    holder["scheduler"] = scheduler

    snapshot = scheduler.start("proj")

    assert snapshot.status == RunStatus.FAILED
    assert snapshot.completed_nodes == ["A"]
    assert snapshot.failed_nodes == []
    assert b.calls == []
    assert store.require("proj").cancelled is True


def test_unknown_delegate_is_reported_before_any_state_is_created(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*LINEAR), {"a": RecordingDelegate()})
    with pytest.raises(UnknownDelegateError):
        scheduler.start("proj")
    assert store.get("proj") is None


def test_reset_discards_state(build_scheduler: Any, store: WorkflowStateStore) -> None:
    scheduler = build_scheduler(make_graph(*APPROVAL), {"a": RecordingDelegate(), "strategy": ApprovalDelegate()})
    scheduler.start("proj")

    scheduler.reset("proj")

    assert scheduler.get_state("proj") is None
    with pytest.raises(DecisionNotFoundError):
        store.read_decision("proj", "d1")
    scheduler.reset("proj")
    assert scheduler.start("proj").pending_decisions == ["d1"]


def test_run_emits_workflow_lifecycle_events(build_scheduler: Any) -> None:
    sink = MemoryEventSink()
    scheduler = build_scheduler(
        make_graph(*LINEAR),
        {"a": RecordingDelegate(), "b": RecordingDelegate(), "c": RecordingDelegate()},
        sink=sink,
    )

    scheduler.start("proj", session_id="sess")

    assert sink.events[0].summary == "Workflow test_workflow started"
    assert sink.events[-1].summary == "Workflow test_workflow completed"
    assert sink.events[-1].event_type == EventType.COMPLETE
    assert all(event.project_id == "proj" for event in sink.events)


def test_tiny_recursion_limit_surfaces_as_workflow_error(store: WorkflowStateStore, sleeps: list[float]) -> None:
    nodes = [{"id": f"N{i}", "agentId": "x", "dependencies": [f"N{i - 1}"] if i else []} for i in range(12)]
    scheduler = WorkflowScheduler(
        make_graph(*nodes),
        store,
        make_registry({"x": RecordingDelegate()}),
        settings=RuntimeSettings(recursion_limit=10),
        sleep=sleeps.append,
    )
    with pytest.raises(WorkflowError, match="recursion limit"):
        scheduler.start("proj")
