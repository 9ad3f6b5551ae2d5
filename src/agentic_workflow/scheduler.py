from __future__ import annotations

import logging
import time
from contextlib import ExitStack
from typing import Any, TypedDict

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, START, StateGraph

from .checkers import CheckerSet
from .decisions import DecisionLedger
from .delegates import DecisionContinuation, DelegateRegistry
from .errors import (
    DecisionAlreadyResolvedError,
    DelegateExecutionError,
    GraphStructureError,
    InvalidOptionError,
    RunInProgressError,
    StateNotFoundError,
    WorkflowError,
)
from .events import EventSink, emit_event
from .executor import NodeExecutor, SleepFn, fail_run, validate_delegate_result
from .graph_loader import eligible_nodes, validate
from .models import (
    DecisionOption,
    DecisionRecord,
    DecisionStatus,
    EventType,
    ExecutionState,
    Graph,
    NodeOutcomeStatus,
    RunSnapshot,
    RunStatus,
)
from .settings import RuntimeSettings
from .state_store import WorkflowStateStore

logger = logging.getLogger(__name__)

_ORCHESTRATOR_NAME = "WorkflowScheduler"


class RunLoopState(TypedDict, total=False):
    project_id: str
    session_id: str | None
    input: Any
    batch: list[str]
    executed: list[dict[str, Any]]
    halted: bool


class WorkflowScheduler:
    """Drives a validated Graph for one or more projects.

    The run loop is a LangGraph ``StateGraph`` dispatch cycle; every
    superstep re-reads the durable ExecutionState, which stays the single
    source of truth. One loop per project is enforced by the store's run
    lease.
    """

    def __init__(
        self,
        graph: Graph,
        store: WorkflowStateStore,
        registry: DelegateRegistry,
        *,
        checkers: CheckerSet | None = None,
        sink: EventSink | None = None,
        settings: RuntimeSettings | None = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        report = validate(graph)
        if not report.valid:
            raise GraphStructureError(report.errors)
        self.graph = graph
        self.store = store
        self.registry = registry
        self.sink = sink
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.ledger = DecisionLedger(store)
        self.executor = NodeExecutor(
            store,
            registry,
            self.ledger,
            checkers=checkers,
            sink=sink,
            sleep=sleep,
        )
        self.loop = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RunLoopState)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("execute_batch", self._execute_batch_node)

        graph.add_edge(START, "dispatch")
        graph.add_conditional_edges(
            "dispatch",
            self._dispatch_route,
            {
                "execute_batch": "execute_batch",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "execute_batch",
            self._batch_route,
            {
                "dispatch": "dispatch",
                "end": END,
            },
        )
        return graph

    # ------------------------------------------------------------------
    # Run loop nodes
    # ------------------------------------------------------------------

    def _dispatch_node(self, state: RunLoopState) -> dict[str, Any]:
        project_id = state["project_id"]
        current = self.store.require(project_id)
        if current.status != RunStatus.RUNNING or current.cancelled:
            return {"batch": [], "halted": True}

        eligible = eligible_nodes(self.graph, current.completed_nodes, current.failed_nodes)
        if eligible:
            return {"batch": [node.id for node in eligible], "halted": False}

        def settle(record: ExecutionState) -> None:
            if record.status != RunStatus.RUNNING:
                return
            record.status = RunStatus.FAILED if record.failed_nodes or record.cancelled else RunStatus.COMPLETED
            record.current_node = None

        final = self.store.mutate(project_id, settle)
        if final.status == RunStatus.COMPLETED:
            logger.info("Workflow %s completed for project %s", self.graph.name, project_id)
            self._emit(project_id, state.get("session_id"), EventType.COMPLETE, f"Workflow {self.graph.name} completed")
        elif final.status == RunStatus.FAILED:
            logger.warning("Workflow %s failed for project %s: nodes %s", self.graph.name, project_id, final.failed_nodes)
        return {"batch": [], "halted": True}

    def _dispatch_route(self, state: RunLoopState) -> str:
        if state.get("batch"):
            return "execute_batch"
        return "end"

    def _execute_batch_node(self, state: RunLoopState) -> dict[str, Any]:
        project_id = state["project_id"]
        executed = list(state.get("executed", []))
        for node_id in state.get("batch", []):
            current = self.store.require(project_id)
            if current.cancelled:
                logger.info("Run for %s was stopped; not starting node %s", project_id, node_id)
                return {"executed": executed, "batch": [], "halted": True}
            outcome = self.executor.execute(
                self.graph.node(node_id),
                project_id,
                state.get("input"),
                state.get("session_id"),
            )
            executed.append(outcome.summary())
            if outcome.status == NodeOutcomeStatus.AWAITING_APPROVAL:
                logger.info("Workflow paused for approval of %s on project %s", outcome.decision_id, project_id)
                return {"executed": executed, "batch": [], "halted": True}
        return {"executed": executed, "batch": [], "halted": False}

    def _batch_route(self, state: RunLoopState) -> str:
        if state.get("halted"):
            return "end"
        return "dispatch"

    def _run_loop(self, project_id: str, session_id: str | None = None) -> RunSnapshot:
        state = self.store.require(project_id)
        session = session_id if session_id is not None else state.metadata.get("session_id")
        initial: RunLoopState = {
            "project_id": project_id,
            "session_id": session,
            "input": state.metadata.get("input"),
            "batch": [],
            "executed": [],
            "halted": False,
        }
        try:
            result = self.loop.invoke(initial, config={"recursion_limit": self.settings.recursion_limit})
        except GraphRecursionError as exc:
            raise WorkflowError(
                f"run loop for {project_id} exceeded recursion limit {self.settings.recursion_limit}"
            ) from exc
        final = self.store.require(project_id)
        return RunSnapshot.from_state(final, executed=result.get("executed", []))

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def verify_delegates(self) -> None:
        """Raise ``UnknownDelegateError`` if any node's delegate is unregistered."""
        for node in self.graph.nodes:
            self.registry.get(node.delegate_id)

    def start(self, project_id: str, input: Any = None, session_id: str | None = None) -> RunSnapshot:
        """Start, restart or resume the run for *project_id*.

        A running or paused state is resumed as-is; a completed or failed
        state is discarded and a fresh one created. If another loop already
        holds the project's lease, no second loop is started and the current
        snapshot comes back with ``joined=True``.

        Args:
            project_id: Project to run.
            input: Payload handed to every node; stored with a fresh run and
                ignored when an active run is resumed.
            session_id: Correlation id for emitted events.

        Returns:
            The run snapshot once the loop halts (completed, failed or paused).

        Raises:
            UnknownDelegateError: If a node's delegate is not registered.
        """
        self.verify_delegates()
        with ExitStack() as stack:
            try:
                stack.enter_context(self.store.run_lease(project_id, blocking=False))
            except RunInProgressError:
                return self._joined_snapshot(project_id)

            existing = self.store.get(project_id)
            if existing is not None and existing.status.is_active:
                logger.info("Resuming %s run for project %s", existing.status.value, project_id)
                self._warn_on_graph_change(existing)
            else:
                if existing is not None:
                    logger.info("Discarding %s run for project %s", existing.status.value, project_id)
                    self.store.delete(project_id)
                self.store.create(project_id, metadata=self._run_metadata(input, session_id))
                self._emit(
                    project_id,
                    session_id,
                    EventType.EMIT,
                    f"Workflow {self.graph.name} started",
                    metadata={"graph_fingerprint": self.graph.fingerprint},
                )
            return self._run_loop(project_id, session_id)

    def resume(self, project_id: str, session_id: str | None = None) -> RunSnapshot:
        """Re-enter the run loop for an existing state.

        Raises:
            StateNotFoundError: If the project has no state.
            RunInProgressError: If another loop holds the lease.
        """
        self.verify_delegates()
        with self.store.run_lease(project_id, blocking=False):
            self._warn_on_graph_change(self.store.require(project_id))
            return self._run_loop(project_id, session_id)

    def approve_decision(
        self,
        project_id: str,
        decision_id: str,
        selected_option_id: str,
        session_id: str | None = None,
    ) -> RunSnapshot:
        """Approve a pending decision, complete its node and continue the run.

        An approval that was recorded on the decision but never reached the
        execution state (the process died in between) is finished here when
        called again with the same option.

        Raises:
            StateNotFoundError: If the project has no state.
            DecisionNotFoundError: If the decision is unknown for this project.
            DecisionAlreadyResolvedError: If it is no longer pending.
            InvalidOptionError: If the option is not one of the decision's.
        """
        self.verify_delegates()
        with self.store.run_lease(project_id, blocking=True):
            state = self.store.require(project_id)
            record = self._pending_record(state, decision_id, interrupted_ok=True)
            if record.option(selected_option_id) is None:
                raise InvalidOptionError(decision_id, selected_option_id, record.option_ids)

            if record.status == DecisionStatus.APPROVED:
                if record.selected_option_id != selected_option_id:
                    raise DecisionAlreadyResolvedError(decision_id, record.status.value)
                logger.warning("Finishing interrupted approval of decision %s on project %s", decision_id, project_id)
            else:
                record = self.ledger.approve(decision_id, selected_option_id, project_id=project_id)
                self._emit(
                    project_id,
                    session_id,
                    EventType.DECISION,
                    f"Decision approved: {decision_id} - option: {selected_option_id}",
                    owner_visible=True,
                    metadata={"decision_id": decision_id, "selected_option": selected_option_id, "node_id": record.node_id},
                )
            option = record.option(selected_option_id)
            node_id = record.node_id

            if node_id is not None and option is not None:
                error = self._continue_node(record, node_id, option, project_id, session_id)
                if error is not None:
                    logger.error("Continuation of node %s failed: %s", node_id, error)
                    fail_run(self.store, self.ledger, project_id, node_id=node_id, reason=f"node {node_id} failed")
                    self._emit(
                        project_id,
                        session_id,
                        EventType.ERROR,
                        f"Node {node_id} failed after approval: {error}",
                        owner_visible=True,
                        metadata={"node_id": node_id, "decision_id": decision_id},
                    )
                    return RunSnapshot.from_state(self.store.require(project_id), message=error)

            # Releasing the decision and completing its node is one write.
            def resolve(current: ExecutionState) -> None:
                if decision_id in current.pending_decisions:
                    current.pending_decisions.remove(decision_id)
                current.metadata.setdefault("decisions", {})[decision_id] = selected_option_id
                if node_id is not None and node_id not in current.settled_nodes:
                    current.completed_nodes.append(node_id)
                if node_id is not None and current.current_node == node_id:
                    current.current_node = None
                if not current.pending_decisions and current.status == RunStatus.PAUSED:
                    current.status = RunStatus.RUNNING

            self.store.mutate(project_id, resolve)
            return self._run_loop(project_id, session_id)

    def reject_decision(
        self,
        project_id: str,
        decision_id: str,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> RunSnapshot:
        """Reject a pending decision; its node fails and so does the run."""
        with self.store.run_lease(project_id, blocking=True):
            state = self.store.require(project_id)
            record = self._pending_record(state, decision_id)
            record = self.ledger.reject(decision_id, project_id=project_id, reason=reason)
            final = fail_run(
                self.store,
                self.ledger,
                project_id,
                node_id=record.node_id,
                reason=f"decision {decision_id} was rejected",
            )
            self._emit(
                project_id,
                session_id,
                EventType.DECISION,
                f"Decision rejected: {decision_id}",
                owner_visible=True,
                metadata={"decision_id": decision_id, "node_id": record.node_id, "reason": reason},
            )
            return RunSnapshot.from_state(final, message=f"decision {decision_id} rejected")

    def get_state(self, project_id: str) -> ExecutionState | None:
        return self.store.get(project_id)

    def stop(self, project_id: str) -> RunSnapshot:
        """Cancel the run: status ``failed``, no current node, no pending decisions.

        Cooperative: an in-flight delegate call is allowed to finish, but no
        further node or retry is started. Idempotent.

        Raises:
            StateNotFoundError: If the project has no state.
        """
        if self.store.get(project_id) is None:
            raise StateNotFoundError(project_id)
        state = fail_run(self.store, self.ledger, project_id, cancel=True, reason="run stopped")
        logger.info("Stopped run for project %s", project_id)
        self._emit(project_id, state.metadata.get("session_id"), EventType.EMIT, "Workflow stopped", owner_visible=True)
        return RunSnapshot.from_state(state, message="stopped")

    def reset(self, project_id: str) -> None:
        """Delete the project's state and decisions outright. The event log is kept."""
        if self.store.get(project_id) is None:
            return
        with self.store.run_lease(project_id, blocking=True):
            self.store.delete(project_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _joined_snapshot(self, project_id: str) -> RunSnapshot:
        state = self.store.get(project_id)
        if state is None:
            raise RunInProgressError(project_id)
        logger.info("Run loop already active for project %s; joining", project_id)
        return RunSnapshot.from_state(state, joined=True, message="joined active run")

    def _pending_record(self, state: ExecutionState, decision_id: str, *, interrupted_ok: bool = False) -> DecisionRecord:
        """The decision, if the run still waits on it.

        With *interrupted_ok*, an approved record that the state still lists
        as pending is returned too.
        """
        record = self.ledger.get(decision_id, project_id=state.project_id)
        allowed = {DecisionStatus.PENDING, DecisionStatus.APPROVED} if interrupted_ok else {DecisionStatus.PENDING}
        if record.status not in allowed or decision_id not in state.pending_decisions:
            raise DecisionAlreadyResolvedError(decision_id, record.status.value)
        return record

    def _continue_node(
        self,
        record: DecisionRecord,
        node_id: str,
        option: DecisionOption,
        project_id: str,
        session_id: str | None,
    ) -> str | None:
        """Run the originating delegate's continuation; return an error message or ``None``."""
        try:
            node = self.graph.node(node_id)
        except KeyError:
            logger.warning("Decision %s references node %s which is not in graph %s", record.id, node_id, self.graph.name)
            return None
        entry = self.registry.get(node.delegate_id)
        if not isinstance(entry.delegate, DecisionContinuation):
            return None
        try:
            raw = entry.delegate.complete_decision(record, option, project_id, session_id)
        except Exception as exc:  # noqa: BLE001 - a crashing continuation fails the node.
            return f"continuation of delegate {node.delegate_id} raised: {exc}"
        try:
            validate_delegate_result(entry, node_id, raw)
        except DelegateExecutionError as exc:
            return str(exc)
        return None

    def _run_metadata(self, input: Any, session_id: str | None) -> dict[str, Any]:
        return {
            "input": input,
            "session_id": session_id,
            "graph_name": self.graph.name,
            "graph_fingerprint": self.graph.fingerprint,
            "decisions": {},
        }

    def _warn_on_graph_change(self, state: ExecutionState) -> None:
        recorded = state.metadata.get("graph_fingerprint")
        if recorded and recorded != self.graph.fingerprint:
            logger.warning(
                "Graph %s changed since the run for %s started (fingerprint %s -> %s)",
                self.graph.name,
                state.project_id,
                recorded[:12],
                self.graph.fingerprint[:12],
            )

    def _emit(
        self,
        project_id: str,
        session_id: str | None,
        event_type: EventType,
        summary: str,
        **kwargs: Any,
    ) -> None:
        emit_event(
            self.sink,
            project_id=project_id,
            session_id=session_id,
            event_type=event_type,
            summary=summary,
            agent_name=_ORCHESTRATOR_NAME,
            **kwargs,
        )
