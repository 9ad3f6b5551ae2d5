from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import ValidationError

from .checkers import Checker, CheckerSet
from .decisions import DecisionLedger
from .delegates import DelegateContext, DelegateRegistry, RegisteredDelegate
from .errors import (
    ApprovalContractError,
    DecisionAlreadyResolvedError,
    DecisionNotFoundError,
    DelegateExecutionError,
)
from .events import EventSink, emit_event
from .models import (
    ApprovalRequest,
    DecisionStatus,
    DelegateResult,
    EventType,
    ExecutionState,
    GraphNode,
    NodeOutcome,
    NodeOutcomeStatus,
    RunStatus,
)
from .state_store import WorkflowStateStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], None]


# ---------------------------------------------------------------------------
# Shared state transitions
# ---------------------------------------------------------------------------

def mark_node_completed(store: WorkflowStateStore, project_id: str, node_id: str) -> ExecutionState:
    """Append *node_id* to ``completed_nodes`` and clear it as current node.

    The run status is left alone, so a node that finishes after ``stop``
    is recorded without reviving the run.
    """

    def apply(state: ExecutionState) -> None:
        if node_id not in state.completed_nodes and node_id not in state.failed_nodes:
            state.completed_nodes.append(node_id)
        if state.current_node == node_id:
            state.current_node = None

    return store.mutate(project_id, apply)


def fail_run(
    store: WorkflowStateStore,
    ledger: DecisionLedger,
    project_id: str,
    *,
    node_id: str | None = None,
    cancel: bool = False,
    reason: str = "run failed",
) -> ExecutionState:
    """Force the run to ``failed``, optionally recording *node_id* as failed.

    Pending decisions are dropped from the state and their records rejected,
    so no approval can revive a failed run.

    Args:
        node_id: Node to record as failed unless it already settled.
        cancel: Also set ``cancelled``, as ``stop`` does.
        reason: Resolution note stored on the rejected decisions.

    Returns:
        The failed state.
    """
    dropped: list[str] = []

    def apply(state: ExecutionState) -> None:
        if node_id is not None and node_id not in state.settled_nodes:
            state.failed_nodes.append(node_id)
        if cancel:
            state.cancelled = True
        dropped.extend(state.pending_decisions)
        state.pending_decisions = []
        state.current_node = None
        state.status = RunStatus.FAILED

    state = store.mutate(project_id, apply)
    reject_decisions(ledger, project_id, dropped, reason=reason)
    return state


def reject_decisions(ledger: DecisionLedger, project_id: str, decision_ids: Iterable[str], *, reason: str) -> None:
    for decision_id in decision_ids:
        try:
            ledger.reject(decision_id, project_id=project_id, reason=reason)
        except (DecisionAlreadyResolvedError, DecisionNotFoundError) as exc:
            logger.info("Skipping rejection of decision %s: %s", decision_id, exc)


# ---------------------------------------------------------------------------
# NodeExecutor
# ---------------------------------------------------------------------------

class NodeExecutor:
    """Runs one graph node: delegate call with retry, advisory checks, approval hand-off."""

    def __init__(
        self,
        store: WorkflowStateStore,
        registry: DelegateRegistry,
        ledger: DecisionLedger,
        *,
        checkers: CheckerSet | None = None,
        sink: EventSink | None = None,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.store = store
        self.registry = registry
        self.ledger = ledger
        self.checkers = checkers if checkers is not None else CheckerSet()
        self.sink = sink
        self.sleep = sleep

    def execute(
        self,
        node: GraphNode,
        project_id: str,
        payload: Any = None,
        session_id: str | None = None,
    ) -> NodeOutcome:
        """Execute *node* for *project_id* and persist the result.

        Returns:
            ``completed``, ``failed`` or ``awaiting_approval``. Delegate failures
            are returned as a ``failed`` outcome after being persisted, never
            raised.

        Raises:
            UnknownDelegateError: If the node's delegate is not registered.
            StateNotFoundError: If the project has no execution state.
        """
        entry = self.registry.get(node.delegate_id)

        def start(state: ExecutionState) -> None:
            if not state.cancelled:
                state.current_node = node.id

        state = self.store.mutate(project_id, start)
        if state.cancelled:
            logger.info("Skipping node %s: run for %s was cancelled", node.id, project_id)
            return NodeOutcome(node_id=node.id, status=NodeOutcomeStatus.FAILED, error="run cancelled")

        self._emit(project_id, session_id, EventType.EMIT, f"Node {node.id} started", agent_id=node.delegate_id)
        logger.info("Executing node %s with delegate %s for project %s", node.id, node.delegate_id, project_id)

        policy = node.effective_retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._invoke(entry, node, project_id, payload, session_id, attempt)
                break
            except DelegateExecutionError as exc:
                if attempt > policy.max_attempts:
                    logger.error("Node %s failed after %d attempt(s): %s", node.id, attempt, exc)
                    return self._fail(node, project_id, session_id, str(exc), attempts=attempt)
                if self._cancelled(project_id):
                    logger.info("Not retrying node %s: run for %s was cancelled", node.id, project_id)
                    return self._fail(node, project_id, session_id, f"{exc} (run cancelled)", attempts=attempt)
                delay_ms = policy.backoff_ms(attempt)
                logger.warning(
                    "Node %s attempt %d/%d failed: %s; retrying in %d ms",
                    node.id,
                    attempt,
                    policy.max_attempts + 1,
                    exc,
                    delay_ms,
                )
                self.sleep(delay_ms / 1000.0)

        advisories: list[str] = []
        if node.run_quality_check:
            advisories.extend(self._run_check(self.checkers.quality, node, project_id, session_id, result.data))
        if node.run_consistency_check:
            advisories.extend(self._run_check(self.checkers.consistency, node, project_id, session_id, result.data))

        if node.requires_approval:
            return self._await_approval(node, project_id, session_id, result, attempt, advisories)

        mark_node_completed(self.store, project_id, node.id)
        self._emit(
            project_id,
            session_id,
            EventType.COMPLETE,
            f"Node {node.id} completed",
            agent_id=node.delegate_id,
            confidence=result.confidence,
            metadata={"attempts": attempt, "advisories": advisories},
        )
        return NodeOutcome(
            node_id=node.id,
            status=NodeOutcomeStatus.COMPLETED,
            output=result.data,
            attempts=attempt,
            advisories=advisories,
        )

    # ------------------------------------------------------------------
    # Delegate invocation
    # ------------------------------------------------------------------

    def _invoke(
        self,
        entry: RegisteredDelegate,
        node: GraphNode,
        project_id: str,
        payload: Any,
        session_id: str | None,
        attempt: int,
    ) -> DelegateResult:
        context = DelegateContext(
            node_id=node.id,
            delegate_id=node.delegate_id,
            project_id=project_id,
            session_id=session_id,
            attempt=attempt,
            metadata={"node_name": node.name},
            ledger=self.ledger,
        )
        try:
            raw = entry.delegate.execute(payload, project_id, session_id, context)
        except Exception as exc:  # noqa: BLE001 - any delegate crash counts as a failed attempt.
            raise DelegateExecutionError(node.id, f"delegate {node.delegate_id} raised: {exc}", attempt=attempt) from exc
        return validate_delegate_result(entry, node.id, raw, attempt=attempt)

    def _cancelled(self, project_id: str) -> bool:
        state = self.store.get(project_id)
        return state is None or state.cancelled

    # ------------------------------------------------------------------
    # Side-checks
    # ------------------------------------------------------------------

    def _run_check(
        self,
        checker: Checker | None,
        node: GraphNode,
        project_id: str,
        session_id: str | None,
        artifact: Any,
    ) -> list[str]:
        if checker is None:
            return []
        try:
            verdict = checker.execute(artifact)
        except Exception as exc:  # noqa: BLE001 - checks are advisory only.
            logger.warning("%s check crashed on node %s: %s", checker.name, node.id, exc)
            self._emit(
                project_id,
                session_id,
                EventType.ERROR,
                f"{checker.name} check crashed on node {node.id}",
                agent_id=checker.name,
                metadata={"node_id": node.id, "error": str(exc)},
            )
            return [f"{checker.name}: check crashed: {exc}"]

        self._emit(
            project_id,
            session_id,
            EventType.EMIT,
            f"{checker.name} check {'passed' if verdict.passed else 'failed'} on node {node.id}: "
            f"{len(verdict.issues)} issues found",
            agent_id=checker.name,
            confidence=verdict.confidence,
            metadata={"node_id": node.id, "issues": verdict.issues, "recommendations": verdict.recommendations},
        )
        if verdict.passed:
            return []
        logger.warning("%s check failed for node %s: %s", checker.name, node.id, "; ".join(verdict.issues))
        return [f"{checker.name}: {issue}" for issue in verdict.issues] or [f"{checker.name}: check failed"]

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def _approval_request(self, node: GraphNode, project_id: str, data: Any) -> ApprovalRequest:
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="json")
        try:
            request = ApprovalRequest.model_validate(data)
        except ValidationError as exc:
            raise ApprovalContractError(node.id, f"approval node {node.id} returned no decision id") from exc
        try:
            record = self.ledger.get(request.decision_id, project_id=project_id)
        except DecisionNotFoundError as exc:
            raise ApprovalContractError(
                node.id, f"approval node {node.id} referenced unknown decision {request.decision_id}"
            ) from exc
        if record.status != DecisionStatus.PENDING:
            raise ApprovalContractError(
                node.id, f"approval node {node.id} referenced decision {record.id} with status {record.status.value}"
            )
        return request

    def _await_approval(
        self,
        node: GraphNode,
        project_id: str,
        session_id: str | None,
        result: DelegateResult,
        attempts: int,
        advisories: list[str],
    ) -> NodeOutcome:
        try:
            request = self._approval_request(node, project_id, result.data)
        except ApprovalContractError as exc:
            logger.error("%s", exc)
            return self._fail(node, project_id, session_id, str(exc), attempts=attempts, advisories=advisories)

        decision_id = request.decision_id
        self.ledger.bind_node(decision_id, node.id, node.delegate_id, project_id=project_id)

        def pause(state: ExecutionState) -> None:
            # Only a running run may pause; a sibling's failure or a stop wins.
            if state.cancelled or state.status != RunStatus.RUNNING:
                return
            if decision_id not in state.pending_decisions:
                state.pending_decisions.append(decision_id)
            state.status = RunStatus.PAUSED

        state = self.store.mutate(project_id, pause)
        if decision_id not in state.pending_decisions:
            if state.cancelled:
                error = "run cancelled while awaiting approval"
            else:
                error = f"run is {state.status.value}; approval of decision {decision_id} withdrawn"
            reject_decisions(self.ledger, project_id, [decision_id], reason=error)
            return self._fail(node, project_id, session_id, error, attempts=attempts, advisories=advisories)

        logger.info("Node %s awaiting approval of decision %s", node.id, decision_id)
        self._emit(
            project_id,
            session_id,
            EventType.DECISION,
            f"Decision {decision_id} awaiting approval for node {node.id}",
            agent_id=node.delegate_id,
            confidence=result.confidence,
            owner_visible=True,
            metadata={"node_id": node.id, "decision_id": decision_id},
        )
        return NodeOutcome(
            node_id=node.id,
            status=NodeOutcomeStatus.AWAITING_APPROVAL,
            output=result.data,
            attempts=attempts,
            decision_id=decision_id,
            advisories=advisories,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail(
        self,
        node: GraphNode,
        project_id: str,
        session_id: str | None,
        error: str,
        *,
        attempts: int,
        advisories: list[str] | None = None,
    ) -> NodeOutcome:
        fail_run(self.store, self.ledger, project_id, node_id=node.id, reason=f"node {node.id} failed")
        self._emit(
            project_id,
            session_id,
            EventType.ERROR,
            f"Node {node.id} failed: {error}",
            agent_id=node.delegate_id,
            owner_visible=True,
            metadata={"node_id": node.id, "attempts": attempts},
        )
        return NodeOutcome(
            node_id=node.id,
            status=NodeOutcomeStatus.FAILED,
            error=error,
            attempts=attempts,
            advisories=list(advisories or []),
        )

    def _emit(
        self,
        project_id: str,
        session_id: str | None,
        event_type: EventType,
        summary: str,
        **kwargs: Any,
    ) -> None:
        emit_event(self.sink, project_id=project_id, session_id=session_id, event_type=event_type, summary=summary, **kwargs)


def validate_delegate_result(
    entry: RegisteredDelegate,
    node_id: str,
    raw: Any,
    *,
    attempt: int | None = None,
) -> DelegateResult:
    """Coerce a delegate's return value and check it against the registered schema.

    Raises:
        DelegateExecutionError: On a malformed result, ``success=False`` or a
            schema mismatch.
    """
    if isinstance(raw, DelegateResult):
        result = raw
    else:
        try:
            result = DelegateResult.model_validate(raw)
        except ValidationError as exc:
            raise DelegateExecutionError(
                node_id, f"delegate {entry.delegate_id} returned a malformed result: {exc}", attempt=attempt
            ) from exc
    if not result.success:
        raise DelegateExecutionError(
            node_id, result.error or f"delegate {entry.delegate_id} reported failure", attempt=attempt
        )
    try:
        data = entry.validate_output(result.data)
    except ValueError as exc:
        raise DelegateExecutionError(node_id, str(exc), attempt=attempt) from exc
    return result.model_copy(update={"data": data})
