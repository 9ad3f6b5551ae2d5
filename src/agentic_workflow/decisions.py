from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from .errors import DecisionAlreadyResolvedError, InvalidOptionError
from .models import DecisionOption, DecisionRecord, DecisionStatus
from .state_store import WorkflowStateStore

logger = logging.getLogger(__name__)


class DecisionLedger:
    """Lifecycle of human decisions: pending -> approved | rejected.

    Resolution happens under the decision record's file lock, so of two
    racing approvals exactly one succeeds; the other sees a resolved record
    and raises ``DecisionAlreadyResolvedError``.
    """

    def __init__(self, store: WorkflowStateStore) -> None:
        self.store = store

    def open(
        self,
        *,
        project_id: str,
        question: str,
        options: Iterable[DecisionOption | dict[str, Any]],
        node_id: str | None = None,
        agent_id: str | None = None,
        decision_id: str | None = None,
    ) -> DecisionRecord:
        """Record a new pending decision.

        Args:
            project_id: Owning project; decision ids are unique per project.
            question: What the human is asked.
            options: ``DecisionOption`` instances or mappings validated into them.
            node_id: Node awaiting the answer, when already known.
            agent_id: Delegate that raised the question.
            decision_id: Caller-chosen id; a ``DEC-`` id is generated otherwise.

        Returns:
            The stored record.

        Raises:
            ValueError: If the project already has a decision with this id.
            pydantic.ValidationError: If an option mapping is malformed.
        """
        fields: dict[str, Any] = {
            "project_id": project_id,
            "node_id": node_id,
            "agent_id": agent_id,
            "question": question,
            "options": [
                option if isinstance(option, DecisionOption) else DecisionOption.model_validate(option)
                for option in options
            ],
        }
        if decision_id is not None:
            fields["id"] = decision_id
        record = DecisionRecord(**fields)
        self.store.write_decision(record)
        logger.info("Opened decision %s for project %s (%d options)", record.id, project_id, len(record.options))
        return record

    def get(self, decision_id: str, *, project_id: str) -> DecisionRecord:
        """Raises DecisionNotFoundError when *project_id* has no such decision."""
        return self.store.read_decision(project_id, decision_id)

    def pending(self, project_id: str) -> list[DecisionRecord]:
        return [
            record
            for record in self.store.list_decisions(project_id)
            if record.status == DecisionStatus.PENDING
        ]

    def bind_node(
        self,
        decision_id: str,
        node_id: str,
        agent_id: str | None = None,
        *,
        project_id: str,
    ) -> DecisionRecord:
        """Attach the node awaiting a decision.

        Args:
            decision_id: Decision to update.
            node_id: Node whose completion waits on the decision.
            agent_id: Recorded only if the decision has no agent yet.
            project_id: Owning project.

        Returns:
            The updated record.

        Raises:
            DecisionNotFoundError: If *project_id* has no such decision.
        """

        def apply(record: DecisionRecord) -> None:
            record.node_id = node_id
            if agent_id is not None and record.agent_id is None:
                record.agent_id = agent_id

        return self.store.mutate_decision(project_id, decision_id, apply)

    def approve(
        self,
        decision_id: str,
        option_id: str,
        *,
        project_id: str,
        note: str | None = None,
    ) -> DecisionRecord:
        """Mark a pending decision approved with *option_id*.

        Raises:
            DecisionNotFoundError: If *project_id* has no such decision.
            DecisionAlreadyResolvedError: If the decision is not pending.
            InvalidOptionError: If *option_id* is not one of its options.
        """

        def apply(record: DecisionRecord) -> None:
            _check_resolvable(record)
            if record.option(option_id) is None:
                raise InvalidOptionError(decision_id, option_id, record.option_ids)
            record.status = DecisionStatus.APPROVED
            record.selected_option_id = option_id
            record.resolution_note = note
            record.resolved_at = datetime.now(UTC)

        record = self.store.mutate_decision(project_id, decision_id, apply)
        logger.info("Decision %s approved with option %s", decision_id, option_id)
        return record

    def reject(self, decision_id: str, *, project_id: str, reason: str | None = None) -> DecisionRecord:
        """Mark a pending decision rejected.

        Raises:
            DecisionNotFoundError: If *project_id* has no such decision.
            DecisionAlreadyResolvedError: If the decision is not pending.
        """

        def apply(record: DecisionRecord) -> None:
            _check_resolvable(record)
            record.status = DecisionStatus.REJECTED
            record.resolution_note = reason
            record.resolved_at = datetime.now(UTC)

        record = self.store.mutate_decision(project_id, decision_id, apply)
        logger.info("Decision %s rejected%s", decision_id, f": {reason}" if reason else "")
        return record


def _check_resolvable(record: DecisionRecord) -> None:
    if record.status != DecisionStatus.PENDING:
        raise DecisionAlreadyResolvedError(record.id, record.status.value)
