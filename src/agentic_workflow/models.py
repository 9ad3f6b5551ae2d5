from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from .canonical import fingerprint


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RunStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in {RunStatus.RUNNING, RunStatus.PAUSED}

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.COMPLETED, RunStatus.FAILED}


class DecisionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NodeOutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"


class EventType(str, Enum):
    EMIT = "emit"
    DECISION = "decision"
    ERROR = "error"
    COMPLETE = "complete"


# ---------------------------------------------------------------------------
# Graph definition
# ---------------------------------------------------------------------------

class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff.

    ``max_attempts`` counts retries after the first call, so a node with
    ``max_attempts=n`` calls its delegate at most ``n + 1`` times.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_attempts: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("max_attempts", "maxAttempts", "maxRetries", "max_retries"),
    )
    base_backoff_ms: int = Field(
        default=1000,
        ge=0,
        validation_alias=AliasChoices("base_backoff_ms", "baseBackoffMs", "backoffMs", "backoff_ms"),
    )

    def backoff_ms(self, attempt: int) -> int:
        """Delay before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got: {attempt}")
        return self.base_backoff_ms * 2 ** (attempt - 1)


class GraphNode(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = ""
    delegate_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("delegate_id", "delegateId", "agentId", "agent_id"),
    )
    dependencies: tuple[str, ...] = ()
    requires_approval: bool = Field(
        default=False,
        validation_alias=AliasChoices("requires_approval", "requiresApproval"),
    )
    retry_policy: RetryPolicy | None = Field(
        default=None,
        validation_alias=AliasChoices("retry_policy", "retryPolicy"),
    )
    run_quality_check: bool = Field(
        default=True,
        validation_alias=AliasChoices("run_quality_check", "runQualityCheck", "runQA", "run_qa"),
    )
    run_consistency_check: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "run_consistency_check", "runConsistencyCheck", "runCodeReview", "run_code_review"
        ),
    )

    @model_validator(mode="before")
    @classmethod
    def _default_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not str(data.get("name") or "").strip():
            return {**data, "name": data.get("id", "")}
        return data

    @property
    def effective_retry_policy(self) -> RetryPolicy:
        return self.retry_policy if self.retry_policy is not None else RetryPolicy()


class Graph(BaseModel):
    """Immutable, ordered workflow definition."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    nodes: tuple[GraphNode, ...]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def node(self, node_id: str) -> GraphNode:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"Unknown node id: {node_id}")

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.model_dump(mode="json"))


class ValidationReport(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------

class ExecutionState(BaseModel):
    """The single mutable record of a run, keyed by project id.

    Invariants are checked on every construction, so the store refuses to
    persist a record that breaks them.
    """

    state_id: str = Field(default_factory=lambda: f"WS-{uuid.uuid4().hex[:12]}")
    project_id: str = Field(min_length=1)
    current_node: str | None = None
    completed_nodes: list[str] = Field(default_factory=list)
    failed_nodes: list[str] = Field(default_factory=list)
    pending_decisions: list[str] = Field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    cancelled: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_invariants(self) -> "ExecutionState":
        for label, values in (
            ("completed_nodes", self.completed_nodes),
            ("failed_nodes", self.failed_nodes),
            ("pending_decisions", self.pending_decisions),
        ):
            if len(set(values)) != len(values):
                raise ValueError(f"{label} contains duplicates: {values}")
        overlap = set(self.completed_nodes) & set(self.failed_nodes)
        if overlap:
            raise ValueError(f"nodes cannot be both completed and failed: {sorted(overlap)}")
        if (self.status == RunStatus.PAUSED) != bool(self.pending_decisions):
            raise ValueError(
                f"status={self.status.value} is inconsistent with pending_decisions={self.pending_decisions}"
            )
        if self.status == RunStatus.FAILED and not self.failed_nodes and not self.cancelled:
            raise ValueError("status=failed requires at least one failed node or a cancelled run")
        return self

    @property
    def settled_nodes(self) -> set[str]:
        return set(self.completed_nodes) | set(self.failed_nodes)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class DecisionOption(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    label: str
    description: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    rationale: str = Field(default="", validation_alias=AliasChoices("rationale", "provenance"))
    payload: dict[str, Any] = Field(default_factory=dict)


class DecisionRecord(BaseModel):
    id: str = Field(default_factory=lambda: f"DEC-{uuid.uuid4().hex[:12]}", min_length=1)
    project_id: str = Field(min_length=1)
    node_id: str | None = None
    agent_id: str | None = None
    question: str = Field(min_length=1)
    options: list[DecisionOption] = Field(min_length=1)
    status: DecisionStatus = DecisionStatus.PENDING
    selected_option_id: str | None = None
    resolution_note: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None

    @model_validator(mode="after")
    def _check_options(self) -> "DecisionRecord":
        ids = [option.id for option in self.options]
        if len(set(ids)) != len(ids):
            raise ValueError(f"decision option ids must be unique: {ids}")
        if self.status == DecisionStatus.APPROVED and self.selected_option_id not in ids:
            raise ValueError("approved decisions must reference one of their options")
        return self

    @property
    def option_ids(self) -> list[str]:
        return [option.id for option in self.options]

    def option(self, option_id: str) -> DecisionOption | None:
        return next((option for option in self.options if option.id == option_id), None)


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------

class DelegateResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    provenance: str = ""
    error: str | None = None
    artifacts: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("next_steps", "nextSteps"),
    )


class ApprovalRequest(BaseModel):
    """Minimum output shape of an approval-required node."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    decision_id: str = Field(min_length=1, validation_alias=AliasChoices("decision_id", "decisionId"))


class CheckVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    passed: bool = Field(validation_alias=AliasChoices("passed", "pass"))
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class ObservabilityEvent(BaseModel):
    id: str = Field(default_factory=lambda: f"EVT-{uuid.uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=_utcnow)
    agent_id: str
    agent_name: str = ""
    event_type: EventType
    summary: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    project_id: str
    session_id: str | None = None
    owner_visible: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Transient results
# ---------------------------------------------------------------------------

@dataclass
class NodeOutcome:
    node_id: str
    status: NodeOutcomeStatus
    output: Any = None
    error: str | None = None
    attempts: int = 0
    decision_id: str | None = None
    advisories: list[str] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "decision_id": self.decision_id,
            "advisories": list(self.advisories),
        }


class RunSnapshot(BaseModel):
    project_id: str
    status: RunStatus
    current_node: str | None = None
    completed_nodes: list[str] = Field(default_factory=list)
    failed_nodes: list[str] = Field(default_factory=list)
    pending_decisions: list[str] = Field(default_factory=list)
    executed: list[dict[str, Any]] = Field(default_factory=list)
    joined: bool = False
    message: str = ""

    @classmethod
    def from_state(
        cls,
        state: ExecutionState,
        *,
        executed: list[dict[str, Any]] | None = None,
        joined: bool = False,
        message: str = "",
    ) -> "RunSnapshot":
        return cls(
            project_id=state.project_id,
            status=state.status,
            current_node=state.current_node,
            completed_nodes=list(state.completed_nodes),
            failed_nodes=list(state.failed_nodes),
            pending_decisions=list(state.pending_decisions),
            executed=list(executed or []),
            joined=joined,
            message=message,
        )
