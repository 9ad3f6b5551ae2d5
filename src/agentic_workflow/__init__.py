from importlib.metadata import PackageNotFoundError, version

from .checkers import CheckerSet, ConsistencyChecker, LLMReviewChecker, QualityChecker, build_checkers
from .decisions import DecisionLedger
from .delegates import DelegateContext, DelegateRegistry, FunctionDelegate, load_registry
from .errors import (
    ApprovalContractError,
    DecisionAlreadyResolvedError,
    DecisionNotFoundError,
    DelegateExecutionError,
    GraphParseError,
    GraphStructureError,
    InvalidOptionError,
    RunInProgressError,
    StateAlreadyExistsError,
    StateNotFoundError,
    UnknownDelegateError,
    WorkflowError,
)
from .events import JsonlEventSink, MemoryEventSink
from .executor import NodeExecutor
from .graph_loader import eligible_nodes, load, load_validated, validate
from .models import (
    CheckVerdict,
    DecisionOption,
    DecisionRecord,
    DecisionStatus,
    DelegateResult,
    ExecutionState,
    Graph,
    GraphNode,
    NodeOutcome,
    NodeOutcomeStatus,
    ObservabilityEvent,
    RetryPolicy,
    RunSnapshot,
    RunStatus,
    ValidationReport,
)
from .scheduler import WorkflowScheduler
from .settings import RuntimeSettings
from .state_store import WorkflowStateStore


def get_version() -> str:
    try:
        return version(__name__)
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "ApprovalContractError",
    "CheckVerdict",
    "CheckerSet",
    "ConsistencyChecker",
    "DecisionAlreadyResolvedError",
    "DecisionLedger",
    "DecisionNotFoundError",
    "DecisionOption",
    "DecisionRecord",
    "DecisionStatus",
    "DelegateContext",
    "DelegateExecutionError",
    "DelegateRegistry",
    "DelegateResult",
    "ExecutionState",
    "FunctionDelegate",
    "Graph",
    "GraphNode",
    "GraphParseError",
    "GraphStructureError",
    "InvalidOptionError",
    "JsonlEventSink",
    "LLMReviewChecker",
    "MemoryEventSink",
    "NodeExecutor",
    "NodeOutcome",
    "NodeOutcomeStatus",
    "ObservabilityEvent",
    "QualityChecker",
    "RetryPolicy",
    "RunInProgressError",
    "RunSnapshot",
    "RunStatus",
    "RuntimeSettings",
    "StateAlreadyExistsError",
    "StateNotFoundError",
    "UnknownDelegateError",
    "ValidationReport",
    "WorkflowError",
    "WorkflowScheduler",
    "WorkflowStateStore",
    "build_checkers",
    "eligible_nodes",
    "get_version",
    "load",
    "load_registry",
    "load_validated",
    "validate",
]
