from __future__ import annotations


class WorkflowError(Exception):
    """Base class for every error raised by the orchestration core."""


class GraphParseError(WorkflowError, ValueError):
    """Raised when a graph description cannot be parsed into a Graph."""


class GraphStructureError(WorkflowError, ValueError):
    """Raised when a parsed graph has cycles, dangling or duplicate ids.

    The complete defect list is available on ``errors``.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid workflow graph: " + "; ".join(self.errors))


class DelegateExecutionError(WorkflowError, RuntimeError):
    """A delegate raised, reported failure, or returned a malformed payload."""

    def __init__(self, node_id: str, message: str, *, attempt: int | None = None) -> None:
        self.node_id = node_id
        self.attempt = attempt
        super().__init__(message)


class ApprovalContractError(DelegateExecutionError):
    """An approval-required node produced no usable decision. Never retried."""


class UnknownDelegateError(WorkflowError, LookupError):
    """A node references a delegate id that is not registered."""


class StateNotFoundError(WorkflowError, LookupError):
    """No execution state exists for the requested project."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"Workflow state not found for project: {project_id}")


class StateAlreadyExistsError(WorkflowError):
    """An active execution state already exists for the project."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"Active workflow state already exists for project: {project_id}")


class RunInProgressError(WorkflowError):
    """Another run loop currently holds the project's lease."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"A run loop is already active for project: {project_id}")


class DecisionNotFoundError(WorkflowError, LookupError):
    """The decision id is unknown, or belongs to another project."""

    def __init__(self, decision_id: str) -> None:
        self.decision_id = decision_id
        super().__init__(f"Decision not found: {decision_id}")


class InvalidOptionError(WorkflowError, ValueError):
    """The selected option id is not one of the decision's options."""

    def __init__(self, decision_id: str, option_id: str, valid: list[str]) -> None:
        self.decision_id = decision_id
        self.option_id = option_id
        self.valid_options = list(valid)
        super().__init__(
            f"Invalid option '{option_id}' for decision {decision_id}; expected one of: {', '.join(valid)}"
        )


class DecisionAlreadyResolvedError(WorkflowError):
    """The decision was already approved or rejected, or is no longer pending."""

    def __init__(self, decision_id: str, status: str) -> None:
        self.decision_id = decision_id
        self.status = status
        super().__init__(f"Decision {decision_id} is already resolved (status={status})")
