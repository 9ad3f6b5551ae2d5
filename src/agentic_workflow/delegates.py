from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from .errors import UnknownDelegateError
from .models import DecisionOption, DecisionRecord, DelegateResult

if TYPE_CHECKING:
    from .decisions import DecisionLedger

logger = logging.getLogger(__name__)


@dataclass
class DelegateContext:
    """Per-call context handed to a delegate alongside its payload."""

    node_id: str
    delegate_id: str
    project_id: str
    session_id: str | None = None
    attempt: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
    ledger: DecisionLedger | None = None

    def open_decision(
        self,
        question: str,
        options: Iterable[DecisionOption | dict[str, Any]],
        *,
        decision_id: str | None = None,
    ) -> DecisionRecord:
        """Persist a pending decision owned by this node and project.

        Args:
            question: What the human is asked.
            options: Choices offered, as ``DecisionOption`` or mappings.
            decision_id: Stable id to use; it only has to be unique within
                the project's current run.

        Raises:
            RuntimeError: If the context was built without a decision ledger.
            ValueError: If the project already has a decision with this id.
        """
        if self.ledger is None:
            raise RuntimeError(f"node {self.node_id} has no decision ledger to open decisions with")
        return self.ledger.open(
            project_id=self.project_id,
            node_id=self.node_id,
            agent_id=self.delegate_id,
            question=question,
            options=options,
            decision_id=decision_id,
        )


class Delegate(Protocol):
    def execute(
        self,
        payload: Any,
        project_id: str,
        session_id: str | None,
        context: DelegateContext,
    ) -> DelegateResult: ...


@runtime_checkable
class DecisionContinuation(Protocol):
    """Optional delegate hook that finishes a node once its decision is approved."""

    def complete_decision(
        self,
        decision: DecisionRecord,
        option: DecisionOption,
        project_id: str,
        session_id: str | None,
    ) -> DelegateResult: ...


DelegateFn = Callable[[Any, DelegateContext], DelegateResult | dict[str, Any]]


class FunctionDelegate:
    """Adapt a plain ``fn(payload, context)`` into a Delegate.

    Dict returns are validated as ``DelegateResult``.
    """

    def __init__(self, fn: DelegateFn) -> None:
        self.fn = fn

    def execute(
        self,
        payload: Any,
        project_id: str,
        session_id: str | None,
        context: DelegateContext,
    ) -> DelegateResult:
        result = self.fn(payload, context)
        if isinstance(result, DelegateResult):
            return result
        return DelegateResult.model_validate(result)


@dataclass(frozen=True)
class RegisteredDelegate:
    delegate_id: str
    delegate: Delegate
    output_schema: type[BaseModel] | None = None

    def validate_output(self, data: Any) -> Any:
        """Check ``data`` against the registered output schema, if any.

        Returns the data as a JSON-ready dict when a schema is set.

        Raises:
            ValueError: If the data does not match the schema.
        """
        if self.output_schema is None:
            return data
        try:
            if isinstance(data, BaseModel):
                data = data.model_dump(mode="json")
            return self.output_schema.model_validate(data).model_dump(mode="json")
        except ValidationError as exc:
            raise ValueError(
                f"output of delegate {self.delegate_id} does not match {self.output_schema.__name__}: {exc}"
            ) from exc


class DelegateRegistry:
    """Maps delegate ids used in graph nodes to delegate instances."""

    def __init__(self) -> None:
        self._entries: dict[str, RegisteredDelegate] = {}

    def register(
        self,
        delegate_id: str,
        delegate: Delegate,
        *,
        output_schema: type[BaseModel] | None = None,
    ) -> None:
        """Register *delegate* under *delegate_id*.

        Raises:
            ValueError: If the id is blank or already registered.
        """
        if not delegate_id or not delegate_id.strip():
            raise ValueError("delegate_id must be a non-empty string")
        if delegate_id in self._entries:
            raise ValueError(f"delegate already registered: {delegate_id}")
        self._entries[delegate_id] = RegisteredDelegate(delegate_id, delegate, output_schema)
        logger.debug("Registered delegate %s", delegate_id)

    def get(self, delegate_id: str) -> RegisteredDelegate:
        try:
            return self._entries[delegate_id]
        except KeyError as exc:
            raise UnknownDelegateError(f"No delegate registered for id: {delegate_id}") from exc

    def __contains__(self, delegate_id: object) -> bool:
        return delegate_id in self._entries

    def ids(self) -> list[str]:
        return sorted(self._entries)


def load_registry(target: str) -> DelegateRegistry:
    """Import ``module:factory`` and call the factory to build a registry.

    Raises:
        ValueError: If *target* is malformed or the factory returns something else.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"registry target must look like 'package.module:factory', got: {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    registry = factory() if callable(factory) else factory
    if not isinstance(registry, DelegateRegistry):
        raise ValueError(f"{target} did not produce a DelegateRegistry (got {type(registry).__name__})")
    return registry
