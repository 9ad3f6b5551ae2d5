"""Parse and validate declarative workflow graphs.

A graph description is YAML (or JSON) shaped like::

    name: brand_workflow
    description: Brand onboarding
    nodes:
      - id: knowledge
        agentId: knowledge_agent
      - id: strategy
        agentId: strategy_agent
        dependencies: [knowledge]
        requiresApproval: true
        retryPolicy: {maxRetries: 2, backoffMs: 500}

Both the camelCase keys above and snake_case field names are accepted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .errors import GraphParseError, GraphStructureError
from .models import Graph, GraphNode, RetryPolicy, ValidationReport

logger = logging.getLogger(__name__)

_GRAPH_SUFFIXES = frozenset({".yaml", ".yml", ".json"})
_RETRY_KEYS = ("retry_policy", "retryPolicy")

GraphSource = str | Path | Mapping[str, Any]


def _read_source(source: GraphSource) -> Any:
    if isinstance(source, Mapping):
        return dict(source)

    if isinstance(source, Path):
        if not source.is_file():
            raise GraphParseError(f"Graph file not found: {source}")
        text = source.read_text(encoding="utf-8")
    elif "\n" not in source and Path(source).suffix.lower() in _GRAPH_SUFFIXES:
        path = Path(source)
        if not path.is_file():
            raise GraphParseError(f"Graph file not found: {path}")
        text = path.read_text(encoding="utf-8")
    else:
        text = source

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise GraphParseError(f"Failed to parse workflow YAML: {exc}") from exc


def load(source: GraphSource, *, default_retry: RetryPolicy | None = None) -> Graph:
    """Parse a graph description into an immutable Graph.

    Structural checks are left to ``validate``.

    Args:
        source: A mapping, a ``Path``, a ``.yaml``/``.yml``/``.json`` path
            string, or the YAML/JSON document text itself. Keys may be
            snake_case or camelCase.
        default_retry: Policy for nodes that declare none; the
            ``RetryPolicy`` defaults when omitted.

    Returns:
        The parsed graph, nodes in declaration order.

    Raises:
        GraphParseError: On unreadable input or a malformed document.
    """
    data = _read_source(source)
    if not isinstance(data, Mapping):
        raise GraphParseError(f"Workflow definition must be a mapping, got {type(data).__name__}")
    raw_nodes = data.get("nodes")
    if not isinstance(raw_nodes, list):
        raise GraphParseError("Workflow definition requires a 'nodes' list")

    fallback = default_retry if default_retry is not None else RetryPolicy()
    nodes: list[GraphNode] = []
    for index, raw in enumerate(raw_nodes):
        if not isinstance(raw, Mapping):
            raise GraphParseError(f"nodes[{index}] must be a mapping, got {type(raw).__name__}")
        node_data = dict(raw)
        if not any(node_data.get(key) is not None for key in _RETRY_KEYS):
            for key in _RETRY_KEYS:
                node_data.pop(key, None)
            node_data["retry_policy"] = fallback
        if node_data.get("dependencies") is None:
            node_data["dependencies"] = ()
        try:
            nodes.append(GraphNode.model_validate(node_data))
        except ValidationError as exc:
            raise GraphParseError(f"nodes[{index}] is invalid: {exc}") from exc

    try:
        return Graph(
            name=data.get("name") or "",
            description=data.get("description") or "",
            nodes=tuple(nodes),
            metadata=dict(data.get("metadata") or {}),
        )
    except ValidationError as exc:
        raise GraphParseError(f"Workflow definition is invalid: {exc}") from exc


def _find_cycles(graph: Graph) -> list[list[str]]:
    """Depth-first search with an explicit recursion stack.

    Returns each distinct cycle once, as the path that closes on itself
    (``["a", "b", "a"]``). Dangling dependency ids are skipped here.
    """
    edges: dict[str, list[str]] = {}
    for node in graph.nodes:
        edges.setdefault(node.id, list(node.dependencies))

    visited: set[str] = set()
    cycles: list[list[str]] = []
    seen_cycles: set[frozenset[str]] = set()

    for root in edges:
        if root in visited:
            continue
        visited.add(root)
        path = [root]
        on_stack = {root}
        stack: list[tuple[str, Iterable[str]]] = [(root, iter(edges[root]))]
        while stack:
            current, children = stack[-1]
            descended = False
            for dep in children:
                if dep not in edges:
                    continue
                if dep in on_stack:
                    cycle = path[path.index(dep):] + [dep]
                    key = frozenset(cycle)
                    if key not in seen_cycles:
                        seen_cycles.add(key)
                        cycles.append(cycle)
                    continue
                if dep in visited:
                    continue
                visited.add(dep)
                on_stack.add(dep)
                path.append(dep)
                stack.append((dep, iter(edges[dep])))
                descended = True
                break
            if not descended:
                stack.pop()
                on_stack.discard(current)
                path.pop()
    return cycles


def validate(graph: Graph) -> ValidationReport:
    """Run every structural check and accumulate all defects.

    Returns:
        A report listing duplicate ids, one entry per distinct cycle and
        every dependency on a missing node. ``valid`` is true only when
        the list is empty.
    """
    errors: list[str] = []

    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            errors.append(f"Duplicate node id: {node.id}")
        seen.add(node.id)

    for cycle in _find_cycles(graph):
        errors.append(f"Circular dependency detected involving node: {cycle[0]} ({' -> '.join(cycle)})")

    for node in graph.nodes:
        for dep in node.dependencies:
            if dep not in seen:
                errors.append(f"Node {node.id} depends on non-existent node: {dep}")

    return ValidationReport(valid=not errors, errors=errors)


def load_validated(source: GraphSource, *, default_retry: RetryPolicy | None = None) -> Graph:
    """Load a graph and refuse to hand it out unless it is structurally valid.

    Raises:
        GraphParseError: On malformed input.
        GraphStructureError: With the full defect list when validation fails.
    """
    graph = load(source, default_retry=default_retry)
    report = validate(graph)
    if not report.valid:
        raise GraphStructureError(report.errors)
    logger.info("Loaded workflow graph %s with %d nodes", graph.name, len(graph.nodes))
    return graph


def eligible_nodes(graph: Graph, completed: Iterable[str], failed: Iterable[str] = ()) -> list[GraphNode]:
    """Nodes ready to run next.

    Args:
        graph: The validated graph.
        completed: Ids of completed nodes.
        failed: Ids of failed nodes. A dependency on one is never satisfied.

    Returns:
        Nodes in neither set whose dependencies are all completed, in
        declaration order.
    """
    done = set(completed)
    settled = done | set(failed)
    return [
        node
        for node in graph.nodes
        if node.id not in settled and all(dep in done for dep in node.dependencies)
    ]


def dependency_map(graph: Graph) -> dict[str, list[str]]:
    """Returns node id -> dependency ids, as printed by the CLI ``validate`` command."""
    return {node.id: list(node.dependencies) for node in graph.nodes}
