"""Workflow Graph Model

Declarative workflow definitions and their pre-run validation.

Key Components:
- WorkflowDefinition / Node / Connection: immutable per-run graph snapshot
- validate_workflow: collects every graph and schema violation
- detect_cycles: DFS cycle detection
- topological_sort: Kahn's algorithm execution order

Validation never short-circuits: each violation becomes its own
ValidationError entry with a field path, so an editor can surface all
problems at once.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..nodes.registry import create_node, get_node_definition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Node:
    """A single workflow step.

    Attributes:
        id: Unique node identifier within the graph
        type: Node type (key into the executor registry)
        data: Type-specific configuration
        label: Display label
    """

    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    label: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Node":
        return cls(
            id=str(raw.get("id") or ""),
            type=str(raw.get("type") or ""),
            data=dict(raw.get("data") or raw.get("config") or {}),
            label=str(raw.get("label") or (raw.get("data") or {}).get("label") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": self.type, "data": self.data, "label": self.label}


@dataclass(frozen=True)
class Connection:
    """A directed edge from one node's output to another node's input."""

    id: str
    source: str
    target: str
    source_port: Optional[str] = None
    target_port: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], index: int = 0) -> "Connection":
        source = str(raw.get("source") or "")
        target = str(raw.get("target") or "")
        return cls(
            id=str(raw.get("id") or f"{source}->{target}#{index}"),
            source=source,
            target=target,
            source_port=raw.get("sourcePort") or raw.get("sourceHandle"),
            target_port=raw.get("targetPort") or raw.get("targetHandle"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourcePort": self.source_port,
            "targetPort": self.target_port,
        }


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable-per-run workflow snapshot.

    Attributes:
        id: Workflow identifier
        name: Workflow name
        nodes: Node list
        connections: Connection list
        settings: Free-form workflow settings
    """

    id: str
    name: str
    nodes: List[Node] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "WorkflowDefinition":
        """Build a definition from editor JSON (``connections`` or ``edges``)."""
        raw_connections = raw.get("connections")
        if raw_connections is None:
            raw_connections = raw.get("edges") or []
        return cls(
            id=str(raw.get("id") or ""),
            name=str(raw.get("name") or ""),
            nodes=[Node.from_dict(n) for n in raw.get("nodes") or []],
            connections=[Connection.from_dict(c, i) for i, c in enumerate(raw_connections)],
            settings=dict(raw.get("settings") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "connections": [c.to_dict() for c in self.connections],
            "settings": self.settings,
        }

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> List[Connection]:
        """Incoming connections in declaration order."""
        return [c for c in self.connections if c.target == node_id]

    def outgoing(self, node_id: str) -> List[Connection]:
        return [c for c in self.connections if c.source == node_id]


class ValidationError:
    """Workflow validation error.

    Attributes:
        code: Error code
        message: Error message
        field: Path of the offending field (e.g. "nodes[2].data.url")
        severity: Error severity (error or warning)
        node_ids: List of affected node IDs
        context: Additional error context
    """

    def __init__(
        self,
        code: str,
        message: str,
        field: str = "",
        severity: str = "error",
        node_ids: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.field = field
        self.severity = severity
        self.node_ids = node_ids or []
        self.context = context or {}

    def __repr__(self) -> str:
        return f"ValidationError({self.code}, {self.field!r}, {self.message!r})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "field": self.field,
            "severity": self.severity,
            "node_ids": self.node_ids,
            "context": self.context,
        }


class ValidationResult:
    """Workflow validation result.

    Attributes:
        valid: Whether workflow is valid
        errors: List of validation errors
        warnings: List of validation warnings
    """

    def __init__(self, valid: bool, errors: List[ValidationError], warnings: List[ValidationError]):
        self.valid = valid
        self.errors = errors
        self.warnings = warnings

    @property
    def is_valid(self) -> bool:
        return self.valid

    def codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def validate_workflow(workflow: WorkflowDefinition) -> ValidationResult:
    """Validate a workflow definition before a run may start.

    Checks, each producing its own error entry:
    - Node ids present and unique, node types registered
    - Connection endpoints reference existing nodes
    - Incoming/outgoing counts within maxInputs/maxOutputs
    - Connected categories compatible in both directions
    - Graph is acyclic
    - Node data satisfies its type's configuration schema

    Args:
        workflow: Workflow definition to validate

    Returns:
        ValidationResult containing validation status and errors/warnings
    """
    errors: List[ValidationError] = []
    warnings: List[ValidationError] = []

    # 1. Node ids and types
    seen_ids: Set[str] = set()
    for i, node in enumerate(workflow.nodes):
        if not node.id:
            errors.append(ValidationError(
                code="MISSING_NODE_ID",
                message=f"Node at index {i} has no id",
                field=f"nodes[{i}].id",
            ))
        elif node.id in seen_ids:
            errors.append(ValidationError(
                code="DUPLICATE_NODE_ID",
                message=f"Duplicate node id '{node.id}'",
                field=f"nodes[{i}].id",
                node_ids=[node.id],
            ))
        seen_ids.add(node.id)

        if get_node_definition(node.type) is None:
            errors.append(ValidationError(
                code="INVALID_NODE_TYPE",
                message=f"Node {node.id or i} has unregistered type '{node.type}'",
                field=f"nodes[{i}].type",
                node_ids=[node.id] if node.id else [],
                context={"node_type": node.type},
            ))

    # 2. Connection endpoints
    nodes_by_id = {node.id: node for node in workflow.nodes if node.id}
    valid_connections = []
    for j, conn in enumerate(workflow.connections):
        endpoint_ok = True
        for end in ("source", "target"):
            node_id = getattr(conn, end)
            if node_id not in nodes_by_id:
                endpoint_ok = False
                errors.append(ValidationError(
                    code=f"UNKNOWN_CONNECTION_{end.upper()}",
                    message=f"Connection {conn.id}: {end} node '{node_id}' not found",
                    field=f"connections[{j}].{end}",
                    context={"connection_id": conn.id},
                ))
        if endpoint_ok:
            valid_connections.append((j, conn))

    # 3. Cardinality limits
    incoming_counts: Dict[str, int] = defaultdict(int)
    outgoing_counts: Dict[str, int] = defaultdict(int)
    for _, conn in valid_connections:
        outgoing_counts[conn.source] += 1
        incoming_counts[conn.target] += 1

    for i, node in enumerate(workflow.nodes):
        definition = get_node_definition(node.type)
        if definition is None or not node.id:
            continue
        meta = definition.metadata
        if meta.max_inputs != -1 and incoming_counts[node.id] > meta.max_inputs:
            errors.append(ValidationError(
                code="TOO_MANY_INPUTS",
                message=(
                    f"Node {node.id} ({node.type}) accepts at most {meta.max_inputs} "
                    f"incoming connection(s), found {incoming_counts[node.id]}"
                ),
                field=f"nodes[{i}]",
                node_ids=[node.id],
                context={"max_inputs": meta.max_inputs, "count": incoming_counts[node.id]},
            ))
        if meta.max_outputs != -1 and outgoing_counts[node.id] > meta.max_outputs:
            errors.append(ValidationError(
                code="TOO_MANY_OUTPUTS",
                message=(
                    f"Node {node.id} ({node.type}) allows at most {meta.max_outputs} "
                    f"outgoing connection(s), found {outgoing_counts[node.id]}"
                ),
                field=f"nodes[{i}]",
                node_ids=[node.id],
                context={"max_outputs": meta.max_outputs, "count": outgoing_counts[node.id]},
            ))

    # 4. Capability compatibility
    for j, conn in valid_connections:
        source_def = get_node_definition(nodes_by_id[conn.source].type)
        target_def = get_node_definition(nodes_by_id[conn.target].type)
        if source_def is None or target_def is None:
            continue
        if not target_def.metadata.accepts_input_from(source_def.category):
            errors.append(ValidationError(
                code="INCOMPATIBLE_CONNECTION",
                message=(
                    f"Node {conn.target} ({target_def.node_type}) does not accept input "
                    f"from '{source_def.category}' nodes"
                ),
                field=f"connections[{j}]",
                node_ids=[conn.source, conn.target],
                context={"connection_id": conn.id},
            ))
        elif not source_def.metadata.emits_output_to(target_def.category):
            errors.append(ValidationError(
                code="INCOMPATIBLE_CONNECTION",
                message=(
                    f"Node {conn.source} ({source_def.node_type}) cannot feed "
                    f"'{target_def.category}' nodes"
                ),
                field=f"connections[{j}]",
                node_ids=[conn.source, conn.target],
                context={"connection_id": conn.id},
            ))

    # 5. Cycles
    for cycle in detect_cycles(workflow):
        cycle_str = " -> ".join(cycle)
        errors.append(ValidationError(
            code="CIRCULAR_DEPENDENCY",
            message=f"Cycle detected: {cycle_str}",
            field="connections",
            node_ids=cycle[:-1],
            context={"cycle_path": cycle},
        ))

    # 6. Node configurations
    for i, node in enumerate(workflow.nodes):
        if get_node_definition(node.type) is None:
            continue
        executor = create_node(node.id, node.type, node.data)
        for problem in executor.validate_config():
            path = problem["field"]
            errors.append(ValidationError(
                code="INVALID_NODE_CONFIG",
                message=f"Node {node.id}: {path or 'data'}: {problem['error']}",
                field=f"nodes[{i}].data.{path}" if path else f"nodes[{i}].data",
                node_ids=[node.id],
                context={"node_type": node.type},
            ))

    # 7. Dangling nodes (warning only)
    if len(workflow.nodes) > 1:
        connected = {c.source for _, c in valid_connections} | {c.target for _, c in valid_connections}
        for node in workflow.nodes:
            if node.id and node.id not in connected:
                warnings.append(ValidationError(
                    code="DANGLING_NODE",
                    message=f"Node {node.id} is not connected to the workflow",
                    severity="warning",
                    node_ids=[node.id],
                ))

    valid = len(errors) == 0
    if not valid:
        logger.info(
            f"Workflow '{workflow.id or workflow.name}' failed validation with "
            f"{len(errors)} error(s): {[e.code for e in errors]}"
        )
    return ValidationResult(valid=valid, errors=errors, warnings=warnings)


def _adjacency(workflow: WorkflowDefinition) -> Dict[str, List[str]]:
    known = {node.id for node in workflow.nodes}
    graph: Dict[str, List[str]] = defaultdict(list)
    for conn in workflow.connections:
        if conn.source in known and conn.target in known:
            graph[conn.source].append(conn.target)
    return graph


def detect_cycles(workflow: WorkflowDefinition) -> List[List[str]]:
    """Detect cycles using DFS.

    Returns:
        One path per distinct cycle, closed (last element == first)
    """
    graph = _adjacency(workflow)

    cycles: List[List[str]] = []
    visited: Set[str] = set()
    path: List[str] = []
    path_set: Set[str] = set()
    found: Set[tuple] = set()

    def dfs(node_id: str):
        if node_id in path_set:
            start = path.index(node_id)
            cycle = path[start:] + [node_id]
            key = tuple(sorted(set(cycle)))
            if key not in found:
                found.add(key)
                cycles.append(cycle)
            return

        if node_id in visited:
            return

        visited.add(node_id)
        path.append(node_id)
        path_set.add(node_id)

        for neighbor in graph[node_id]:
            dfs(neighbor)

        path.pop()
        path_set.remove(node_id)

    for node in workflow.nodes:
        if node.id and node.id not in visited:
            dfs(node.id)

    return cycles


def topological_sort(workflow: WorkflowDefinition) -> List[str]:
    """Perform topological sort on workflow nodes (Kahn's algorithm).

    Ties keep node declaration order, so the result is deterministic.

    Raises:
        ValueError: If the workflow contains a cycle
    """
    graph = _adjacency(workflow)
    in_degree = {node.id: 0 for node in workflow.nodes}
    for targets in graph.values():
        for target in targets:
            in_degree[target] += 1

    queue = deque([node.id for node in workflow.nodes if in_degree[node.id] == 0])
    result = []

    while queue:
        node_id = queue.popleft()
        result.append(node_id)

        for neighbor in graph[node_id]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(result) != len(in_degree):
        raise ValueError("Workflow contains cycles - cannot perform topological sort")
    return result
