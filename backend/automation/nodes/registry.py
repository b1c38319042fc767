"""Executor Registry for workflow node types

This module maps a node ``type`` string to its executor class and static
metadata. Registration is explicit: every built-in module decorates its
executor with ``@register_node_type`` and ``automation.nodes`` imports them.

Key Components:
- ExecutorMetadata: connection rules and engine hints for a node type
- NodeDefinition: metadata + JSON schema for a node type
- BaseNodeImpl: base class every executor derives from
- register_node_type: decorator registering definition and class
- create_node: factory instantiating an executor for one node
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from jsonschema import Draft7Validator, SchemaError

from ..engine.context import NodeExecutionContext, NodeResult

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseNodeImpl")

WILDCARD = "*"

CATEGORY_TRIGGERS = "triggers"
CATEGORY_TRANSFORM = "transform"
CATEGORY_OUTPUT = "output"
CATEGORY_DATA = "data"


@dataclass
class ExecutorMetadata:
    """Static connection rules and engine hints for a node type.

    Attributes:
        allowed_inputs: Categories accepted from predecessors, or ['*']
        allowed_outputs: Categories this node may feed, or ['*']
        max_inputs: Max incoming connections (0 = none, -1 = unlimited)
        max_outputs: Max outgoing connections (0 = terminal, -1 = unlimited)
        is_async: Executor performs I/O and suspends
        requires_auth: Executor needs credentials to do its work
        default_data: Defaults merged under the node's data
        self_retrying: Executor applies its own retryCount/retryDelay
        reads_inputs: Executor receives the ordered list of predecessor outputs
    """

    allowed_inputs: List[str] = field(default_factory=lambda: [WILDCARD])
    allowed_outputs: List[str] = field(default_factory=lambda: [WILDCARD])
    max_inputs: int = -1
    max_outputs: int = -1
    is_async: bool = False
    requires_auth: bool = False
    default_data: Dict[str, Any] = field(default_factory=dict)
    self_retrying: bool = False
    reads_inputs: bool = False

    def __post_init__(self):
        if self.max_inputs < -1:
            raise ValueError("max_inputs must be -1 (unlimited) or >= 0")
        if self.max_outputs < -1:
            raise ValueError("max_outputs must be -1 (unlimited) or >= 0")

    def accepts_input_from(self, category: str) -> bool:
        return WILDCARD in self.allowed_inputs or category in self.allowed_inputs

    def emits_output_to(self, category: str) -> bool:
        return WILDCARD in self.allowed_outputs or category in self.allowed_outputs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowedInputs": list(self.allowed_inputs),
            "allowedOutputs": list(self.allowed_outputs),
            "maxInputs": self.max_inputs,
            "maxOutputs": self.max_outputs,
            "isAsync": self.is_async,
            "requiresAuth": self.requires_auth,
            "defaultData": copy.deepcopy(self.default_data),
        }


@dataclass
class NodeDefinition:
    """Metadata definition for a node type.

    Attributes:
        node_type: Unique identifier for the node type (e.g., "filter")
        display_name: Human-readable name for UI display
        description: Brief description of node functionality
        category: Capability category ("triggers", "transform", "output", "data")
        config_schema: JSON schema (draft 7) the node's data must satisfy
        output_schema: JSON schema describing the node's output
        metadata: Connection rules and engine hints
        icon: Optional icon identifier for UI rendering
        color: Optional color code for UI theming
    """

    node_type: str
    display_name: str
    description: str
    category: str
    config_schema: Dict[str, Any]
    output_schema: Dict[str, Any] = field(default_factory=dict)
    metadata: ExecutorMetadata = field(default_factory=ExecutorMetadata)
    icon: Optional[str] = None
    color: Optional[str] = None

    def __post_init__(self):
        """Validate node definition after initialization."""
        if not self.node_type:
            raise ValueError("node_type cannot be empty")
        if not self.display_name:
            raise ValueError("display_name cannot be empty")
        if not isinstance(self.config_schema, dict):
            raise ValueError("config_schema must be a dictionary")
        if not isinstance(self.output_schema, dict):
            raise ValueError("output_schema must be a dictionary")
        try:
            Draft7Validator.check_schema(self.config_schema)
        except SchemaError as e:
            raise ValueError(f"config_schema is not a valid JSON schema: {e.message}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "displayName": self.display_name,
            "description": self.description,
            "category": self.category,
            "configSchema": self.config_schema,
            "outputSchema": self.output_schema,
            "metadata": self.metadata.to_dict(),
            "icon": self.icon,
            "color": self.color,
        }


def format_error_path(path) -> str:
    """Render a jsonschema path deque as ``a.b[0].c``."""
    text = ""
    for part in path:
        if isinstance(part, int):
            text += f"[{part}]"
        else:
            text += f".{part}" if text else str(part)
    return text


class BaseNodeImpl(ABC):
    """Abstract base class for all executors.

    Subclasses implement ``execute``; configuration checks beyond the JSON
    schema go in ``check_config``.
    """

    def __init__(self, node_id: str, node_type: str, config: Dict[str, Any]):
        """Initialize base node.

        Args:
            node_id: Unique identifier for this node instance
            node_type: Type identifier matching NodeDefinition
            config: The node's data, defaults already merged in
        """
        self.node_id = node_id
        self.node_type = node_type
        self.config = config

    @property
    def definition(self) -> Optional[NodeDefinition]:
        return NODE_REGISTRY.get(self.node_type)

    @abstractmethod
    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        """Run the node. Must be implemented by subclasses."""

    def validate_config(self) -> List[Dict[str, str]]:
        """Validate the node's data against its schema and semantic checks.

        Returns:
            List of validation errors, each containing:
                - field: Path of the invalid field (e.g. "conditions[0].operator")
                - error: Description of the validation error
            Empty list if validation passes
        """
        definition = self.definition
        if not definition:
            return [{"field": "type", "error": f"Unknown node type: {self.node_type}"}]

        errors = []
        validator = Draft7Validator(definition.config_schema)
        for error in sorted(validator.iter_errors(self.config), key=lambda e: list(e.absolute_path)):
            errors.append({
                "field": _error_field(error),
                "error": error.message,
            })

        # Semantic checks only make sense on a structurally valid config
        if not errors:
            errors.extend(self.check_config())
        return errors

    def check_config(self) -> List[Dict[str, str]]:
        """Semantic checks the JSON schema cannot express."""
        return []


def _error_field(error) -> str:
    path = format_error_path(error.absolute_path)
    if error.validator == "required" and error.message.startswith("'"):
        missing = error.message.split("'")[1]
        return f"{path}.{missing}" if path else missing
    return path


# Global registry for node types
NODE_REGISTRY: Dict[str, NodeDefinition] = {}
NODE_CLASSES: Dict[str, Type[BaseNodeImpl]] = {}


def register_node_type(
    node_type: str,
    display_name: str,
    description: str,
    category: str,
    config_schema: Dict[str, Any],
    output_schema: Optional[Dict[str, Any]] = None,
    metadata: Optional[ExecutorMetadata] = None,
    icon: Optional[str] = None,
    color: Optional[str] = None,
) -> Callable[[Type[T]], Type[T]]:
    """Decorator to register a node type.

    This decorator registers both the node definition metadata and the
    executor class.

    Example:
        @register_node_type(
            node_type="filter",
            display_name="Filter",
            description="Keep items matching conditions",
            category="transform",
            config_schema={"type": "object", "properties": {...}},
        )
        class FilterNode(BaseNodeImpl):
            async def execute(self, ctx):
                return NodeResult.ok(...)
    """

    def decorator(cls: Type[T]) -> Type[T]:
        definition = NodeDefinition(
            node_type=node_type,
            display_name=display_name,
            description=description,
            category=category,
            config_schema=config_schema,
            output_schema=output_schema or {},
            metadata=metadata or ExecutorMetadata(),
            icon=icon,
            color=color,
        )

        NODE_REGISTRY[node_type] = definition
        NODE_CLASSES[node_type] = cls

        logger.debug(f"Registered node type: {node_type} ({display_name})")

        return cls

    return decorator


def create_node(
    node_id: str,
    node_type: str,
    config: Optional[Dict[str, Any]] = None,
) -> BaseNodeImpl:
    """Factory function to create an executor for one node.

    The type's ``default_data`` is merged under ``config`` (shallow); the
    node's own data is deep-copied so executors never alias the definition.

    Raises:
        ValueError: If node_type is not registered
    """
    if node_type not in NODE_CLASSES:
        available_types = sorted(NODE_CLASSES.keys())
        raise ValueError(
            f"Unknown node type: {node_type}. "
            f"Available types: {available_types}"
        )

    definition = NODE_REGISTRY[node_type]
    merged = copy.deepcopy(definition.metadata.default_data)
    merged.update(copy.deepcopy(config or {}))

    node_class = NODE_CLASSES[node_type]
    node = node_class(node_id=node_id, node_type=node_type, config=merged)

    logger.debug(f"Created node: {node_id} (type={node_type})")

    return node


def get_node_definition(node_type: str) -> Optional[NodeDefinition]:
    return NODE_REGISTRY.get(node_type)


def list_node_types() -> List[NodeDefinition]:
    return list(NODE_REGISTRY.values())


def list_node_types_by_category(category: str) -> List[NodeDefinition]:
    return [
        definition
        for definition in NODE_REGISTRY.values()
        if definition.category == category
    ]


def is_node_type_registered(node_type: str) -> bool:
    return node_type in NODE_REGISTRY
