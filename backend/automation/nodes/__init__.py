"""Node System: registry, base types, and the built-in executors."""

# Import node modules to register node types
from . import triggers  # noqa: F401 - registers schedule, webhook, form, email-receive, database-change
from . import filter  # noqa: F401 - registers filter
from . import map  # noqa: F401 - registers map
from . import merge  # noqa: F401 - registers merge
from . import code  # noqa: F401 - registers code
from . import webhook  # noqa: F401 - registers webhook-output
from . import mail  # noqa: F401 - registers email-output
from . import database  # noqa: F401 - registers database-output, database-query
from . import object_storage  # noqa: F401 - registers object-storage-output, object-storage
from . import file_output  # noqa: F401 - registers file-output
from . import graph_db  # noqa: F401 - registers graph-db-output
from . import vector_db  # noqa: F401 - registers vector-db-output
from . import data  # noqa: F401 - registers storage, read-file
from . import api  # noqa: F401 - registers api-request

from .registry import (
    CATEGORY_DATA,
    CATEGORY_OUTPUT,
    CATEGORY_TRANSFORM,
    CATEGORY_TRIGGERS,
    NODE_CLASSES,
    NODE_REGISTRY,
    BaseNodeImpl,
    ExecutorMetadata,
    NodeDefinition,
    create_node,
    get_node_definition,
    is_node_type_registered,
    list_node_types,
    list_node_types_by_category,
    register_node_type,
)
from .triggers import next_fire_time, register_webhook_triggers

__all__ = [
    "CATEGORY_DATA",
    "CATEGORY_OUTPUT",
    "CATEGORY_TRANSFORM",
    "CATEGORY_TRIGGERS",
    "NODE_CLASSES",
    "NODE_REGISTRY",
    "BaseNodeImpl",
    "ExecutorMetadata",
    "NodeDefinition",
    "create_node",
    "get_node_definition",
    "is_node_type_registered",
    "list_node_types",
    "list_node_types_by_category",
    "next_fire_time",
    "register_node_type",
    "register_webhook_triggers",
]
