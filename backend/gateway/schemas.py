"""Request and response schemas for the gateway API."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WorkflowPayload(BaseModel):
    """Body of PUT /api/workflows/{id} and POST /api/workflows/validate.

    Nodes and connections are kept as plain dicts; their shape is checked by
    workflow validation, not by pydantic.
    """

    id: Optional[str] = None
    name: str = ""
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    connections: List[Dict[str, Any]] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)

    def definition(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": workflow_id or self.id or "",
            "name": self.name,
            "nodes": self.nodes,
            "connections": self.connections,
            "settings": self.settings,
        }


class ValidationIssue(BaseModel):
    code: str
    message: str
    field: str = ""
    severity: str = "error"
    node_ids: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)


class ValidationResponse(BaseModel):
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


class WorkflowResponse(BaseModel):
    """Response for PUT/GET /api/workflows/{id}."""

    id: str
    name: str
    definition: Dict[str, Any]
    webhooks: List[str] = Field(default_factory=list, description="Public URLs of webhook triggers")
    warnings: List[ValidationIssue] = Field(default_factory=list)


class RunRequest(BaseModel):
    """Body of POST /api/workflows/{id}/run."""

    payload: Any = Field(None, description="Trigger payload handed to the trigger node")
    node_id: Optional[str] = Field(None, description="Trigger node to start from; all triggers when omitted")
    wait: bool = Field(False, description="Block until the run finishes and return its result")


class RunResponse(BaseModel):
    execution_id: str
    workflow_id: str
    status: str
    result: Optional[Dict[str, Any]] = None


class NodeResultResponse(BaseModel):
    node_id: str
    node_type: str
    status: str
    result: Optional[Dict[str, Any]] = None
    retries: int = 0
    reason: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None


class ExecutionResponse(BaseModel):
    """Response for GET /api/executions/{id}."""

    execution_id: str
    workflow_id: str
    status: str
    trigger_node_id: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    nodes: List[NodeResultResponse] = Field(default_factory=list)


class CancelResponse(BaseModel):
    execution_id: str
    cancelled: bool
