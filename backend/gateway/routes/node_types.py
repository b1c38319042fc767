"""Node type catalogue endpoint."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException

from automation.nodes import get_node_definition, list_node_types, list_node_types_by_category

router = APIRouter(prefix="/api/node-types", tags=["node-types"])


@router.get("")
async def get_node_types(category: Optional[str] = None) -> List[Dict[str, Any]]:
    definitions = list_node_types_by_category(category) if category else list_node_types()
    return [d.to_dict() for d in definitions]


@router.get("/{node_type}")
async def get_node_type(node_type: str) -> Dict[str, Any]:
    definition = get_node_definition(node_type)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"Unknown node type '{node_type}'")
    return definition.to_dict()
