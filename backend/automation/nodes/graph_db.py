"""Graph Database Output Node

Writes nodes and relationships to Neo4j (HTTP transactional Cypher endpoint)
or ArangoDB (HTTP cursor API) through the shared ``httpx.AsyncClient``.
Labels, relationship types and id fields are interpolated into the query
text, so they must be plain identifiers; every value travels as a bound
parameter.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.template import has_placeholders, render, resolve, template_context
from ..errors import ConfigurationError
from .registry import CATEGORY_OUTPUT, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import render_json_template

logger = logging.getLogger(__name__)

LABEL_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

COUNTERS = [
    "nodesCreated",
    "nodesUpdated",
    "nodesDeleted",
    "relationshipsCreated",
    "relationshipsUpdated",
    "relationshipsDeleted",
    "propertiesSet",
]

# Neo4j HTTP stats keys -> counter names
_NEO4J_STATS = {
    "nodes_created": "nodesCreated",
    "nodes_deleted": "nodesDeleted",
    "relationships_created": "relationshipsCreated",
    "relationship_deleted": "relationshipsDeleted",
    "relationships_deleted": "relationshipsDeleted",
    "properties_set": "propertiesSet",
}


def sanitize_label(value: Any, field_name: str) -> str:
    label = str(value or "").strip()
    if not LABEL_PATTERN.match(label):
        raise ConfigurationError(f"Unsafe or empty {field_name}: {label!r}", field=field_name)
    return label


class GraphDBError(Exception):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


@dataclass
class GraphOutcome:
    records: List[Dict[str, Any]] = field(default_factory=list)
    ids: List[Any] = field(default_factory=list)
    counters: Dict[str, int] = field(default_factory=lambda: {name: 0 for name in COUNTERS})


@register_node_type(
    node_type="graph-db-output",
    display_name="Graph Database",
    description="Create, merge, update or delete graph nodes and relationships",
    category=CATEGORY_OUTPUT,
    config_schema={
        "type": "object",
        "properties": {
            "provider": {"type": "string", "enum": ["neo4j", "arangodb"]},
            "connectionUri": {"type": "string"},
            "username": {"type": "string"},
            "password": {"type": "string"},
            "useEnvCredentials": {"type": "boolean"},
            "envPrefix": {"type": "string", "pattern": "^[A-Z_][A-Z0-9_]*$"},
            "database": {"type": "string", "minLength": 1},
            "operation": {"type": "string", "enum": ["create", "merge", "update", "delete", "query"]},
            "entityType": {"type": "string", "enum": ["node", "relationship"]},
            "nodeLabel": {"type": "string"},
            "nodeProperties": {"type": ["string", "object", "array"]},
            "nodeIdField": {"type": "string"},
            "relationshipType": {"type": "string"},
            "relationshipProperties": {"type": ["object", "string"]},
            "relationshipDirection": {"type": "string", "enum": ["out", "in", "both"]},
            "fromNodeLabel": {"type": "string"},
            "fromNodeId": {"type": ["string", "number"]},
            "toNodeLabel": {"type": "string"},
            "toNodeId": {"type": ["string", "number"]},
            "query": {"type": "string"},
            "queryParameters": {"type": "object"},
            "returnData": {"type": "boolean"},
            "returnFormat": {"type": "string", "enum": ["full", "id", "count"]},
            "timeout": {"type": "integer", "minimum": 1000, "maximum": 300000},
            "lenientTemplates": {"type": "boolean"},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["provider"],
        "allOf": [
            {
                "if": {"properties": {"useEnvCredentials": {"const": False}}, "required": ["useEnvCredentials"]},
                "then": {"required": ["connectionUri"]},
            },
            {
                "if": {
                    "properties": {"entityType": {"const": "node"}, "operation": {"not": {"const": "query"}}},
                    "required": ["entityType", "operation"],
                },
                "then": {"required": ["nodeLabel"]},
            },
            {
                "if": {
                    "properties": {"entityType": {"const": "relationship"}, "operation": {"not": {"const": "query"}}},
                    "required": ["entityType", "operation"],
                },
                "then": {"required": ["relationshipType", "fromNodeLabel", "fromNodeId", "toNodeLabel", "toNodeId"]},
            },
            {
                "if": {"properties": {"operation": {"const": "query"}}, "required": ["operation"]},
                "then": {"required": ["query"]},
            },
        ],
    },
    output_schema={"type": ["array", "object", "null"]},
    metadata=ExecutorMetadata(
        allowed_outputs=[],
        max_inputs=1,
        max_outputs=0,
        is_async=True,
        requires_auth=True,
        default_data={
            "provider": "neo4j",
            "useEnvCredentials": True,
            "envPrefix": "GRAPH_DB_",
            "operation": "create",
            "entityType": "node",
            "nodeProperties": "{{input}}",
            "nodeIdField": "id",
            "relationshipProperties": {},
            "relationshipDirection": "out",
            "queryParameters": {},
            "returnData": True,
            "returnFormat": "full",
            "timeout": 30000,
        },
    ),
    icon="share-2",
    color="#0EA5E9",
)
class GraphDBOutputNode(BaseNodeImpl):
    """Graph writes with counters mirrored into metadata."""

    def check_config(self) -> List[Dict[str, str]]:
        errors = []
        operation = self.config.get("operation")
        entity = self.config.get("entityType")
        fields = []
        if operation != "query":
            if entity == "node":
                fields = ["nodeLabel"]
            else:
                fields = ["relationshipType", "fromNodeLabel", "toNodeLabel"]
        fields.append("nodeIdField")
        for name in fields:
            value = self.config.get(name)
            if value and not has_placeholders(value) and not LABEL_PATTERN.match(value):
                errors.append({"field": name, "error": f"'{value}' is not a valid identifier"})
        if (
            entity == "relationship"
            and operation == "create"
            and self.config.get("relationshipDirection") == "both"
        ):
            errors.append({
                "field": "relationshipDirection",
                "error": "create requires a directed relationship (out or in)",
            })
        return errors

    def _connection(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        if self.config.get("useEnvCredentials", True) and not self.config.get("connectionUri"):
            prefix = self.config.get("envPrefix", "GRAPH_DB_")
            found = ctx.services.secrets.with_prefix(prefix, "URI", "USER", "PASSWORD", "DATABASE")
            uri = found.get("URI")
            if not uri:
                raise ConfigurationError(f"Secret '{prefix}URI' is not set", field="connectionUri")
            return {
                "uri": uri.rstrip("/"),
                "username": found.get("USER"),
                "password": found.get("PASSWORD"),
                "database": self.config.get("database") or found.get("DATABASE"),
            }
        return {
            "uri": self.config["connectionUri"].rstrip("/"),
            "username": self.config.get("username"),
            "password": self.config.get("password"),
            "database": self.config.get("database"),
        }

    def _rows(self, ctx: NodeExecutionContext, context: Dict[str, Any]) -> List[Dict[str, Any]]:
        props = render_json_template(
            self.config.get("nodeProperties", "{{input}}"),
            context,
            "nodeProperties",
            lenient=bool(self.config.get("lenientTemplates")),
        )
        rows = props if isinstance(props, list) else [props]
        for row in rows:
            if not isinstance(row, dict):
                raise ConfigurationError(
                    f"nodeProperties must be an object or a list of objects, got {type(row).__name__}",
                    field="nodeProperties",
                )
        if self.config.get("operation") != "create":
            id_field = self.config.get("nodeIdField", "id")
            missing = [i for i, row in enumerate(rows) if row.get(id_field) is None]
            if missing:
                raise ConfigurationError(
                    f"Rows {missing} have no '{id_field}' value", field="nodeIdField",
                )
        return rows

    def _relationship(self, context: Dict[str, Any]) -> Dict[str, Any]:
        props = self.config.get("relationshipProperties") or {}
        if isinstance(props, str):
            props = render_json_template(
                props, context, "relationshipProperties",
                lenient=bool(self.config.get("lenientTemplates")),
            )
        else:
            props = render(props, context)
        return {
            "type": sanitize_label(resolve(self.config.get("relationshipType") or "", context), "relationshipType"),
            "fromLabel": sanitize_label(resolve(self.config.get("fromNodeLabel") or "", context), "fromNodeLabel"),
            "toLabel": sanitize_label(resolve(self.config.get("toNodeLabel") or "", context), "toNodeLabel"),
            "fromId": render(self.config.get("fromNodeId"), context),
            "toId": render(self.config.get("toNodeId"), context),
            "props": props if isinstance(props, dict) else {},
            "direction": self.config.get("relationshipDirection", "out"),
        }

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        context = template_context(ctx.input, ctx.identifiers())
        connection = self._connection(ctx)
        provider = self.config.get("provider", "neo4j")
        operation = self.config.get("operation", "create")
        entity = self.config.get("entityType", "node")
        meta = {"provider": provider, "operation": operation, "entityType": entity}

        if provider == "arangodb":
            backend = ArangoBackend(ctx.services.http, connection, self.config)
        else:
            backend = Neo4jBackend(ctx.services.http, connection, self.config)

        try:
            if operation == "query":
                params = render(self.config.get("queryParameters") or {}, context)
                outcome = await backend.query(self.config["query"], params, ctx.input)
            elif entity == "node":
                label = sanitize_label(resolve(self.config.get("nodeLabel") or "", context), "nodeLabel")
                outcome = await backend.nodes(operation, label, self._rows(ctx, context))
            else:
                outcome = await backend.relationship(operation, self._relationship(context))
        except GraphDBError as e:
            logger.error(f"Graph DB node {self.node_id} ({provider}) {operation} failed: {e}")
            return NodeResult.fail(str(e), details=e.details, **meta)
        except httpx.HTTPError as e:
            logger.error(f"Graph DB node {self.node_id}: request to {provider} failed: {e}")
            return NodeResult.fail(
                f"{provider} request failed: {e}",
                details={"exception": type(e).__name__},
                **meta,
            )

        return NodeResult.ok(self._format(outcome), **outcome.counters, **meta)

    def _format(self, outcome: GraphOutcome) -> Any:
        if not self.config.get("returnData", True):
            return None
        fmt = self.config.get("returnFormat", "full")
        if fmt == "count":
            return {"count": len(outcome.records)}
        if fmt == "id":
            return outcome.ids
        return outcome.records


class Neo4jBackend:
    """Cypher over ``POST /db/{database}/tx/commit``."""

    def __init__(self, client: httpx.AsyncClient, connection: Dict[str, Any], config: Dict[str, Any]):
        self.client = client
        self.connection = connection
        self.id_field = sanitize_label(config.get("nodeIdField", "id"), "nodeIdField")
        self.timeout = config.get("timeout", 30000) / 1000.0

    async def run(self, statement: str, parameters: Dict[str, Any]) -> GraphOutcome:
        database = self.connection.get("database") or "neo4j"
        auth = None
        if self.connection.get("username"):
            auth = httpx.BasicAuth(self.connection["username"], self.connection.get("password") or "")
        response = await self.client.post(
            f"{self.connection['uri']}/db/{database}/tx/commit",
            json={"statements": [{"statement": statement, "parameters": parameters, "includeStats": True}]},
            auth=auth,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            raise GraphDBError(
                f"Neo4j returned HTTP {response.status_code}",
                details={"statusCode": response.status_code, "body": response.text},
            )
        payload = response.json()
        if payload.get("errors"):
            first = payload["errors"][0]
            raise GraphDBError(
                first.get("message", "Neo4j error"),
                details={"code": first.get("code"), "errors": payload["errors"]},
            )

        outcome = GraphOutcome()
        results = payload.get("results") or []
        if not results:
            return outcome
        result = results[0]
        columns = result.get("columns", [])
        for entry in result.get("data", []):
            outcome.records.append(dict(zip(columns, entry.get("row", []))))
            meta = next((m for m in entry.get("meta") or [] if isinstance(m, dict)), None)
            if meta is not None:
                outcome.ids.append(meta.get("elementId", meta.get("id")))
        for key, name in _NEO4J_STATS.items():
            outcome.counters[name] += int((result.get("stats") or {}).get(key, 0))
        return outcome

    async def query(self, statement: str, params: Dict[str, Any], input_data: Any) -> GraphOutcome:
        if "$input" in statement and "input" not in params:
            params = {**params, "input": input_data}
        return await self.run(statement, params)

    async def nodes(self, operation: str, label: str, rows: List[Dict[str, Any]]) -> GraphOutcome:
        key = f"`{self.id_field}`"
        match = f"(n:`{label}` {{{key}: row.{key}}})"
        statements = {
            "create": f"UNWIND $rows AS row CREATE (n:`{label}`) SET n = row RETURN n",
            "merge": f"UNWIND $rows AS row MERGE {match} SET n += row RETURN n",
            "update": f"UNWIND $rows AS row MATCH {match} SET n += row RETURN n",
            "delete": f"UNWIND $rows AS row MATCH {match} DETACH DELETE n RETURN count(*) AS deleted",
        }
        outcome = await self.run(statements[operation], {"rows": rows})
        if operation == "update":
            outcome.counters["nodesUpdated"] = len(outcome.records)
        elif operation == "merge":
            outcome.counters["nodesUpdated"] = len(outcome.records) - outcome.counters["nodesCreated"]
        return outcome

    async def relationship(self, operation: str, rel: Dict[str, Any]) -> GraphOutcome:
        key = f"`{self.id_field}`"
        left, right = ("<-", "-") if rel["direction"] == "in" else ("-", "-" if rel["direction"] == "both" else "->")
        pattern = f"(a){left}[r:`{rel['type']}`]{right}(b)"
        anchors = (
            f"MATCH (a:`{rel['fromLabel']}` {{{key}: $fromId}}) "
            f"MATCH (b:`{rel['toLabel']}` {{{key}: $toId}}) "
        )
        statements = {
            "create": f"{anchors}CREATE {pattern} SET r = $relProps RETURN r",
            "merge": f"{anchors}MERGE {pattern} SET r += $relProps RETURN r",
            "update": f"{anchors}MATCH {pattern} SET r += $relProps RETURN r",
            "delete": f"{anchors}MATCH {pattern} DELETE r RETURN count(*) AS deleted",
        }
        outcome = await self.run(
            statements[operation],
            {"fromId": rel["fromId"], "toId": rel["toId"], "relProps": rel["props"]},
        )
        if operation == "update":
            outcome.counters["relationshipsUpdated"] = len(outcome.records)
        elif operation == "merge":
            outcome.counters["relationshipsUpdated"] = (
                len(outcome.records) - outcome.counters["relationshipsCreated"]
            )
        return outcome


class ArangoBackend:
    """AQL over ``POST /_db/{database}/_api/cursor``."""

    def __init__(self, client: httpx.AsyncClient, connection: Dict[str, Any], config: Dict[str, Any]):
        self.client = client
        self.connection = connection
        self.id_field = sanitize_label(config.get("nodeIdField", "id"), "nodeIdField")
        self.timeout = config.get("timeout", 30000) / 1000.0

    @property
    def _base(self) -> str:
        return f"{self.connection['uri']}/_db/{self.connection.get('database') or '_system'}"

    @property
    def _auth(self) -> Optional[httpx.BasicAuth]:
        if self.connection.get("username"):
            return httpx.BasicAuth(self.connection["username"], self.connection.get("password") or "")
        return None

    async def _ensure_collection(self, name: str, edge: bool) -> None:
        response = await self.client.post(
            f"{self._base}/_api/collection",
            json={"name": name, "type": 3 if edge else 2},
            auth=self._auth,
            timeout=self.timeout,
        )
        # 409: duplicate name
        if response.status_code >= 400 and response.status_code != 409:
            raise GraphDBError(
                f"Could not create collection '{name}': HTTP {response.status_code}",
                details={"statusCode": response.status_code, "body": response.text},
            )

    async def cursor(self, aql: str, bind_vars: Dict[str, Any]) -> List[Any]:
        response = await self.client.post(
            f"{self._base}/_api/cursor",
            json={"query": aql, "bindVars": bind_vars, "batchSize": 1000},
            auth=self._auth,
            timeout=self.timeout,
        )
        payload = response.json() if response.content else {}
        if response.status_code >= 400 or payload.get("error"):
            raise GraphDBError(
                payload.get("errorMessage") or f"ArangoDB returned HTTP {response.status_code}",
                details={"statusCode": response.status_code, "errorNum": payload.get("errorNum")},
            )
        results = list(payload.get("result") or [])
        while payload.get("hasMore"):
            response = await self.client.post(
                f"{self._base}/_api/cursor/{payload['id']}", auth=self._auth, timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
            results.extend(payload.get("result") or [])
        return results

    async def query(self, aql: str, params: Dict[str, Any], input_data: Any) -> GraphOutcome:
        if "@input" in aql and "input" not in params:
            params = {**params, "input": input_data}
        records = await self.cursor(aql, params)
        return GraphOutcome(
            records=records,
            ids=[r.get("_id") for r in records if isinstance(r, dict)],
        )

    def _outcome(self, docs: List[Any], operation: str, kind: str) -> GraphOutcome:
        outcome = GraphOutcome()
        if operation == "merge":
            created = sum(1 for d in docs if d.get("created"))
            outcome.counters[f"{kind}Created"] = created
            outcome.counters[f"{kind}Updated"] = len(docs) - created
            docs = [d.get("doc") for d in docs]
        elif operation == "create":
            outcome.counters[f"{kind}Created"] = len(docs)
        elif operation == "update":
            outcome.counters[f"{kind}Updated"] = len(docs)
        else:
            outcome.counters[f"{kind}Deleted"] = len(docs)
        outcome.records = docs
        outcome.ids = [d.get("_id") for d in docs if isinstance(d, dict)]
        return outcome

    async def nodes(self, operation: str, label: str, rows: List[Dict[str, Any]]) -> GraphOutcome:
        if operation != "delete":
            await self._ensure_collection(label, edge=False)
        statements = {
            "create": "FOR row IN @rows INSERT row INTO @@collection RETURN NEW",
            "merge": (
                "FOR row IN @rows UPSERT { [@idField]: row[@idField] } INSERT row UPDATE row "
                "IN @@collection RETURN { doc: NEW, created: IS_NULL(OLD) }"
            ),
            "update": (
                "FOR row IN @rows FOR d IN @@collection FILTER d[@idField] == row[@idField] "
                "UPDATE d WITH row IN @@collection RETURN NEW"
            ),
            "delete": (
                "FOR row IN @rows FOR d IN @@collection FILTER d[@idField] == row[@idField] "
                "REMOVE d IN @@collection RETURN OLD"
            ),
        }
        bind_vars: Dict[str, Any] = {"rows": rows, "@collection": label}
        if operation != "create":
            bind_vars["idField"] = self.id_field
        docs = await self.cursor(statements[operation], bind_vars)
        return self._outcome(docs, operation, "nodes")

    async def relationship(self, operation: str, rel: Dict[str, Any]) -> GraphOutcome:
        if operation != "delete":
            await self._ensure_collection(rel["type"], edge=True)
        source = f"{rel['fromLabel']}/{rel['fromId']}"
        target = f"{rel['toLabel']}/{rel['toId']}"
        if rel["direction"] == "in":
            source, target = target, source
        if rel["direction"] == "both":
            match = "(e._from == @from AND e._to == @to) OR (e._from == @to AND e._to == @from)"
        else:
            match = "e._from == @from AND e._to == @to"
        statements = {
            "create": "INSERT MERGE(@props, { _from: @from, _to: @to }) INTO @@collection RETURN NEW",
            "merge": (
                "UPSERT { _from: @from, _to: @to } INSERT MERGE(@props, { _from: @from, _to: @to }) "
                "UPDATE @props IN @@collection RETURN { doc: NEW, created: IS_NULL(OLD) }"
            ),
            "update": f"FOR e IN @@collection FILTER {match} UPDATE e WITH @props IN @@collection RETURN NEW",
            "delete": f"FOR e IN @@collection FILTER {match} REMOVE e IN @@collection RETURN OLD",
        }
        bind_vars: Dict[str, Any] = {"from": source, "to": target, "@collection": rel["type"]}
        if operation != "delete":
            bind_vars["props"] = rel["props"]
        docs = await self.cursor(statements[operation], bind_vars)
        return self._outcome(docs, operation, "relationships")
