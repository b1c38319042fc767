"""Tests for the graph database output node over mocked HTTP."""

import json

import httpx
import pytest

from automation.errors import ConfigurationError


def neo4j_response(columns, rows, stats=None, metas=None):
    data = []
    for i, row in enumerate(rows):
        entry = {"row": row}
        if metas:
            entry["meta"] = [metas[i]]
        data.append(entry)
    return httpx.Response(200, json={
        "results": [{"columns": columns, "data": data, "stats": stats or {}}],
        "errors": [],
    })


@pytest.fixture
def graph_secrets(secrets):
    secrets.update({"GRAPH_DB_URI": "http://neo4j:7474/", "GRAPH_DB_USER": "neo4j", "GRAPH_DB_PASSWORD": "pw"})
    return secrets


def sent(http_handler, index=0):
    request = http_handler.requests[index]
    return request, json.loads(request.content)


class TestNeo4j:
    """Test Cypher generation and result mapping."""

    @pytest.mark.asyncio
    async def test_create_nodes(self, node_context, http_handler, graph_secrets):
        """Test rows are unwound into CREATE with stats as counters."""
        http_handler.queue(neo4j_response(
            ["n"], [[{"id": 1, "name": "Ada"}], [{"id": 2, "name": "Alan"}]],
            stats={"nodes_created": 2, "properties_set": 4},
            metas=[{"id": 10, "elementId": "4:x:10"}, {"id": 11, "elementId": "4:x:11"}],
        ))
        executor, ctx = node_context("graph-db-output", {"nodeLabel": "Person"},
                                     input=[{"id": 1, "name": "Ada"}, {"id": 2, "name": "Alan"}])
        result = await executor.execute(ctx)
        assert result.success
        assert result.metadata["nodesCreated"] == 2
        assert result.metadata["propertiesSet"] == 4
        assert result.data == [{"n": {"id": 1, "name": "Ada"}}, {"n": {"id": 2, "name": "Alan"}}]

        request, body = sent(http_handler)
        assert str(request.url) == "http://neo4j:7474/db/neo4j/tx/commit"
        assert request.headers["Authorization"].startswith("Basic ")
        statement = body["statements"][0]
        assert "CREATE (n:`Person`) SET n = row" in statement["statement"]
        assert statement["parameters"] == {"rows": [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Alan"}]}

    @pytest.mark.asyncio
    async def test_merge_counts_updates(self, node_context, http_handler, graph_secrets):
        """Test merged rows not created count as updated and ids can be returned."""
        http_handler.queue(neo4j_response(
            ["n"], [[{"id": 1}], [{"id": 2}]], stats={"nodes_created": 1},
            metas=[{"elementId": "e1"}, {"elementId": "e2"}],
        ))
        executor, ctx = node_context("graph-db-output", {
            "nodeLabel": "Person", "operation": "merge", "returnFormat": "id",
        }, input=[{"id": 1}, {"id": 2}])
        result = await executor.execute(ctx)
        assert result.metadata["nodesCreated"] == 1
        assert result.metadata["nodesUpdated"] == 1
        assert result.data == ["e1", "e2"]
        _, body = sent(http_handler)
        assert "MERGE (n:`Person` {`id`: row.`id`})" in body["statements"][0]["statement"]

    @pytest.mark.asyncio
    async def test_relationship_direction(self, node_context, http_handler, graph_secrets):
        """Test incoming relationships reverse the arrow and bind ids."""
        http_handler.queue(neo4j_response(["r"], [[{}]], stats={"relationships_created": 1}))
        executor, ctx = node_context("graph-db-output", {
            "entityType": "relationship", "relationshipType": "FOLLOWS", "relationshipDirection": "in",
            "fromNodeLabel": "Person", "fromNodeId": "{{from}}",
            "toNodeLabel": "Person", "toNodeId": "{{to}}",
            "relationshipProperties": {"since": "{{since}}"},
        }, input={"from": 1, "to": 2, "since": 2020})
        result = await executor.execute(ctx)
        assert result.metadata["relationshipsCreated"] == 1
        _, body = sent(http_handler)
        statement = body["statements"][0]
        assert "(a)<-[r:`FOLLOWS`]-(b)" in statement["statement"]
        assert statement["parameters"] == {"fromId": 1, "toId": 2, "relProps": {"since": 2020}}

    @pytest.mark.asyncio
    async def test_query_binds_input(self, node_context, http_handler, graph_secrets):
        """Test $input is bound when the query references it."""
        http_handler.queue(neo4j_response(["c"], [[3]]))
        executor, ctx = node_context("graph-db-output", {
            "operation": "query", "query": "MATCH (n) WHERE n.id IN $input.ids RETURN count(n) AS c",
            "returnFormat": "count",
        }, input={"ids": [1, 2, 3]})
        result = await executor.execute(ctx)
        assert result.data == {"count": 1}
        _, body = sent(http_handler)
        assert body["statements"][0]["parameters"] == {"input": {"ids": [1, 2, 3]}}

    @pytest.mark.asyncio
    async def test_cypher_error(self, node_context, http_handler, graph_secrets):
        """Test errors in the response body fail the node."""
        http_handler.queue(httpx.Response(200, json={
            "results": [], "errors": [{"code": "Neo.ClientError.Statement.SyntaxError", "message": "bad"}],
        }))
        executor, ctx = node_context("graph-db-output", {"nodeLabel": "Person"}, input={"id": 1})
        result = await executor.execute(ctx)
        assert not result.success
        assert result.error == "bad"
        assert result.error_details["code"] == "Neo.ClientError.Statement.SyntaxError"

    @pytest.mark.asyncio
    async def test_unsafe_label(self, node_context, graph_secrets):
        """Test labels resolving to non-identifiers are refused."""
        executor, ctx = node_context("graph-db-output", {"nodeLabel": "{{label}}"},
                                     input={"label": "Person) DETACH DELETE (x"})
        with pytest.raises(ConfigurationError):
            await executor.execute(ctx)

    @pytest.mark.asyncio
    async def test_missing_id_for_update(self, node_context, graph_secrets):
        """Test update rows need the id field."""
        executor, ctx = node_context("graph-db-output", {"nodeLabel": "Person", "operation": "update"},
                                     input=[{"name": "no id"}])
        with pytest.raises(ConfigurationError, match="'id'"):
            await executor.execute(ctx)

    @pytest.mark.asyncio
    async def test_missing_uri(self, node_context):
        """Test env credentials require the URI secret."""
        executor, ctx = node_context("graph-db-output", {"nodeLabel": "Person"}, input={})
        with pytest.raises(ConfigurationError, match="GRAPH_DB_URI"):
            await executor.execute(ctx)

    def test_create_needs_direction(self, node_context):
        """Test undirected creates are rejected by config validation."""
        executor, _ = node_context("graph-db-output", {
            "entityType": "relationship", "operation": "create", "relationshipType": "KNOWS",
            "relationshipDirection": "both", "fromNodeLabel": "A", "fromNodeId": 1,
            "toNodeLabel": "B", "toNodeId": 2,
        })
        assert [e["field"] for e in executor.validate_config()] == ["relationshipDirection"]


class TestArangoDB:
    """Test AQL generation and cursor paging."""

    CONFIG = {
        "provider": "arangodb", "useEnvCredentials": False,
        "connectionUri": "http://arango:8529", "database": "graph", "nodeLabel": "people",
    }

    @pytest.mark.asyncio
    async def test_merge_nodes(self, node_context, http_handler):
        """Test an existing collection is tolerated and upserts are counted."""
        http_handler.queue(
            httpx.Response(409, json={"error": True, "errorNum": 1207}),
            httpx.Response(201, json={"result": [
                {"doc": {"_id": "people/1", "id": 1}, "created": True},
                {"doc": {"_id": "people/2", "id": 2}, "created": False},
            ], "hasMore": False}),
        )
        executor, ctx = node_context("graph-db-output", {**self.CONFIG, "operation": "merge"},
                                     input=[{"id": 1}, {"id": 2}])
        result = await executor.execute(ctx)
        assert result.success
        assert result.metadata["nodesCreated"] == 1
        assert result.metadata["nodesUpdated"] == 1
        assert [d["_id"] for d in result.data] == ["people/1", "people/2"]

        collection_request, collection_body = sent(http_handler, 0)
        assert str(collection_request.url) == "http://arango:8529/_db/graph/_api/collection"
        assert collection_body == {"name": "people", "type": 2}
        _, cursor_body = sent(http_handler, 1)
        assert cursor_body["bindVars"] == {"rows": [{"id": 1}, {"id": 2}], "@collection": "people", "idField": "id"}

    @pytest.mark.asyncio
    async def test_query_pages_cursor(self, node_context, http_handler):
        """Test hasMore results are fetched until exhausted."""
        http_handler.queue(
            httpx.Response(201, json={"result": [{"_id": "a/1"}], "hasMore": True, "id": "c1"}),
            httpx.Response(200, json={"result": [{"_id": "a/2"}], "hasMore": False}),
        )
        executor, ctx = node_context("graph-db-output", {
            **self.CONFIG, "operation": "query", "query": "FOR d IN a RETURN d",
        })
        result = await executor.execute(ctx)
        assert result.data == [{"_id": "a/1"}, {"_id": "a/2"}]
        assert str(http_handler.requests[1].url) == "http://arango:8529/_db/graph/_api/cursor/c1"

    @pytest.mark.asyncio
    async def test_aql_error(self, node_context, http_handler):
        """Test error payloads fail the node."""
        http_handler.queue(httpx.Response(400, json={"error": True, "errorNum": 1501, "errorMessage": "syntax error"}))
        executor, ctx = node_context("graph-db-output", {
            **self.CONFIG, "operation": "query", "query": "FOR",
        })
        result = await executor.execute(ctx)
        assert not result.success
        assert result.error == "syntax error"
        assert result.error_details["errorNum"] == 1501
