"""Tests for the database query node.

SQL reads run against a temporary sqlite file through aiosqlite; MongoDB
reads use a motor-shaped fake.
"""

import sqlite3

import pytest

from automation.errors import ConfigurationError
from automation.nodes import database


@pytest.fixture
def people_db(tmp_path):
    path = tmp_path / "people.db"
    with sqlite3.connect(path) as conn:
        conn.execute("CREATE TABLE people (id INTEGER PRIMARY KEY, name TEXT NOT NULL, city TEXT, age INTEGER)")
        conn.executemany(
            "INSERT INTO people (id, name, city, age) VALUES (?, ?, ?, ?)",
            [(1, "Ada", "London", 36), (2, "Alan", "London", 41), (3, "Grace", "New York", 85), (4, "Linus", None, 28)],
        )
    return f"sqlite:///{path}"


class TestSqlQuery:
    """Test SQL reads on sqlite."""

    @pytest.mark.asyncio
    async def test_find_with_filter_sort_and_projection(self, node_context, people_db):
        """Test find builds a filtered, ordered, projected SELECT."""
        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "people",
            "query": {"city": "{{city}}"}, "projection": ["id", "name"], "sort": {"age": "desc"},
        }, input={"city": "London"})
        result = await executor.execute(ctx)
        assert result.success, result.error
        assert result.data == [{"id": 2, "name": "Alan"}, {"id": 1, "name": "Ada"}]
        assert result.metadata["recordCount"] == 2
        assert "executionTime" in result.metadata

    @pytest.mark.asyncio
    async def test_limit_and_skip(self, node_context, people_db):
        """Test limit and skip page through rows."""
        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "people",
            "sort": {"id": 1}, "limit": 2, "skip": 1,
        })
        result = await executor.execute(ctx)
        assert [row["id"] for row in result.data] == [2, 3]

    @pytest.mark.asyncio
    async def test_find_one(self, node_context, people_db):
        """Test findOne returns a single record or null."""
        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "people",
            "queryType": "findOne", "query": {"name": "Grace"},
        })
        result = await executor.execute(ctx)
        assert result.data == {"id": 3, "name": "Grace", "city": "New York", "age": 85}
        assert result.metadata["recordCount"] == 1

        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "people",
            "queryType": "findOne", "query": {"name": "Nobody"},
        })
        result = await executor.execute(ctx)
        assert result.success
        assert result.data is None
        assert result.metadata["recordCount"] == 0

    @pytest.mark.asyncio
    async def test_null_and_list_filters(self, node_context, people_db):
        """Test None matches IS NULL and a list matches IN."""
        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "people",
            "query": {"city": None},
        })
        assert [row["name"] for row in (await executor.execute(ctx)).data] == ["Linus"]

        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "people",
            "query": {"id": [1, 3]}, "projection": ["name"],
        })
        assert (await executor.execute(ctx)).data == [{"name": "Ada"}, {"name": "Grace"}]

    @pytest.mark.asyncio
    async def test_sql_with_bound_parameters(self, node_context, people_db):
        """Test sql queries bind templated parameters and respect limit."""
        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "queryType": "sql",
            "sqlQuery": "SELECT name FROM people WHERE age > :min_age ORDER BY age",
            "parameters": {"min_age": "{{minAge}}"}, "limit": 2,
        }, input={"minAge": 30})
        result = await executor.execute(ctx)
        assert result.data == [{"name": "Ada"}, {"name": "Alan"}]

    @pytest.mark.asyncio
    async def test_unknown_column_is_configuration_error(self, node_context, people_db):
        """Test a filter on a missing column raises."""
        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "people", "query": {"nope": 1},
        })
        with pytest.raises(ConfigurationError):
            await executor.execute(ctx)

    @pytest.mark.asyncio
    async def test_missing_table_fails(self, node_context, people_db):
        """Test driver errors become a failed result."""
        executor, ctx = node_context("database-query", {
            "databaseType": "sqlite", "connectionString": people_db, "table": "ghosts",
        })
        result = await executor.execute(ctx)
        assert not result.success
        assert result.error.startswith("SQL find failed")

    def test_check_config(self, node_context):
        """Test query type and database type must agree."""
        executor, _ = node_context("database-query", {"databaseType": "sqlite", "queryType": "aggregate"})
        fields = [e["field"] for e in executor.validate_config()]
        assert "queryType" in fields

        executor, _ = node_context("database-query", {"databaseType": "postgresql", "table": "bad name;"})
        assert {"field": "table", "error": "Invalid table name 'bad name;'"} in executor.validate_config()


class FakeCursor:
    def __init__(self, collection, documents):
        self.collection = collection
        self.documents = documents

    def sort(self, keys):
        self.collection.calls.append(("sort", keys))
        return self

    def skip(self, count):
        self.collection.calls.append(("skip", count))
        return self

    def limit(self, count):
        self.collection.calls.append(("limit", count))
        return self

    async def to_list(self, length=None):
        return self.documents[:length]


class FakeCollection:
    def __init__(self):
        self.calls = []
        self.documents = [{"_id": "a1", "status": "open"}, {"_id": "a2", "status": "open"}]

    def find(self, filter_doc, projection=None):
        self.calls.append(("find", filter_doc, projection))
        return FakeCursor(self, self.documents)

    async def find_one(self, filter_doc, projection=None, skip=0):
        self.calls.append(("find_one", filter_doc, projection))
        return self.documents[0] if filter_doc.get("status") == "open" else None

    def aggregate(self, pipeline):
        self.calls.append(("aggregate", pipeline))
        return FakeCursor(self, [{"_id": "open", "count": 2}])


class FakeMongoClient:
    def __init__(self):
        self.collection = FakeCollection()
        self.path = []
        self.closed = False

    def __getitem__(self, name):
        self.path.append(name)
        return self if len(self.path) == 1 else self.collection

    def close(self):
        self.closed = True


@pytest.fixture
def mongo(monkeypatch):
    client = FakeMongoClient()
    monkeypatch.setattr(database, "mongo_client", lambda uri: client)
    return client


class TestMongoQuery:
    """Test MongoDB reads against a fake client."""

    BASE = {"databaseType": "mongodb", "connectionString": "mongodb://db", "database": "shop", "collection": "orders"}

    @pytest.mark.asyncio
    async def test_find(self, node_context, mongo):
        """Test find applies the rendered filter, projection, sort, skip and limit."""
        executor, ctx = node_context("database-query", {
            **self.BASE, "query": {"status": "{{status}}"}, "projection": ["status"],
            "sort": {"createdAt": -1}, "limit": 5, "skip": 10,
        }, input={"status": "open"})
        result = await executor.execute(ctx)
        assert result.data == mongo.collection.documents
        assert mongo.path == ["shop", "orders"]
        assert mongo.collection.calls == [
            ("find", {"status": "open"}, {"status": 1}),
            ("sort", [("createdAt", -1)]),
            ("skip", 10),
            ("limit", 5),
        ]
        assert mongo.closed

    @pytest.mark.asyncio
    async def test_find_one(self, node_context, mongo):
        """Test findOne outputs one document."""
        executor, ctx = node_context("database-query", {
            **self.BASE, "queryType": "findOne", "query": '{"status": "open"}',
        })
        result = await executor.execute(ctx)
        assert result.data == {"_id": "a1", "status": "open"}

    @pytest.mark.asyncio
    async def test_aggregate(self, node_context, mongo):
        """Test aggregate runs the rendered pipeline."""
        executor, ctx = node_context("database-query", {
            **self.BASE, "queryType": "aggregate",
            "query": [{"$match": {"status": "{{status}}"}}, {"$group": {"_id": "$status", "count": {"$sum": 1}}}],
        }, input={"status": "open"})
        result = await executor.execute(ctx)
        assert result.data == [{"_id": "open", "count": 2}]
        assert mongo.collection.calls[0][1][0] == {"$match": {"status": "open"}}

    @pytest.mark.asyncio
    async def test_aggregate_requires_array(self, node_context, mongo):
        """Test a non-array pipeline is a configuration error."""
        executor, ctx = node_context("database-query", {**self.BASE, "queryType": "aggregate", "query": {}})
        with pytest.raises(ConfigurationError):
            await executor.execute(ctx)
        assert mongo.closed

    @pytest.mark.asyncio
    async def test_database_from_secrets(self, node_context, mongo, secrets):
        """Test connection and database fall back to secrets."""
        secrets.update({"MONGODB_URI": "mongodb://env", "MONGODB_DATABASE": "envdb"})
        executor, ctx = node_context("database-query", {"databaseType": "mongodb", "collection": "orders"})
        await executor.execute(ctx)
        assert mongo.path == ["envdb", "orders"]
