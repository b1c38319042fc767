"""Database Nodes

``database-output`` writes the input to MongoDB (motor) or to a SQL table
through SQLAlchemy async Core (postgresql via asyncpg, mysql via aiomysql,
sqlite via aiosqlite).

Operations: insert, update, upsert, replace, delete, custom. Documents,
filter and update are JSON templates rendered against the input. Custom SQL
only accepts bound ``parameters``; the query text itself is never
templated. A delete with an empty filter is refused.

``database-query`` reads: find, findOne and aggregate (MongoDB only) take a
JSON ``query`` template; SQL find builds a SELECT from the equality filter,
``projection``, ``sort``, ``limit`` and ``skip``; ``sql`` runs a bound
statement and keeps at most ``limit`` rows.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError
from sqlalchemy import MetaData, Table, and_, asc, delete, desc, insert, select, text, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from ..engine.context import NodeExecutionContext, NodeResult
from ..engine.template import render, template_context
from ..errors import ConfigurationError
from .registry import CATEGORY_DATA, CATEGORY_OUTPUT, BaseNodeImpl, ExecutorMetadata, register_node_type
from .utils import async_database_url, jsonable, mongo_client, render_json_template

logger = logging.getLogger(__name__)

DATABASE_TYPES = ["mongodb", "postgresql", "mysql", "sqlite"]
OPERATIONS = ["insert", "update", "upsert", "replace", "delete", "custom"]

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
    "mysql": mysql.insert,
}


def sql_engine(url: str):
    return create_async_engine(async_database_url(url))


def _documents(value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    bad = [i for i, item in enumerate(items) if not isinstance(item, dict)]
    if bad:
        raise ConfigurationError(f"documents must resolve to objects; items {bad} are not", field="documents")
    return items


class DatabaseNode(BaseNodeImpl):
    """Connection, template and reflection helpers shared by the database nodes."""

    def _connection_string(self, ctx: NodeExecutionContext) -> str:
        db_type = self.config["databaseType"]
        secret = "MONGODB_URI" if db_type == "mongodb" else "DATABASE_URL"
        url = self.config.get("connectionString") or ctx.services.secrets.get(secret)
        if not url:
            raise ConfigurationError(
                f"{db_type} requires connectionString or the {secret} secret",
                field="connectionString",
            )
        return url

    def _render(self, ctx: NodeExecutionContext, key: str) -> Any:
        context = template_context(ctx.input, ctx.identifiers())
        return render_json_template(
            self.config.get(key), context, key, lenient=bool(self.config.get("lenientTemplates")),
        )

    @staticmethod
    async def _reflect(conn: AsyncConnection, name: str) -> Table:
        if not IDENTIFIER_PATTERN.match(name):
            raise ConfigurationError(f"Invalid table name '{name}'", field="table")
        schema, _, table_name = name.rpartition(".")

        def _load(sync_conn):
            return Table(table_name, MetaData(), schema=schema or None, autoload_with=sync_conn)

        return await conn.run_sync(_load)

    def _mongo_database(self, ctx: NodeExecutionContext) -> str:
        database = self.config.get("database") or ctx.services.secrets.get("MONGODB_DATABASE")
        if not database:
            raise ConfigurationError("MongoDB requires a database name", field="database")
        return database


@register_node_type(
    node_type="database-output",
    display_name="Database",
    description="Insert, update or delete records in MongoDB or a SQL database",
    category=CATEGORY_OUTPUT,
    config_schema={
        "type": "object",
        "properties": {
            "databaseType": {"type": "string", "enum": DATABASE_TYPES},
            "connectionString": {"type": "string"},
            "database": {"type": "string"},
            "collection": {"type": "string", "minLength": 1},
            "table": {"type": "string", "minLength": 1},
            "operation": {"type": "string", "enum": OPERATIONS},
            "documents": {"type": ["string", "object", "array"]},
            "filter": {"type": ["string", "object"]},
            "update": {"type": ["string", "object"]},
            "multiple": {"type": "boolean"},
            "pipeline": {"type": ["string", "array"]},
            "sqlQuery": {"type": "string", "minLength": 1},
            "parameters": {"type": ["object", "array"]},
            "onConflict": {"type": "string", "enum": ["error", "ignore", "update"]},
            "conflictColumns": {"type": "array", "items": {"type": "string"}},
            "returning": {"type": "array", "items": {"type": "string"}},
            "lenientTemplates": {"type": "boolean"},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["databaseType"],
        "allOf": [
            {
                "if": {"properties": {"databaseType": {"const": "mongodb"}}},
                "then": {"required": ["collection"]},
            },
            {
                "if": {
                    "properties": {
                        "databaseType": {"enum": ["postgresql", "mysql", "sqlite"]},
                        "operation": {"not": {"const": "custom"}},
                    },
                },
                "then": {"required": ["table"]},
            },
            {
                "if": {
                    "properties": {
                        "databaseType": {"enum": ["postgresql", "mysql", "sqlite"]},
                        "operation": {"const": "custom"},
                    },
                    "required": ["operation"],
                },
                "then": {"required": ["sqlQuery"]},
            },
            {
                "if": {"properties": {"operation": {"const": "update"}}, "required": ["operation"]},
                "then": {"required": ["update"]},
            },
        ],
    },
    output_schema={
        "type": "object",
        "properties": {
            "operation": {"type": "string"},
            "affectedDocuments": {"type": "integer"},
            "insertedIds": {"type": "array"},
            "modifiedCount": {"type": "integer"},
            "deletedCount": {"type": "integer"},
            "rows": {"type": "array"},
        },
    },
    metadata=ExecutorMetadata(
        allowed_outputs=[],
        max_inputs=1,
        max_outputs=0,
        is_async=True,
        requires_auth=True,
        default_data={
            "operation": "insert",
            "documents": "{{input}}",
            "multiple": True,
            "onConflict": "error",
            "lenientTemplates": False,
        },
    ),
    icon="database",
    color="#0EA5E9",
)
class DatabaseOutputNode(DatabaseNode):
    """Persist the input; returns counts and inserted ids."""

    def check_config(self) -> List[Dict[str, str]]:
        errors = []
        table = self.config.get("table")
        if table and not IDENTIFIER_PATTERN.match(table):
            errors.append({"field": "table", "error": f"Invalid table name '{table}'"})
        for column in (self.config.get("conflictColumns") or []) + (self.config.get("returning") or []):
            if not IDENTIFIER_PATTERN.match(column):
                errors.append({"field": "conflictColumns", "error": f"Invalid column name '{column}'"})
        if self.config.get("operation") == "delete" and not self.config.get("filter"):
            errors.append({"field": "filter", "error": "delete requires a filter"})
        if self.config.get("operation") == "custom" and self.config.get("databaseType") == "mongodb":
            if not self.config.get("pipeline"):
                errors.append({"field": "pipeline", "error": "custom MongoDB operations require a pipeline"})
        return errors

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        operation = self.config.get("operation", "insert")
        db_type = self.config["databaseType"]
        url = self._connection_string(ctx)
        meta = {"databaseType": db_type, "operation": operation}

        filter_doc = self._render(ctx, "filter") or {}
        if not isinstance(filter_doc, dict):
            raise ConfigurationError("filter must resolve to an object", field="filter")
        if operation == "delete" and not filter_doc:
            return NodeResult.fail(
                "Refusing to delete without a filter",
                error_type="configuration",
                **meta,
            )

        try:
            if db_type == "mongodb":
                data = await self._execute_mongo(ctx, url, operation, filter_doc)
            else:
                data = await self._execute_sql(ctx, url, operation, filter_doc)
        except PyMongoError as e:
            logger.error(f"Database node {self.node_id}: MongoDB {operation} failed: {e}")
            return NodeResult.fail(f"MongoDB {operation} failed: {e}", details={"exception": type(e).__name__}, **meta)
        except SQLAlchemyError as e:
            logger.error(f"Database node {self.node_id}: SQL {operation} failed: {e}")
            return NodeResult.fail(f"SQL {operation} failed: {e}", details={"exception": type(e).__name__}, **meta)

        data["operation"] = operation
        return NodeResult.ok(
            data,
            affectedDocuments=data["affectedDocuments"],
            insertedIds=data["insertedIds"],
            modifiedCount=data["modifiedCount"],
            deletedCount=data["deletedCount"],
            **meta,
        )

    # --- MongoDB ---

    async def _execute_mongo(self, ctx, url, operation, filter_doc) -> Dict[str, Any]:
        database = self._mongo_database(ctx)
        result = {"affectedDocuments": 0, "insertedIds": [], "modifiedCount": 0, "deletedCount": 0}
        multiple = self.config.get("multiple", True)
        client = mongo_client(url)
        try:
            collection = client[database][self.config["collection"]]

            if operation == "insert":
                documents = [dict(d) for d in _documents(self._render(ctx, "documents"))]
                if documents:
                    inserted = await collection.insert_many(documents)
                    result["insertedIds"] = [str(i) for i in inserted.inserted_ids]
                    result["affectedDocuments"] = len(inserted.inserted_ids)

            elif operation == "update":
                update_doc = self._render(ctx, "update")
                if not isinstance(update_doc, dict) or not update_doc:
                    raise ConfigurationError("update must resolve to a non-empty object", field="update")
                if not any(key.startswith("$") for key in update_doc):
                    update_doc = {"$set": update_doc}
                method = collection.update_many if multiple else collection.update_one
                updated = await method(filter_doc, update_doc)
                result["modifiedCount"] = updated.modified_count
                result["affectedDocuments"] = updated.matched_count

            elif operation in ("upsert", "replace"):
                for document in _documents(self._render(ctx, "documents")):
                    doc_filter = self._document_filter(document) or filter_doc
                    if not doc_filter:
                        raise ConfigurationError(f"{operation} requires a filter", field="filter")
                    if operation == "upsert":
                        body = {k: v for k, v in document.items() if k != "_id"}
                        outcome = await collection.update_one(doc_filter, {"$set": body}, upsert=True)
                    else:
                        outcome = await collection.replace_one(doc_filter, document)
                    result["modifiedCount"] += outcome.modified_count
                    result["affectedDocuments"] += outcome.matched_count
                    if getattr(outcome, "upserted_id", None) is not None:
                        result["insertedIds"].append(str(outcome.upserted_id))
                        result["affectedDocuments"] += 1

            elif operation == "delete":
                method = collection.delete_many if multiple else collection.delete_one
                deleted = await method(filter_doc)
                result["deletedCount"] = deleted.deleted_count
                result["affectedDocuments"] = deleted.deleted_count

            else:
                pipeline = self._render(ctx, "pipeline")
                if not isinstance(pipeline, list):
                    raise ConfigurationError("pipeline must resolve to an array", field="pipeline")
                rows = await collection.aggregate(pipeline).to_list(length=None)
                result["rows"] = jsonable(rows)
                result["affectedDocuments"] = len(rows)
        finally:
            client.close()
        return result

    def _document_filter(self, document: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Per-document filter: the filter template rendered against the document."""
        template = self.config.get("filter")
        if isinstance(template, dict):
            rendered = render(template, template_context(document))
            return rendered if isinstance(rendered, dict) and rendered else None
        if "_id" in document:
            return {"_id": document["_id"]}
        return None

    # --- SQL ---

    async def _execute_sql(self, ctx, url, operation, filter_doc) -> Dict[str, Any]:
        result: Dict[str, Any] = {"affectedDocuments": 0, "insertedIds": [], "modifiedCount": 0, "deletedCount": 0}
        engine = sql_engine(url)
        try:
            async with engine.begin() as conn:
                if operation == "custom":
                    return await self._execute_custom_sql(ctx, conn, result)

                table = await self._reflect(conn, self.config["table"])
                where = _where_clause(table, filter_doc)

                if operation in ("insert", "upsert"):
                    documents = _documents(self._render(ctx, "documents"))
                    await self._insert_rows(conn, table, documents, operation, result)
                elif operation in ("update", "replace"):
                    values = self._render(ctx, "update" if operation == "update" else "documents")
                    if isinstance(values, list):
                        values = values[0] if values else {}
                    if not isinstance(values, dict) or not values:
                        raise ConfigurationError(f"{operation} values must resolve to a non-empty object", field="update")
                    stmt = update(table).values(**values)
                    if where is not None:
                        stmt = stmt.where(where)
                    outcome = await conn.execute(stmt)
                    result["modifiedCount"] = outcome.rowcount
                    result["affectedDocuments"] = outcome.rowcount
                else:
                    outcome = await conn.execute(delete(table).where(where))
                    result["deletedCount"] = outcome.rowcount
                    result["affectedDocuments"] = outcome.rowcount
        finally:
            await engine.dispose()
        return result

    async def _insert_rows(self, conn, table, documents, operation, result) -> None:
        dialect = self.config["databaseType"]
        on_conflict = "update" if operation == "upsert" else self.config.get("onConflict", "error")
        conflict_columns = self.config.get("conflictColumns") or [c.name for c in table.primary_key.columns]
        returning = [table.c[name] for name in self.config.get("returning") or []]
        use_returning = bool(returning) and dialect != "mysql"
        rows: List[Dict[str, Any]] = []

        for document in documents:
            if on_conflict == "error":
                stmt = insert(table).values(**document)
            else:
                stmt = self._conflict_insert(dialect, table, document, on_conflict, conflict_columns)
            if use_returning:
                stmt = stmt.returning(*returning)

            outcome = await conn.execute(stmt)
            if use_returning:
                fetched = [dict(row._mapping) for row in outcome.fetchall()]
                rows.extend(fetched)
                result["affectedDocuments"] += len(fetched)
                continue

            result["affectedDocuments"] += max(outcome.rowcount, 0)
            if on_conflict == "error":
                primary_key = outcome.inserted_primary_key
                if primary_key and all(v is not None for v in primary_key):
                    result["insertedIds"].append(primary_key[0] if len(primary_key) == 1 else list(primary_key))

        if returning and dialect == "mysql":
            logger.warning(f"Database node {self.node_id}: RETURNING is not supported on MySQL, ignored")
        if rows:
            result["rows"] = jsonable(rows)
        result["insertedIds"] = jsonable(result["insertedIds"])

    @staticmethod
    def _conflict_insert(dialect, table, document, on_conflict, conflict_columns):
        stmt = _DIALECT_INSERTS[dialect](table).values(**document)
        if dialect == "mysql":
            if on_conflict == "ignore":
                return stmt.prefix_with("IGNORE")
            updates = {k: stmt.inserted[k] for k in document if k not in conflict_columns}
            return stmt.on_duplicate_key_update(**updates) if updates else stmt.prefix_with("IGNORE")

        if on_conflict == "ignore":
            return stmt.on_conflict_do_nothing(index_elements=conflict_columns)
        updates = {k: stmt.excluded[k] for k in document if k not in conflict_columns}
        if not updates:
            return stmt.on_conflict_do_nothing(index_elements=conflict_columns)
        return stmt.on_conflict_do_update(index_elements=conflict_columns, set_=updates)

    async def _execute_custom_sql(self, ctx, conn, result) -> Dict[str, Any]:
        parameters = self.config.get("parameters") or {}
        if parameters:
            parameters = render(parameters, template_context(ctx.input, ctx.identifiers()))
        outcome = await conn.execute(text(self.config["sqlQuery"]), parameters)
        if outcome.returns_rows:
            rows = [dict(row._mapping) for row in outcome.fetchall()]
            result["rows"] = jsonable(rows)
            result["affectedDocuments"] = len(rows)
        else:
            result["affectedDocuments"] = max(outcome.rowcount, 0)
        return result


def _where_clause(table: Table, filter_doc: Dict[str, Any]):
    clauses = []
    for column_name, expected in filter_doc.items():
        if column_name not in table.c:
            raise ConfigurationError(f"Unknown column '{column_name}' in filter", field="filter")
        column = table.c[column_name]
        if expected is None:
            clauses.append(column.is_(None))
        elif isinstance(expected, list):
            clauses.append(column.in_(expected))
        else:
            clauses.append(column == expected)
    if not clauses:
        return None
    return and_(*clauses)


QUERY_TYPES = ["find", "findOne", "aggregate", "sql"]
MAX_QUERY_LIMIT = 10000


def _sort_direction(value: Any) -> int:
    if isinstance(value, str):
        return -1 if value.lower() in ("desc", "descending", "-1") else 1
    return -1 if value == -1 else 1


@register_node_type(
    node_type="database-query",
    display_name="Database Query",
    description="Read records from MongoDB or a SQL database",
    category=CATEGORY_DATA,
    config_schema={
        "type": "object",
        "properties": {
            "databaseType": {"type": "string", "enum": DATABASE_TYPES},
            "connectionString": {"type": "string"},
            "database": {"type": "string"},
            "collection": {"type": "string", "minLength": 1},
            "table": {"type": "string", "minLength": 1},
            "queryType": {"type": "string", "enum": QUERY_TYPES},
            "query": {"type": ["string", "object", "array"]},
            "sqlQuery": {"type": "string", "minLength": 1},
            "parameters": {"type": ["object", "array"]},
            "projection": {"type": "array", "items": {"type": "string", "minLength": 1}},
            "sort": {
                "type": "object",
                "additionalProperties": {"enum": [1, -1, "asc", "desc"]},
            },
            "limit": {"type": "integer", "minimum": 1, "maximum": MAX_QUERY_LIMIT},
            "skip": {"type": "integer", "minimum": 0},
            "lenientTemplates": {"type": "boolean"},
            "retryCount": {"type": "integer", "minimum": 0, "maximum": 10},
            "retryDelay": {"type": "integer", "minimum": 0},
            "errorHandling": {"type": "string", "enum": ["fail", "continue", "retry"]},
        },
        "required": ["databaseType"],
        "allOf": [
            {
                "if": {"properties": {"databaseType": {"const": "mongodb"}}},
                "then": {"required": ["collection"]},
            },
            {
                "if": {"properties": {"queryType": {"const": "sql"}}, "required": ["queryType"]},
                "then": {"required": ["sqlQuery"]},
            },
        ],
    },
    output_schema={"type": ["array", "object", "null"]},
    metadata=ExecutorMetadata(
        max_inputs=1,
        is_async=True,
        requires_auth=True,
        default_data={
            "queryType": "find",
            "query": {},
            "limit": 100,
            "skip": 0,
            "lenientTemplates": False,
        },
    ),
    icon="database-search",
    color="#0284C7",
)
class DatabaseQueryNode(DatabaseNode):
    """Run a read query; ``findOne`` yields one record or null, the rest an array."""

    def check_config(self) -> List[Dict[str, str]]:
        errors = []
        db_type = self.config.get("databaseType")
        query_type = self.config.get("queryType", "find")
        table = self.config.get("table")
        if table and not IDENTIFIER_PATTERN.match(table):
            errors.append({"field": "table", "error": f"Invalid table name '{table}'"})
        for column in list(self.config.get("projection") or []) + list(self.config.get("sort") or {}):
            if db_type != "mongodb" and not IDENTIFIER_PATTERN.match(column):
                errors.append({"field": "projection", "error": f"Invalid column name '{column}'"})
        if query_type == "aggregate" and db_type != "mongodb":
            errors.append({"field": "queryType", "error": "aggregate is only supported for MongoDB"})
        if query_type == "sql" and db_type == "mongodb":
            errors.append({"field": "queryType", "error": "sql queries require a SQL database"})
        if query_type in ("find", "findOne") and db_type != "mongodb" and not table:
            errors.append({"field": "table", "error": f"{query_type} requires a table"})
        return errors

    async def execute(self, ctx: NodeExecutionContext) -> NodeResult:
        db_type = self.config["databaseType"]
        query_type = self.config.get("queryType", "find")
        url = self._connection_string(ctx)
        limit = min(int(self.config.get("limit") or 100), MAX_QUERY_LIMIT)
        skip = int(self.config.get("skip") or 0)
        meta = {"databaseType": db_type, "queryType": query_type}
        started = time.monotonic()

        try:
            if db_type == "mongodb":
                records = await self._query_mongo(ctx, url, query_type, limit, skip)
            else:
                records = await self._query_sql(ctx, url, query_type, limit, skip)
        except PyMongoError as e:
            logger.error(f"Database query {self.node_id}: MongoDB {query_type} failed: {e}")
            return NodeResult.fail(f"MongoDB {query_type} failed: {e}", details={"exception": type(e).__name__}, **meta)
        except SQLAlchemyError as e:
            logger.error(f"Database query {self.node_id}: SQL {query_type} failed: {e}")
            return NodeResult.fail(f"SQL {query_type} failed: {e}", details={"exception": type(e).__name__}, **meta)

        records = jsonable(records)
        execution_time = int((time.monotonic() - started) * 1000)
        if query_type == "findOne":
            record = records[0] if records else None
            return NodeResult.ok(record, recordCount=1 if record is not None else 0, executionTime=execution_time, **meta)
        return NodeResult.ok(records, recordCount=len(records), executionTime=execution_time, **meta)

    def _filter(self, ctx: NodeExecutionContext) -> Dict[str, Any]:
        filter_doc = self._render(ctx, "query") or {}
        if not isinstance(filter_doc, dict):
            raise ConfigurationError("query must resolve to an object", field="query")
        return filter_doc

    async def _query_mongo(self, ctx, url, query_type, limit, skip) -> List[Dict[str, Any]]:
        database = self._mongo_database(ctx)
        projection = {name: 1 for name in self.config.get("projection") or []} or None
        client = mongo_client(url)
        try:
            collection = client[database][self.config["collection"]]
            if query_type == "aggregate":
                pipeline = self._render(ctx, "query")
                if not isinstance(pipeline, list):
                    raise ConfigurationError("aggregate query must resolve to a pipeline array", field="query")
                return await collection.aggregate(pipeline).to_list(length=limit)

            filter_doc = self._filter(ctx)
            if query_type == "findOne":
                document = await collection.find_one(filter_doc, projection, skip=skip)
                return [document] if document is not None else []

            cursor = collection.find(filter_doc, projection)
            sort = self.config.get("sort")
            if sort:
                cursor = cursor.sort([(name, _sort_direction(direction)) for name, direction in sort.items()])
            return await cursor.skip(skip).limit(limit).to_list(length=limit)
        finally:
            client.close()

    async def _query_sql(self, ctx, url, query_type, limit, skip) -> List[Dict[str, Any]]:
        engine = sql_engine(url)
        try:
            async with engine.connect() as conn:
                if query_type == "sql":
                    parameters = self.config.get("parameters") or {}
                    if parameters:
                        parameters = render(parameters, template_context(ctx.input, ctx.identifiers()))
                    outcome = await conn.execute(text(self.config["sqlQuery"]), parameters)
                    if not outcome.returns_rows:
                        return []
                    return [dict(row._mapping) for row in outcome.fetchmany(limit)]

                table = await self._reflect(conn, self.config["table"])
                stmt = select(*self._columns(table, self.config.get("projection")))
                where = _where_clause(table, self._filter(ctx))
                if where is not None:
                    stmt = stmt.where(where)
                for name, direction in (self.config.get("sort") or {}).items():
                    column = self._columns(table, [name])[0]
                    stmt = stmt.order_by(desc(column) if _sort_direction(direction) < 0 else asc(column))
                stmt = stmt.limit(1 if query_type == "findOne" else limit).offset(skip)
                outcome = await conn.execute(stmt)
                return [dict(row._mapping) for row in outcome.fetchall()]
        finally:
            await engine.dispose()

    @staticmethod
    def _columns(table: Table, names: Optional[List[str]]) -> List[Any]:
        if not names:
            return [table]
        unknown = [name for name in names if name not in table.c]
        if unknown:
            raise ConfigurationError(f"Unknown column(s) {', '.join(unknown)}", field="projection")
        return [table.c[name] for name in names]
