"""
MongoDB Handle

Async MongoDB handle using pymongo's native asyncio client.

Queries use shell syntax (see ``dbcopilot.connectors.mongo_query``).
Documents are flattened to JSON-friendly rows: ObjectId and Decimal128
become strings, nested documents are kept as dicts.

Usage:
    handle = MongoDBHandle(config, timeout=60)
    await handle.connect()
    result = await handle.execute('db.users.find({age: {$gt: 30}})', max_rows=1000)
    await handle.close()
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

import pymongo
from bson import Decimal128, ObjectId
from pymongo import AsyncMongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from dbcopilot.connectors.base import (
    ColumnInfo,
    ConnectionError,
    QueryError,
    QueryResult,
    SchemaError,
    TableInfo,
    describe,
)
from dbcopilot.connectors.mongo_query import MongoQuery, parse_mongo_query
from dbcopilot.models.database import ConnectionConfig

logger = logging.getLogger(__name__)


def to_plain(value: Any) -> Any:
    """Convert BSON values into JSON-friendly Python values."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return str(value.to_decimal())
    if isinstance(value, dict):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    return value


_BSON_TYPES: dict[type, str] = {
    ObjectId: "objectId",
    Decimal128: "decimal",
    bool: "bool",
    int: "int",
    float: "double",
    str: "string",
    dict: "object",
    list: "array",
    bytes: "binData",
    datetime: "date",
}


def bson_type(value: Any) -> str:
    """BSON type name of a decoded value, as shown by ``$type``."""
    if value is None:
        return "null"
    for python_type, name in _BSON_TYPES.items():
        if isinstance(value, python_type):
            return name
    return type(value).__name__


def _columns(rows: list[dict[str, Any]]) -> list[str]:
    columns: dict[str, None] = {}
    for row in rows:
        for key in row:
            columns.setdefault(key, None)
    return list(columns)


class MongoDBHandle:
    """Single MongoDB client bound to one database."""

    kind = "mongodb"

    def __init__(self, config: ConnectionConfig, timeout: float = 60.0):
        self.config = config
        self.timeout = timeout
        self._client: AsyncMongoClient | None = None
        self._inflight: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """
        Create the client and verify the server answers ``ping``.

        Raises:
            ConnectionError: If the server cannot be reached or auth fails
        """
        if self._client is not None:
            logger.debug("Already connected, skipping connection")
            return

        timeout_ms = int(self.timeout * 1000)
        client: AsyncMongoClient = AsyncMongoClient(
            host=self.config.host,
            port=self.config.port,
            username=self.config.username,
            password=self.config.secret() or None,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
        )
        try:
            logger.info(
                f"Connecting to MongoDB at {self.config.host}:{self.config.port}/"
                f"{self.config.database}"
            )
            await client.admin.command("ping")
        except PyMongoError as e:
            await client.close()
            logger.error(f"MongoDB connection failed: {e}")
            raise ConnectionError(f"Failed to connect to MongoDB: {e}") from e
        self._client = client

    async def execute(self, query: str, *, max_rows: int) -> QueryResult:
        """
        Execute one shell-style operation.

        Raises:
            QuerySyntaxError: Malformed shell syntax
            QueryError: Server rejected the operation (message verbatim)
            ConnectionError: Server became unreachable
        """
        if self._client is None:
            raise ConnectionError("Not connected to database. Call connect() first.")

        parsed = parse_mongo_query(query)
        collection = self._client[self.config.database][parsed.collection]
        start_time = time.perf_counter()
        self._inflight = asyncio.current_task()

        try:
            with pymongo.timeout(self.timeout):
                rows, affected = await self._run(collection, parsed, max_rows)
        except ConnectionFailure as e:
            logger.error(f"MongoDB unreachable during query: {e}")
            raise ConnectionError(f"Connection lost: {e}") from e
        except PyMongoError as e:
            logger.warning(f"Query failed: {e}\nQuery: {query[:200]}...")
            raise QueryError(str(e)) from e
        finally:
            self._inflight = None

        rows = [to_plain(row) for row in rows]
        return QueryResult(
            rows=rows,
            columns=_columns(rows),
            affected_rows=affected,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def _run(
        self, collection: Any, parsed: MongoQuery, max_rows: int
    ) -> tuple[list[dict[str, Any]], int | None]:
        op = parsed.operation
        limit = max_rows + 1

        if op == "find":
            projection = parsed.modifiers.get("project", parsed.arg(1))
            cursor = collection.find(parsed.arg(0, {}), projection)
            if parsed.modifiers.get("sort"):
                cursor = cursor.sort(list(parsed.modifiers["sort"].items()))
            if parsed.modifiers.get("skip"):
                cursor = cursor.skip(int(parsed.modifiers["skip"]))
            requested = parsed.modifiers.get("limit")
            cursor = cursor.limit(min(int(requested), limit) if requested else limit)
            return await cursor.to_list(length=limit), None

        if op == "findOne":
            document = await collection.find_one(parsed.arg(0, {}), parsed.arg(1))
            return ([document] if document is not None else []), None

        if op == "aggregate":
            cursor = await collection.aggregate(parsed.arg(0, []))
            return await cursor.to_list(length=limit), None

        if op == "countDocuments":
            return [{"count": await collection.count_documents(parsed.arg(0, {}))}], None

        if op == "estimatedDocumentCount":
            return [{"count": await collection.estimated_document_count()}], None

        if op == "distinct":
            values = await collection.distinct(parsed.arg(0), parsed.arg(1))
            return [{parsed.arg(0): value} for value in values[:limit]], None

        if op == "insertOne":
            result = await collection.insert_one(parsed.arg(0, {}))
            return [{"inserted_id": result.inserted_id}], 1

        if op == "insertMany":
            result = await collection.insert_many(parsed.arg(0, []))
            ids = result.inserted_ids
            return [{"inserted_id": inserted} for inserted in ids[:limit]], len(ids)

        if op in ("updateOne", "updateMany", "replaceOne"):
            method = {
                "updateOne": collection.update_one,
                "updateMany": collection.update_many,
                "replaceOne": collection.replace_one,
            }[op]
            result = await method(parsed.arg(0, {}), parsed.arg(1, {}))
            row = {
                "matched_count": result.matched_count,
                "modified_count": result.modified_count,
                "upserted_id": result.upserted_id,
            }
            return [row], result.modified_count

        if op in ("deleteOne", "deleteMany"):
            method = collection.delete_one if op == "deleteOne" else collection.delete_many
            result = await method(parsed.arg(0, {}))
            return [{"deleted_count": result.deleted_count}], result.deleted_count

        raise QueryError(f"Unsupported MongoDB operation: {op}")

    async def get_schema(self, *, max_tables: int) -> list[TableInfo]:
        """
        Describe collections by sampling one document from each.

        Field types come from the sampled document, so fields missing from
        it are not listed.

        Raises:
            SchemaError: Listing or sampling failed
            ConnectionError: Server became unreachable
        """
        if self._client is None:
            raise ConnectionError("Not connected to database. Call connect() first.")

        database = self._client[self.config.database]
        tables: list[TableInfo] = []
        try:
            with pymongo.timeout(self.timeout):
                names = sorted(await database.list_collection_names())
                for name in names[:max_tables]:
                    sample = await database[name].find_one() or {}
                    tables.append(
                        TableInfo(
                            schema_name=self.config.database,
                            table_name=name,
                            table_type="collection",
                            columns=[
                                ColumnInfo(
                                    name=field_name,
                                    data_type=bson_type(value),
                                    is_primary_key=field_name == "_id",
                                    is_nullable=field_name != "_id",
                                )
                                for field_name, value in sample.items()
                            ],
                        )
                    )
        except ConnectionFailure as e:
            raise ConnectionError(f"Connection lost: {e}") from e
        except PyMongoError as e:
            logger.error(f"Schema introspection failed: {e}")
            raise SchemaError(f"Failed to introspect schema: {e}") from e

        logger.info(f"Introspected {len(tables)} collections on {describe(self)}")
        return tables

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.debug(f"Ping failed for {describe(self)}: {e}")
            return False

    async def cancel(self) -> None:
        task = self._inflight
        if task is not None and not task.done():
            logger.info(f"Cancelling in-flight operation on {describe(self)}")
            task.cancel()

    async def close(self) -> None:
        """Close the client. Safe to call multiple times."""
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.close()
        logger.info("MongoDB connection closed")

    def __repr__(self) -> str:
        return describe(self)
