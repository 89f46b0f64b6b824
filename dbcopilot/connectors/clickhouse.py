"""
ClickHouse Handle

ClickHouse handle using clickhouse-connect for OLAP database access.

Features:
- Async execution using asyncio.to_thread
- Server-side row cap (``max_result_rows`` with ``result_overflow_mode=break``)
- Every statement tagged with a query_id so it can be killed on cancel
- Non-SELECT statements routed through ``client.command``
- Schema introspection through system.columns

Note: clickhouse-connect is synchronous, wrapped with asyncio.to_thread for
async compatibility.
"""

import asyncio
import logging
import time
from typing import Any
from uuid import uuid4

try:
    import clickhouse_connect
    from clickhouse_connect.driver import Client
    from clickhouse_connect.driver.exceptions import ClickHouseError, OperationalError
except ImportError:
    clickhouse_connect = None
    Client = None
    ClickHouseError = Exception
    OperationalError = Exception

from dbcopilot.connectors.base import (
    ConnectionError,
    QueryError,
    QueryResult,
    SchemaError,
    TableInfo,
    describe,
    group_columns,
)
from dbcopilot.connectors.sql_classifier import classify_sql
from dbcopilot.models.database import ConnectionConfig
from dbcopilot.models.execution import QueryClassification

logger = logging.getLogger(__name__)

_SCHEMA_QUERY = """
    SELECT c.database, c.table, t.engine, c.name, c.type, c.default_expression,
        c.is_in_primary_key
    FROM system.columns c
    INNER JOIN system.tables t ON t.database = c.database AND t.name = c.table
    WHERE c.database = currentDatabase()
    ORDER BY c.table, c.position
"""



class ClickHouseHandle:
    """
    ClickHouse session using clickhouse-connect.

    Note: Uses clickhouse-connect which is synchronous, wrapped with
    asyncio.to_thread for async compatibility.
    """

    kind = "clickhouse"

    def __init__(self, config: ConnectionConfig, timeout: float = 60.0):
        if clickhouse_connect is None:
            raise ImportError(
                "clickhouse-connect is not installed. "
                "Install it with: pip install clickhouse-connect"
            )
        self.config = config
        self.timeout = timeout
        self._client: Client | None = None
        self._query_id: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def _client_kwargs(self) -> dict[str, Any]:
        return {
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "username": self.config.username or "default",
            "password": self.config.secret(),
            "connect_timeout": self.timeout,
            "send_receive_timeout": self.timeout,
        }

    async def connect(self) -> None:
        """
        Create the clickhouse-connect client.

        Raises:
            ConnectionError: If connection fails
        """
        if self._client is not None:
            logger.debug("Already connected, skipping connection")
            return

        try:
            logger.info(
                f"Connecting to ClickHouse at {self.config.host}:{self.config.port}/"
                f"{self.config.database}"
            )
            self._client = await asyncio.to_thread(
                clickhouse_connect.get_client, **self._client_kwargs()
            )
        except (ClickHouseError, OSError) as e:
            logger.error(f"ClickHouse connection failed: {e}")
            raise ConnectionError(f"Failed to connect to ClickHouse: {e}") from e

    async def execute(self, query: str, *, max_rows: int) -> QueryResult:
        """
        Execute one statement.

        Raises:
            QueryError: If the server rejects the statement
            ConnectionError: If not connected or the server is unreachable
        """
        if self._client is None:
            raise ConnectionError("Not connected to database. Call connect() first.")

        start_time = time.perf_counter()
        self._query_id = uuid4().hex
        settings: dict[str, Any] = {
            "query_id": self._query_id,
            "max_execution_time": int(self.timeout),
        }

        try:
            if classify_sql(query) == QueryClassification.READ:
                settings["max_result_rows"] = max_rows + 1
                settings["result_overflow_mode"] = "break"
                result = await asyncio.to_thread(self._client.query, query, settings=settings)
                columns = list(result.column_names)
                rows = [dict(zip(columns, row)) for row in result.result_rows[: max_rows + 1]]
                affected = None
            else:
                summary = await asyncio.to_thread(self._client.command, query, settings=settings)
                columns, rows = [], []
                affected = getattr(summary, "written_rows", None)

            execution_time_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(
                f"Query executed in {execution_time_ms:.2f}ms, returned {len(rows)} rows"
            )
            return QueryResult(
                rows=rows,
                columns=columns,
                affected_rows=affected,
                execution_time_ms=execution_time_ms,
            )

        except OperationalError as e:
            logger.error(f"ClickHouse unreachable during query: {e}")
            raise ConnectionError(f"Connection lost: {e}") from e
        except ClickHouseError as e:
            logger.warning(f"Query failed: {e}\nQuery: {query[:200]}...")
            raise QueryError(str(e)) from e
        finally:
            self._query_id = None

    async def get_schema(self, *, max_tables: int) -> list[TableInfo]:
        """
        Describe tables of the client's database through ``system.columns``.

        Raises:
            SchemaError: Introspection query failed
            ConnectionError: If not connected or the server is unreachable
        """
        if self._client is None:
            raise ConnectionError("Not connected to database. Call connect() first.")
        try:
            result = await asyncio.to_thread(
                self._client.query,
                _SCHEMA_QUERY,
                settings={"max_execution_time": int(self.timeout)},
            )
        except OperationalError as e:
            raise ConnectionError(f"Connection lost: {e}") from e
        except ClickHouseError as e:
            logger.error(f"Schema introspection failed: {e}")
            raise SchemaError(f"Failed to introspect schema: {e}") from e

        rows = (
            {
                "schema": database,
                "table": table,
                "table_type": "view" if engine in ("View", "MaterializedView") else "table",
                "column": column,
                "data_type": data_type,
                "is_nullable": data_type.startswith("Nullable("),
                "default": default or None,
                "is_primary_key": bool(is_primary_key),
            }
            for database, table, engine, column, data_type, default, is_primary_key in (
                result.result_rows
            )
        )
        tables = group_columns(rows, max_tables)
        logger.info(f"Introspected {len(tables)} tables on {describe(self)}")
        return tables

    async def ping(self) -> bool:
        if self._client is None:
            return False
        return bool(await asyncio.to_thread(self._client.ping))

    async def cancel(self) -> None:
        query_id = self._query_id
        if query_id is None:
            return
        logger.info(f"Killing query {query_id} on {describe(self)}")
        try:
            await asyncio.to_thread(self._kill_sync, query_id)
        except (ClickHouseError, OSError) as e:
            logger.warning(f"KILL QUERY failed for {describe(self)}: {e}")

    def _kill_sync(self, query_id: str) -> None:
        # A separate client: the busy one holds the session lock.
        client = clickhouse_connect.get_client(**self._client_kwargs())
        try:
            client.command(
                "KILL QUERY WHERE query_id = {query_id:String} ASYNC",
                parameters={"query_id": query_id},
            )
        finally:
            client.close()

    async def close(self) -> None:
        """
        Close ClickHouse client and clean up resources.

        Safe to call multiple times.
        """
        if self._client is None:
            logger.debug("No client to close")
            return

        client, self._client = self._client, None
        await asyncio.to_thread(client.close)
        logger.info("ClickHouse connection closed")

    def __repr__(self) -> str:
        return describe(self)
