"""
PostgreSQL Handle

One asyncpg connection per handle. Pooling across handles is the pool
manager's job, so this module never creates an asyncpg pool.

Features:
- Server-side statement_timeout on every session
- Row-returning statements are read through a cursor, so at most
  ``max_rows + 1`` rows ever leave the server
- Affected-row counts parsed from the command status tag
- Schema introspection through information_schema
- Cancellation of the in-flight statement (asyncpg sends a cancel request
  to the server when the awaiting task is cancelled)

Usage:
    handle = PostgresHandle(config, timeout=60)
    await handle.connect()
    result = await handle.execute("SELECT * FROM users", max_rows=1000)
    await handle.close()
"""

import asyncio
import logging
import time

import asyncpg

from dbcopilot.connectors.base import (
    ConnectionError,
    QueryError,
    QueryResult,
    SchemaError,
    TableInfo,
    describe,
    group_columns,
)
from dbcopilot.connectors.sql_classifier import split_statements
from dbcopilot.models.database import ConnectionConfig

logger = logging.getLogger(__name__)

_BROKEN_CONNECTION_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.InterfaceError,
    OSError,
)

_SCHEMA_QUERY = """
    SELECT
        c.table_schema AS "schema",
        c.table_name AS "table",
        CASE WHEN t.table_type = 'VIEW' THEN 'view' ELSE 'table' END AS table_type,
        c.column_name AS "column",
        c.data_type,
        c.is_nullable = 'YES' AS is_nullable,
        c.column_default AS "default",
        EXISTS (
            SELECT 1
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
                AND tc.table_name = kcu.table_name
            WHERE tc.constraint_type = 'PRIMARY KEY'
                AND kcu.table_schema = c.table_schema
                AND kcu.table_name = c.table_name
                AND kcu.column_name = c.column_name
        ) AS is_primary_key
    FROM information_schema.columns c
    JOIN information_schema.tables t
        ON t.table_schema = c.table_schema AND t.table_name = c.table_name
    WHERE c.table_schema NOT IN ('pg_catalog', 'information_schema')
        AND c.table_schema NOT LIKE 'pg_toast%'
        AND t.table_type IN ('BASE TABLE', 'VIEW')
    ORDER BY c.table_schema, c.table_name, c.ordinal_position
"""


def parse_status_count(status: str | None) -> int | None:
    """Extract the row count from a command tag like ``DELETE 3`` or ``INSERT 0 1``."""
    if not status:
        return None
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else None


class PostgresHandle:
    """Single PostgreSQL session backed by ``asyncpg.connect``."""

    kind = "postgresql"

    def __init__(self, config: ConnectionConfig, timeout: float = 60.0):
        self.config = config
        self.timeout = timeout
        self._conn: asyncpg.Connection | None = None
        self._inflight: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def connect(self) -> None:
        """
        Open the session.

        Raises:
            ConnectionError: If the server is unreachable or rejects credentials
        """
        if self.is_connected:
            logger.debug("Already connected, skipping connection")
            return

        try:
            logger.info(
                f"Connecting to PostgreSQL at {self.config.host}:{self.config.port}/"
                f"{self.config.database}"
            )
            self._conn = await asyncpg.connect(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.username,
                password=self.config.secret(),
                timeout=self.timeout,
                server_settings={"statement_timeout": str(int(self.timeout * 1000))},
            )
        except (asyncpg.PostgresError, *_BROKEN_CONNECTION_ERRORS) as e:
            logger.error(f"PostgreSQL connection failed: {e}")
            raise ConnectionError(f"Failed to connect to PostgreSQL: {e}") from e
        except asyncio.TimeoutError as e:
            logger.error(f"PostgreSQL connection timed out after {self.timeout}s")
            raise ConnectionError(f"Connection to PostgreSQL timed out ({self.timeout}s)") from e

    def _require(self) -> asyncpg.Connection:
        if not self.is_connected:
            raise ConnectionError("Not connected to database. Call connect() first.")
        return self._conn

    async def execute(self, query: str, *, max_rows: int) -> QueryResult:
        """
        Execute one statement (or a multi-statement script).

        Returns at most ``max_rows + 1`` rows so the caller can tell whether
        the result was truncated.

        Raises:
            QueryError: Engine rejected the statement (message verbatim)
            ConnectionError: The session broke mid-statement
        """
        conn = self._require()
        start_time = time.perf_counter()
        self._inflight = asyncio.current_task()

        try:
            if len(split_statements(query)) > 1:
                # Prepared statements cannot hold several commands.
                status = await conn.execute(query)
                return QueryResult(
                    affected_rows=parse_status_count(status),
                    execution_time_ms=(time.perf_counter() - start_time) * 1000,
                )

            statement = await conn.prepare(query)
            attributes = statement.get_attributes()
            if not attributes:
                await statement.fetch()
                return QueryResult(
                    affected_rows=parse_status_count(statement.get_statusmsg()),
                    execution_time_ms=(time.perf_counter() - start_time) * 1000,
                )

            columns = [attribute.name for attribute in attributes]
            async with conn.transaction():
                cursor = await statement.cursor()
                records = await cursor.fetch(max_rows + 1)

            rows = [dict(record) for record in records]
            execution_time_ms = (time.perf_counter() - start_time) * 1000
            logger.debug(
                f"Query executed in {execution_time_ms:.2f}ms, returned {len(rows)} rows"
            )
            return QueryResult(
                rows=rows,
                columns=columns,
                affected_rows=parse_status_count(statement.get_statusmsg()),
                execution_time_ms=execution_time_ms,
            )

        except _BROKEN_CONNECTION_ERRORS as e:
            logger.error(f"PostgreSQL session lost during query: {e}")
            raise ConnectionError(f"Connection lost: {e}") from e
        except asyncpg.PostgresError as e:
            logger.warning(f"Query failed: {e}\nQuery: {query[:200]}...")
            raise QueryError(str(e)) from e
        finally:
            self._inflight = None

    async def get_schema(self, *, max_tables: int) -> list[TableInfo]:
        """
        Describe user tables and views through ``information_schema``.

        Raises:
            SchemaError: Introspection query failed
            ConnectionError: The session broke mid-query
        """
        conn = self._require()
        try:
            records = await conn.fetch(_SCHEMA_QUERY, timeout=self.timeout)
        except _BROKEN_CONNECTION_ERRORS as e:
            raise ConnectionError(f"Connection lost: {e}") from e
        except (asyncpg.PostgresError, asyncio.TimeoutError) as e:
            logger.error(f"Schema introspection failed: {e}")
            raise SchemaError(f"Failed to introspect schema: {e}") from e

        tables = group_columns((dict(record) for record in records), max_tables)
        logger.info(f"Introspected {len(tables)} tables on {describe(self)}")
        return tables

    async def ping(self) -> bool:
        if not self.is_connected:
            return False
        try:
            await self._conn.fetchval("SELECT 1", timeout=self.timeout)
            return True
        except (asyncpg.PostgresError, asyncio.TimeoutError, *_BROKEN_CONNECTION_ERRORS) as e:
            logger.debug(f"Ping failed for {describe(self)}: {e}")
            return False

    async def cancel(self) -> None:
        task = self._inflight
        if task is not None and not task.done():
            logger.info(f"Cancelling in-flight statement on {describe(self)}")
            task.cancel()

    async def close(self) -> None:
        """Close the session. Safe to call multiple times."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            await conn.close(timeout=self.timeout)
            logger.info("PostgreSQL connection closed")
        except (asyncpg.PostgresError, asyncio.TimeoutError, *_BROKEN_CONNECTION_ERRORS) as e:
            logger.warning(f"Error closing connection, terminating: {e}")
            conn.terminate()

    def __repr__(self) -> str:
        return describe(self)
