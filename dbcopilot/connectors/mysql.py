"""
MySQL Handle

Async-compatible MySQL handle using mysql-connector-python.

The underlying driver is synchronous, so every call on the session runs in a
worker thread via asyncio.to_thread. A handle owns one server session;
cancellation issues ``KILL QUERY`` for that session from a side connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

try:
    import mysql.connector
    from mysql.connector import Error as MySQLError
except ImportError:  # pragma: no cover - dependency guard
    mysql = None
    MySQLError = Exception

from dbcopilot.connectors.base import (
    ConnectionError,
    QueryError,
    QueryResult,
    SchemaError,
    TableInfo,
    describe,
    group_columns,
)
from dbcopilot.models.database import ConnectionConfig

logger = logging.getLogger(__name__)

_SCHEMA_QUERY = """
    SELECT
        c.table_schema AS table_schema,
        c.table_name AS table_name,
        t.table_type AS table_type,
        c.column_name AS column_name,
        c.column_type AS column_type,
        c.is_nullable AS is_nullable,
        c.column_default AS column_default,
        c.column_key AS column_key
    FROM information_schema.columns c
    JOIN information_schema.tables t
        ON t.table_schema = c.table_schema AND t.table_name = c.table_name
    WHERE c.table_schema = DATABASE()
    ORDER BY c.table_name, c.ordinal_position
"""



class MySQLHandle:
    """Single MySQL session using mysql-connector-python."""

    kind = "mysql"

    def __init__(self, config: ConnectionConfig, timeout: float = 60.0) -> None:
        if mysql is None:
            raise ImportError(
                "mysql-connector-python is not installed. "
                "Install it with: pip install mysql-connector-python"
            )
        self.config = config
        self.timeout = timeout
        self._conn: Any = None
        self._thread_id: int | None = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        """Open the server session."""
        if self._conn is not None:
            return
        try:
            self._conn = await asyncio.to_thread(self._connect_sync)
            self._thread_id = self._conn.connection_id
        except MySQLError as exc:
            logger.error(f"MySQL connection failed: {exc}")
            raise ConnectionError(f"Failed to connect to MySQL: {exc}") from exc
        except OSError as exc:
            logger.error(f"MySQL connection failed: {exc}")
            raise ConnectionError(f"Connection error: {exc}") from exc

    async def execute(self, query: str, *, max_rows: int) -> QueryResult:
        """Execute one statement and return at most ``max_rows + 1`` rows."""
        if self._conn is None:
            raise ConnectionError("Not connected to database. Call connect() first.")

        start_time = time.perf_counter()
        rows, columns, affected = await asyncio.to_thread(self._execute_sync, query, max_rows)
        return QueryResult(
            rows=rows,
            columns=columns,
            affected_rows=affected,
            execution_time_ms=(time.perf_counter() - start_time) * 1000,
        )

    async def get_schema(self, *, max_tables: int) -> list[TableInfo]:
        """Describe tables and views of the session's database through ``information_schema``."""
        if self._conn is None:
            raise ConnectionError("Not connected to database. Call connect() first.")
        rows = await asyncio.to_thread(self._get_schema_sync)
        tables = group_columns(rows, max_tables)
        logger.info(f"Introspected {len(tables)} tables on {describe(self)}")
        return tables

    async def ping(self) -> bool:
        if self._conn is None:
            return False
        try:
            await asyncio.to_thread(self._conn.ping, reconnect=False)
            return True
        except MySQLError as exc:
            logger.debug(f"Ping failed for {describe(self)}: {exc}")
            return False

    async def cancel(self) -> None:
        if self._thread_id is None:
            return
        logger.info(f"Killing in-flight query on {describe(self)}")
        try:
            await asyncio.to_thread(self._kill_sync, self._thread_id)
        except MySQLError as exc:
            logger.warning(f"KILL QUERY failed for {describe(self)}: {exc}")

    async def close(self) -> None:
        """Close the session. Safe to call multiple times."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        self._thread_id = None
        try:
            await asyncio.to_thread(conn.close)
        except MySQLError as exc:
            logger.warning(f"Error closing MySQL connection: {exc}")

    def _connection_kwargs(self) -> dict[str, Any]:
        return {
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database or None,
            "user": self.config.username or "root",
            "password": self.config.secret(),
            "autocommit": True,
            "consume_results": True,
            "connection_timeout": int(self.timeout),
        }

    def _connect_sync(self) -> Any:
        return mysql.connector.connect(**self._connection_kwargs())

    def _execute_sync(
        self, query: str, max_rows: int
    ) -> tuple[list[dict[str, Any]], list[str], int | None]:
        cursor = self._conn.cursor(dictionary=True)
        try:
            cursor.execute(query)
            if cursor.with_rows:
                rows = cursor.fetchmany(max_rows + 1)
                columns = [col[0] for col in cursor.description or []]
                return rows, columns, None
            affected = cursor.rowcount if cursor.rowcount is not None and cursor.rowcount >= 0 else None
            return [], [], affected
        except MySQLError as exc:
            if not self._conn.is_connected():
                logger.error(f"MySQL session lost during query: {exc}")
                raise ConnectionError(f"Connection lost: {exc}") from exc
            logger.warning(f"MySQL query failed: {exc}\nQuery: {query[:200]}...")
            raise QueryError(str(exc)) from exc
        finally:
            cursor.close()

    def _get_schema_sync(self) -> list[dict[str, Any]]:
        cursor = self._conn.cursor(dictionary=True)
        try:
            cursor.execute(_SCHEMA_QUERY)
            return [
                {
                    "schema": row["table_schema"],
                    "table": row["table_name"],
                    "table_type": "view" if row["table_type"] == "VIEW" else "table",
                    "column": row["column_name"],
                    "data_type": row["column_type"],
                    "is_nullable": row["is_nullable"] == "YES",
                    "default": row["column_default"],
                    "is_primary_key": row["column_key"] == "PRI",
                }
                for row in cursor.fetchall()
            ]
        except MySQLError as exc:
            if not self._conn.is_connected():
                raise ConnectionError(f"Connection lost: {exc}") from exc
            logger.error(f"Schema introspection failed: {exc}")
            raise SchemaError(f"Failed to introspect schema: {exc}") from exc
        finally:
            cursor.close()

    def _kill_sync(self, thread_id: int) -> None:
        conn = mysql.connector.connect(**self._connection_kwargs())
        cursor = conn.cursor()
        try:
            cursor.execute(f"KILL QUERY {int(thread_id)}")
        finally:
            cursor.close()
            conn.close()

    def __repr__(self) -> str:
        return describe(self)
