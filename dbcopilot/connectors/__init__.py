"""
Database Connectors Module

One handle type per engine variant, all satisfying ``EngineHandle``.

Available Variants:
    - postgresql: PostgresHandle (asyncpg)
    - mysql: MySQLHandle (mysql-connector-python)
    - clickhouse: ClickHouseHandle (clickhouse-connect)
    - mongodb: MongoDBHandle (pymongo async client)

Usage:
    from dbcopilot.connectors import open_handle

    handle = open_handle(config, timeout=60)
    await handle.connect()
    result = await handle.execute("SELECT * FROM users", max_rows=1000)
    await handle.close()
"""

from dbcopilot.connectors.base import (
    ColumnInfo,
    ConnectionError,
    ConnectorError,
    EngineFamily,
    EngineHandle,
    EngineVariant,
    QueryError,
    QueryResult,
    QuerySyntaxError,
    SchemaError,
    TableInfo,
)
from dbcopilot.connectors.factory import VARIANTS, get_variant, open_handle, resolve_engine

__all__ = [
    "EngineFamily",
    "EngineHandle",
    "EngineVariant",
    "VARIANTS",
    "get_variant",
    "open_handle",
    "resolve_engine",
    "QueryResult",
    "ColumnInfo",
    "TableInfo",
    "ConnectorError",
    "ConnectionError",
    "QueryError",
    "QuerySyntaxError",
    "SchemaError",
]
