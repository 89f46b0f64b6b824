"""Engine variant registry for supported database kinds."""

from __future__ import annotations

from dbcopilot.connectors.base import EngineFamily, EngineHandle, EngineVariant
from dbcopilot.connectors.clickhouse import ClickHouseHandle
from dbcopilot.connectors.mongo_query import classify_mongo
from dbcopilot.connectors.mongodb import MongoDBHandle
from dbcopilot.connectors.mysql import MySQLHandle
from dbcopilot.connectors.postgres import PostgresHandle
from dbcopilot.connectors.sql_classifier import classify_sql
from dbcopilot.models.database import ConnectionConfig

VARIANTS: dict[str, EngineVariant] = {
    "postgresql": EngineVariant(
        kind="postgresql",
        family=EngineFamily.SQL,
        open_handle=PostgresHandle,
        classify=classify_sql,
    ),
    "mysql": EngineVariant(
        kind="mysql",
        family=EngineFamily.SQL,
        open_handle=MySQLHandle,
        classify=classify_sql,
    ),
    "clickhouse": EngineVariant(
        kind="clickhouse",
        family=EngineFamily.SQL,
        open_handle=ClickHouseHandle,
        classify=classify_sql,
    ),
    "mongodb": EngineVariant(
        kind="mongodb",
        family=EngineFamily.DOCUMENT_STORE,
        open_handle=MongoDBHandle,
        classify=classify_mongo,
    ),
}

_ALIASES = {"postgres": "postgresql", "mongo": "mongodb"}


def resolve_engine(engine: str) -> str:
    """Normalise an engine name, accepting common aliases."""
    value = (engine or "").strip().lower()
    value = _ALIASES.get(value, value)
    if value not in VARIANTS:
        raise ValueError(f"Unsupported database type: {engine}")
    return value


def get_variant(engine: str) -> EngineVariant:
    return VARIANTS[resolve_engine(engine)]


def open_handle(config: ConnectionConfig, timeout: float = 60.0) -> EngineHandle:
    """Create an unconnected handle for ``config.engine``."""
    return get_variant(config.engine).open_handle(config, timeout)
