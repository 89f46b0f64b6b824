"""
Engine Handle Contract

Every supported database engine is described by an ``EngineVariant``: a
capability set bundling how to open a handle for that engine and how to
classify its query text as read or write. Variants are plain values
registered in ``dbcopilot.connectors.factory``; handles do not share a base
class, they only satisfy the ``EngineHandle`` protocol.

A handle wraps exactly one live session with the external database. Pooling
is done by ``dbcopilot.pool.ConnectionPoolManager``, not by handles.

All handles must implement:
- connect(): Dial the database (idempotent)
- execute(): Run one statement, returning at most ``max_rows + 1`` rows
- get_schema(): Describe tables (or collections) and their columns
- ping(): Lightweight liveness check
- cancel(): Best-effort cancellation of the in-flight statement
- close(): Release the session (idempotent)
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from dbcopilot.models.database import ConnectionConfig, EngineKind
from dbcopilot.models.execution import QueryClassification

logger = logging.getLogger(__name__)


# ============================================================================
# Data Models
# ============================================================================


class QueryResult(BaseModel):
    """Raw result from one handle execution, before gateway capping."""

    rows: list[dict[str, Any]] = Field(default_factory=list, description="Result rows")
    columns: list[str] = Field(default_factory=list, description="Column names")
    affected_rows: int | None = Field(None, description="Rows affected by DML, if reported")
    execution_time_ms: float = Field(default=0.0, description="Execution time in ms")

    @property
    def row_count(self) -> int:
        return len(self.rows)


class ColumnInfo(BaseModel):
    """Column (or document field) description."""

    name: str = Field(..., description="Column name")
    data_type: str = Field(..., description="Engine-native data type")
    is_nullable: bool = Field(default=True, description="Whether column allows NULL")
    default_value: str | None = Field(None, description="Default value expression")
    is_primary_key: bool = Field(default=False, description="Part of the primary key")


class TableInfo(BaseModel):
    """Table, view or collection description."""

    schema_name: str | None = Field(None, description="Schema or database name", alias="schema")
    table_name: str = Field(..., description="Table or collection name")
    columns: list[ColumnInfo] = Field(default_factory=list, description="Columns in table order")
    table_type: str = Field(default="table", description="table, view or collection")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def full_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}" if self.schema_name else self.table_name


def group_columns(rows: Iterable[dict[str, Any]], max_tables: int) -> list[TableInfo]:
    """
    Fold one-row-per-column introspection output into TableInfo records.

    Rows must be ordered by table and carry ``schema``, ``table``, ``column``,
    ``data_type`` and optionally ``table_type``, ``is_nullable``, ``default``
    and ``is_primary_key``. At most ``max_tables`` tables are returned.
    """
    tables: dict[tuple[str | None, str], TableInfo] = {}
    for row in rows:
        key = (row.get("schema"), row["table"])
        table = tables.get(key)
        if table is None:
            if len(tables) >= max_tables:
                break
            table = TableInfo(
                schema_name=row.get("schema"),
                table_name=row["table"],
                table_type=row.get("table_type") or "table",
            )
            tables[key] = table
        table.columns.append(
            ColumnInfo(
                name=row["column"],
                data_type=str(row["data_type"]),
                is_nullable=bool(row.get("is_nullable", True)),
                default_value=(
                    str(row["default"]) if row.get("default") not in (None, "") else None
                ),
                is_primary_key=bool(row.get("is_primary_key", False)),
            )
        )
    return list(tables.values())


class ConnectorError(Exception):
    """Base exception for connector errors."""

    pass


class ConnectionError(ConnectorError):
    """Error establishing the session, or the session broke mid-use."""

    pass


class QueryError(ConnectorError):
    """Engine rejected or failed the statement. Message is the engine's text."""

    pass


class QuerySyntaxError(QueryError):
    """Statement could not be parsed for this engine before reaching it."""

    pass


class SchemaError(ConnectorError):
    """Schema introspection failed."""

    pass



# ============================================================================
# Capability Set
# ============================================================================


class EngineFamily(str, Enum):
    SQL = "sql"
    DOCUMENT_STORE = "document_store"


@runtime_checkable
class EngineHandle(Protocol):
    """One live session with an external database."""

    kind: EngineKind

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def execute(self, query: str, *, max_rows: int) -> QueryResult: ...

    async def get_schema(self, *, max_tables: int) -> list[TableInfo]: ...

    async def ping(self) -> bool: ...

    async def cancel(self) -> None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class EngineVariant:
    """
    Capability set for one engine kind.

    Attributes:
        kind: Engine identifier (postgresql, mysql, ...)
        family: SQL or document store
        open_handle: Builds an unconnected handle from decrypted config
        classify: Classifies query text for this engine as read or write
    """

    kind: EngineKind
    family: EngineFamily
    open_handle: Callable[[ConnectionConfig, float], EngineHandle]
    classify: Callable[[str], QueryClassification]


def describe(handle: Any) -> str:
    """Credential-free handle description for logs."""
    status = "connected" if getattr(handle, "is_connected", False) else "disconnected"
    config: ConnectionConfig | None = getattr(handle, "config", None)
    if config is None:
        return f"<{handle.__class__.__name__} ({status})>"
    user = f"{config.username}@" if config.username else ""
    return (
        f"<{handle.__class__.__name__} {user}{config.host}:{config.port}/"
        f"{config.database} ({status})>"
    )
