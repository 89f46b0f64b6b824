"""
Schema Context

Introspects a Connection's tables (or collections) through a leased handle
and renders them as compact text for the AI prompt.

Snapshots are cached per Connection for ``cache_ttl`` seconds. Concurrent
requests for the same Connection share one introspection; different
Connections never wait on each other.

Usage:
    catalog = SchemaCatalog(pool, settings.schema_context)
    text = await catalog.context_for(connection_id)       # None on failure
    snapshot = await catalog.get(connection_id, refresh=True)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime

from dbcopilot.config import SchemaSettings
from dbcopilot.connectors import ConnectionError, ConnectorError, TableInfo
from dbcopilot.errors import CopilotError, EngineError, EngineTimeout
from dbcopilot.pool import ConnectionPoolManager

logger = logging.getLogger(__name__)


@dataclass
class SchemaSnapshot:
    """Introspected tables of one Connection at a point in time."""

    connection_id: str
    tables: list[TableInfo]
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    loaded_at: float = field(default_factory=time.monotonic)

    def render(self) -> str:
        """One line per table: ``name (type): column type [PK] [NOT NULL], ...``."""
        if not self.tables:
            return "(no tables found)"
        lines = []
        for table in self.tables:
            columns = ", ".join(
                " ".join(
                    part
                    for part in (
                        column.name,
                        column.data_type,
                        "PK" if column.is_primary_key else "",
                        "" if column.is_nullable else "NOT NULL",
                    )
                    if part
                )
                for column in table.columns
            )
            lines.append(f"{table.full_name} ({table.table_type}): {columns or '-'}")
        return "\n".join(lines)


class SchemaCatalog:
    """Per-Connection cache of introspected schemas."""

    def __init__(self, pool: ConnectionPoolManager, settings: SchemaSettings | None = None):
        self.pool = pool
        self.settings = settings or SchemaSettings()
        self._snapshots: dict[str, SchemaSnapshot] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, connection_id: str, *, refresh: bool = False) -> SchemaSnapshot:
        """
        Cached snapshot for ``connection_id``, introspecting when stale or asked to.

        Raises:
            PoolExhausted: No handle became available
            ConnectFailed: Dialing the database failed
            EngineTimeout: Introspection exceeded ``timeout``
            EngineError: The engine rejected the introspection queries
        """
        async with self._locks[connection_id]:
            cached = self._snapshots.get(connection_id)
            if cached is not None and not refresh and not self._expired(cached):
                return cached
            snapshot = await self._introspect(connection_id)
            self._snapshots[connection_id] = snapshot
            return snapshot

    async def context_for(self, connection_id: str) -> str | None:
        """Rendered schema for the AI prompt, or None when disabled or unavailable."""
        if not self.settings.enabled:
            return None
        try:
            snapshot = await self.get(connection_id)
        except CopilotError as exc:
            logger.warning(
                f"Continuing without schema for connection {connection_id} "
                f"({exc.code}): {exc.message}",
                extra={"connection_id": connection_id},
            )
            return None
        return snapshot.render()

    def invalidate(self, connection_id: str) -> None:
        self._snapshots.pop(connection_id, None)

    def _expired(self, snapshot: SchemaSnapshot) -> bool:
        return time.monotonic() - snapshot.loaded_at >= self.settings.cache_ttl

    async def _introspect(self, connection_id: str) -> SchemaSnapshot:
        start_time = time.perf_counter()
        async with self.pool.lease(connection_id) as handle:
            try:
                tables = await asyncio.wait_for(
                    handle.get_schema(max_tables=self.settings.max_tables),
                    timeout=self.settings.timeout,
                )
            except asyncio.TimeoutError as exc:
                raise EngineTimeout(
                    f"Schema introspection did not finish within {self.settings.timeout}s",
                    context={"connection_id": connection_id},
                ) from exc
            except ConnectionError as exc:
                raise EngineError(str(exc), connection_broken=True) from exc
            except ConnectorError as exc:
                raise EngineError(str(exc)) from exc

        logger.info(
            f"Loaded schema for connection {connection_id}: {len(tables)} tables "
            f"in {(time.perf_counter() - start_time) * 1000:.1f}ms",
            extra={"connection_id": connection_id},
        )
        return SchemaSnapshot(connection_id=connection_id, tables=tables)
