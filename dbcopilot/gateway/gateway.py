"""
Query Execution Gateway

Uniform execution contract over every engine variant: classification,
permission checks, timeout with best-effort cancellation, result capping and
error mapping into the copilot taxonomy.

Usage:
    gateway = QueryGateway(settings.gateway)
    classification = gateway.classify("postgresql", "SELECT * FROM orders")

    async with pool.lease(connection_id) as handle:
        result = await gateway.execute(
            handle, "SELECT * FROM orders", classification, trigger=ExecutionTrigger.AUTO
        )
"""

import asyncio
import base64
import json
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from dbcopilot.config import GatewaySettings
from dbcopilot.connectors import (
    ConnectionError,
    EngineHandle,
    QueryError,
    QueryResult,
    QuerySyntaxError,
    get_variant,
)
from dbcopilot.errors import EngineError, EngineTimeout, PermissionDenied, SyntaxRejected
from dbcopilot.models.execution import ExecutionResult, ExecutionTrigger, QueryClassification

logger = logging.getLogger(__name__)


_PASSTHROUGH = (str, int, float, bool, Decimal, datetime, date, time, timedelta, UUID)


def to_cell(value: Any) -> Any:
    """
    Normalise one driver value into something the result models can serialise.

    Binary values become base64 text, containers are walked, and any other
    driver-specific type (IP addresses, BSON wrappers, ...) becomes its string
    form.
    """
    if value is None or isinstance(value, _PASSTHROUGH):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {str(key): to_cell(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_cell(item) for item in value]
    return str(value)


def _consume_result(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned execution finished with: {task.exception()}")


class QueryGateway:
    """Executes classified queries against leased engine handles."""

    def __init__(self, settings: GatewaySettings | None = None):
        self.settings = settings or GatewaySettings()

    def classify(self, engine: str, query: str) -> QueryClassification:
        """
        Classify ``query`` for ``engine`` as read or write.

        Text that cannot be parsed is classified as write so it is never
        auto-executed; ``execute`` reports the syntax problem itself.
        """
        try:
            return get_variant(engine).classify(query)
        except QuerySyntaxError as exc:
            logger.debug(f"Unparseable {engine} query classified as write: {exc}")
            return QueryClassification.WRITE

    async def execute(
        self,
        handle: EngineHandle,
        query: str,
        classification: QueryClassification,
        *,
        trigger: ExecutionTrigger,
        read_only: bool = False,
    ) -> ExecutionResult:
        """
        Execute one query on a leased handle.

        Args:
            handle: Connected engine handle
            query: Query text in the engine's language
            classification: Caller's classification; the stricter of this and
                the gateway's own classification applies
            trigger: Who requested the execution
            read_only: Reject writes regardless of trigger (visualizations)

        Raises:
            SyntaxRejected: Empty query or engine-specific parse failure
            PermissionDenied: Write requested by auto trigger or read-only caller
            EngineTimeout: Execution exceeded ``execution_timeout``
            EngineError: Engine-native failure (message verbatim)
        """
        if not query or not query.strip():
            raise SyntaxRejected("Query is empty")

        try:
            detected = get_variant(handle.kind).classify(query)
        except QuerySyntaxError as exc:
            raise SyntaxRejected(str(exc)) from exc

        if QueryClassification.WRITE in (detected, classification):
            if trigger == ExecutionTrigger.AUTO:
                raise PermissionDenied(
                    "Mutating statements are never auto-executed; confirm it explicitly"
                )
            if read_only:
                raise PermissionDenied("Only read-only statements are allowed here")

        task = asyncio.create_task(handle.execute(query, max_rows=self.settings.max_rows))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.settings.execution_timeout)
        except asyncio.CancelledError:
            await self._abandon(handle, task)
            raise

        if not done:
            await self._abandon(handle, task)
            logger.warning(
                f"{handle.kind} query timed out after {self.settings.execution_timeout}s",
                extra={"engine": handle.kind, "trigger": trigger.value},
            )
            raise EngineTimeout(
                f"Query did not finish within {self.settings.execution_timeout}s"
            )

        try:
            raw = task.result()
        except QuerySyntaxError as exc:
            raise SyntaxRejected(str(exc)) from exc
        except ConnectionError as exc:
            raise EngineError(str(exc), connection_broken=True) from exc
        except QueryError as exc:
            raise EngineError(str(exc)) from exc

        result = self._cap(raw)
        logger.info(
            f"Executed {handle.kind} query ({trigger.value}): {result.row_count} rows "
            f"in {result.execution_time_ms:.1f}ms" + (" [truncated]" if result.truncated else ""),
            extra={"engine": handle.kind, "trigger": trigger.value},
        )
        return result

    async def _abandon(self, handle: EngineHandle, task: asyncio.Task) -> None:
        """Ask the engine to stop, then drop the local task."""
        try:
            await handle.cancel()
        except Exception as exc:
            logger.warning(f"Best-effort cancel failed on {handle!r}: {exc}")
        task.cancel()
        task.add_done_callback(_consume_result)

    def _cap(self, raw: QueryResult) -> ExecutionResult:
        rows = raw.rows
        truncated = len(rows) > self.settings.max_rows
        rows = [
            {str(column): to_cell(value) for column, value in row.items()}
            for row in rows[: self.settings.max_rows]
        ]

        budget = self.settings.max_bytes
        kept = 0
        for row in rows:
            budget -= len(json.dumps(row, default=str))
            if budget < 0:
                truncated = True
                break
            kept += 1
        rows = rows[:kept]

        return ExecutionResult(
            columns=raw.columns,
            rows=rows,
            row_count=len(rows),
            affected_rows=raw.affected_rows,
            execution_time_ms=raw.execution_time_ms,
            truncated=truncated,
        )
