"""
Unit tests for PostgresHandle.

Tests the PostgreSQL handle with a mocked asyncpg connection.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import asyncpg
import pytest

from dbcopilot.connectors.base import ConnectionError, QueryError, SchemaError
from dbcopilot.connectors.postgres import PostgresHandle, parse_status_count
from dbcopilot.models.database import ConnectionConfig


@pytest.fixture
def postgres_config():
    """PostgreSQL dial parameters."""
    return ConnectionConfig(
        engine="postgresql",
        host="localhost",
        port=5432,
        database="testdb",
        username="testuser",
        password="testpass",
    )


def _statement(columns=None, records=None, status="SELECT 0"):
    statement = Mock()
    statement.get_attributes.return_value = [SimpleNamespace(name=c) for c in columns or []]
    statement.get_statusmsg.return_value = status
    statement.fetch = AsyncMock(return_value=[])
    cursor = Mock()
    cursor.fetch = AsyncMock(return_value=records or [])
    statement.cursor = AsyncMock(return_value=cursor)
    return statement, cursor


@pytest.fixture
def mock_conn():
    """Mock asyncpg connection."""
    conn = Mock()
    conn.is_closed.return_value = False
    conn.prepare = AsyncMock()
    conn.execute = AsyncMock(return_value="DELETE 2")
    conn.fetchval = AsyncMock(return_value=1)
    conn.close = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction.return_value = transaction
    return conn


@pytest.fixture
async def connected(postgres_config, mock_conn):
    with patch("asyncpg.connect", new=AsyncMock(return_value=mock_conn)):
        handle = PostgresHandle(postgres_config, timeout=30)
        await handle.connect()
    return handle


class TestConnection:
    """Test session management."""

    async def test_connect_passes_statement_timeout(self, postgres_config, mock_conn):
        with patch("asyncpg.connect", new=AsyncMock(return_value=mock_conn)) as connect:
            handle = PostgresHandle(postgres_config, timeout=30)
            await handle.connect()
            await handle.connect()

        assert handle.is_connected is True
        assert connect.call_count == 1
        kwargs = connect.call_args.kwargs
        assert kwargs["password"] == "testpass"
        assert kwargs["server_settings"] == {"statement_timeout": "30000"}

    async def test_connect_failure(self, postgres_config):
        with patch(
            "asyncpg.connect",
            new=AsyncMock(side_effect=asyncpg.PostgresError("password authentication failed")),
        ):
            handle = PostgresHandle(postgres_config)

            with pytest.raises(ConnectionError, match="password authentication failed"):
                await handle.connect()

    async def test_execute_requires_connection(self, postgres_config):
        handle = PostgresHandle(postgres_config)

        with pytest.raises(ConnectionError, match="Not connected"):
            await handle.execute("SELECT 1", max_rows=10)

    async def test_close_is_idempotent(self, connected, mock_conn):
        await connected.close()
        await connected.close()

        mock_conn.close.assert_awaited_once()
        assert connected.is_connected is False

    async def test_repr_hides_password(self, connected):
        text = repr(connected)

        assert "testuser@localhost:5432/testdb" in text
        assert "testpass" not in text


class TestExecute:
    """Test statement execution."""

    async def test_select_reads_through_cursor(self, connected, mock_conn):
        records = [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"}]
        statement, cursor = _statement(["id", "name"], records, "SELECT 2")
        mock_conn.prepare.return_value = statement

        result = await connected.execute("SELECT id, name FROM users", max_rows=5)

        assert result.columns == ["id", "name"]
        assert result.rows == records
        cursor.fetch.assert_awaited_once_with(6)

    async def test_dml_reports_affected_rows(self, connected, mock_conn):
        statement, _ = _statement(status="UPDATE 3")
        mock_conn.prepare.return_value = statement

        result = await connected.execute("UPDATE users SET active = true", max_rows=5)

        assert result.rows == []
        assert result.affected_rows == 3

    async def test_multi_statement_uses_simple_protocol(self, connected, mock_conn):
        result = await connected.execute("DELETE FROM a; DELETE FROM b", max_rows=5)

        mock_conn.execute.assert_awaited_once()
        mock_conn.prepare.assert_not_awaited()
        assert result.affected_rows == 2

    async def test_engine_message_is_verbatim(self, connected, mock_conn):
        mock_conn.prepare.side_effect = asyncpg.PostgresError('column "nme" does not exist')

        with pytest.raises(QueryError) as exc_info:
            await connected.execute("SELECT nme FROM users", max_rows=5)
        assert str(exc_info.value) == 'column "nme" does not exist'

    async def test_lost_session_raises_connection_error(self, connected, mock_conn):
        mock_conn.prepare.side_effect = asyncpg.exceptions.ConnectionDoesNotExistError(
            "connection was closed in the middle of operation"
        )

        with pytest.raises(ConnectionError):
            await connected.execute("SELECT 1", max_rows=5)

    async def test_cancel_interrupts_running_statement(self, connected, mock_conn):
        started = asyncio.Event()

        async def slow_prepare(query):
            started.set()
            await asyncio.sleep(10)

        mock_conn.prepare.side_effect = slow_prepare
        task = asyncio.create_task(connected.execute("SELECT pg_sleep(10)", max_rows=5))
        await started.wait()

        await connected.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestPing:
    async def test_ping_ok(self, connected):
        assert await connected.ping() is True

    async def test_ping_failure(self, connected, mock_conn):
        mock_conn.fetchval.side_effect = OSError("broken pipe")

        assert await connected.ping() is False



def _column(table, column, data_type="integer", **extra):
    return {"schema": "public", "table": table, "column": column, "data_type": data_type, **extra}


class TestSchema:
    """Test introspection through information_schema."""

    async def test_columns_grouped_per_table(self, connected, mock_conn):
        mock_conn.fetch = AsyncMock(
            return_value=[
                _column("orders", "id", is_nullable=False, is_primary_key=True),
                _column("orders", "total", "numeric", default="0"),
                _column("users", "name", "text", table_type="view"),
            ]
        )

        tables = await connected.get_schema(max_tables=10)

        assert [t.full_name for t in tables] == ["public.orders", "public.users"]
        assert [c.name for c in tables[0].columns] == ["id", "total"]
        assert tables[0].columns[0].is_primary_key is True
        assert tables[0].columns[0].is_nullable is False
        assert tables[0].columns[1].default_value == "0"
        assert tables[1].table_type == "view"

    async def test_max_tables_respected(self, connected, mock_conn):
        mock_conn.fetch = AsyncMock(return_value=[_column(f"t{i}", "id") for i in range(5)])

        tables = await connected.get_schema(max_tables=2)

        assert [t.table_name for t in tables] == ["t0", "t1"]

    async def test_failure_is_schema_error(self, connected, mock_conn):
        mock_conn.fetch = AsyncMock(side_effect=asyncpg.PostgresError("permission denied"))

        with pytest.raises(SchemaError, match="permission denied"):
            await connected.get_schema(max_tables=10)


@pytest.mark.parametrize(
    ("status", "expected"),
    [("DELETE 3", 3), ("INSERT 0 1", 1), ("CREATE TABLE", None), (None, None)],
)
def test_parse_status_count(status, expected):
    assert parse_status_count(status) == expected
