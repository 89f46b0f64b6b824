"""
Pytest configuration and shared fixtures.

This module provides fixtures and configuration used across all tests.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

import pytest
from cryptography.fernet import Fernet

from dbcopilot.config import GatewaySettings, PoolSettings, SchemaSettings, StreamSettings
from dbcopilot.connectors import ColumnInfo, QueryResult, TableInfo
from dbcopilot.gateway import QueryGateway
from dbcopilot.models.chat import Chat
from dbcopilot.models.database import Connection, ConnectionConfig
from dbcopilot.pool import ConnectionPoolManager, CredentialVault, VaultResolver
from dbcopilot.store import InMemoryChatRepository
from dbcopilot.streaming import (
    AIChunk,
    DeliveryHub,
    ResponseOrchestrator,
    SchemaCatalog,
    StreamSessionRegistry,
)

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires live databases)",
    )


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (may require external services)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly enabled."""
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(
        reason="Integration tests disabled (use --run-integration to enable)."
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(autouse=True)
def configure_test_logging(caplog):
    """Capture DEBUG logs for every test."""
    caplog.set_level(logging.DEBUG)
    yield


# ============================================================================
# Environment and Configuration
# ============================================================================


@pytest.fixture(autouse=True)
def mock_openai_api_key(monkeypatch):
    """
    Mock OpenAI API key so settings load without real credentials.

    Runs automatically for all tests.
    """
    from dbcopilot.config import get_settings

    get_settings.cache_clear()
    test_key = "sk-test-key-1234567890-abcdefghijklmnop"  # 20+ chars
    monkeypatch.setenv("LLM_OPENAI_API_KEY", test_key)
    monkeypatch.setenv("DBCOPILOT_ENV_SOURCE", "environment")
    yield test_key
    get_settings.cache_clear()


@pytest.fixture
def stream_settings() -> StreamSettings:
    return StreamSettings(chunk_timeout=2.0, terminal_grace_seconds=5.0, buffer_size=64)


@pytest.fixture
def pool_settings() -> PoolSettings:
    return PoolSettings(
        max_handles_per_connection=2,
        acquire_timeout=0.5,
        connect_timeout=1.0,
        idle_ttl=120.0,
        health_check_interval=60.0,
    )


@pytest.fixture
def gateway_settings() -> GatewaySettings:
    return GatewaySettings(execution_timeout=1.0, max_rows=100, max_bytes=100_000)


@pytest.fixture
def schema_settings() -> SchemaSettings:
    return SchemaSettings(cache_ttl=60.0, timeout=0.5, max_tables=50)


# ============================================================================
# Fake Engine Handle
# ============================================================================


class FakeHandle:
    """In-memory EngineHandle returning canned results."""

    def __init__(
        self,
        kind: str = "postgresql",
        result: QueryResult | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.kind = kind
        self.result = result or QueryResult(
            rows=[{"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"}],
            columns=["id", "name"],
            execution_time_ms=1.5,
        )
        self.delay = delay
        self.error = error
        self.executed: list[str] = []
        self.connected = False
        self.cancelled = 0
        self.closed = False
        self.healthy = True
        self.tables = [
            TableInfo(
                schema_name="public",
                table_name="users",
                columns=[
                    ColumnInfo(
                        name="id", data_type="integer", is_nullable=False, is_primary_key=True
                    ),
                    ColumnInfo(name="name", data_type="text"),
                ],
            )
        ]
        self.schema_error: Exception | None = None
        self.schema_calls = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connected = True

    async def execute(self, query: str, *, max_rows: int) -> QueryResult:
        self.executed.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result

    async def get_schema(self, *, max_tables: int) -> list[TableInfo]:
        self.schema_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.schema_error is not None:
            raise self.schema_error
        return self.tables[:max_tables]

    async def ping(self) -> bool:
        return self.healthy

    async def cancel(self) -> None:
        self.cancelled += 1

    async def close(self) -> None:
        self.connected = False
        self.closed = True


@pytest.fixture
def fake_handle() -> FakeHandle:
    return FakeHandle()


@pytest.fixture
def handle_factory(fake_handle) -> Callable[[ConnectionConfig, float], FakeHandle]:
    """Factory handing out ``fake_handle`` on every dial, recording configs."""

    def _factory(config: ConnectionConfig, timeout: float) -> FakeHandle:
        _factory.configs.append(config)
        fake_handle.kind = config.engine
        return fake_handle

    _factory.configs = []
    return _factory


# ============================================================================
# Records
# ============================================================================


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(Fernet.generate_key().decode())


@pytest.fixture
def repository() -> InMemoryChatRepository:
    return InMemoryChatRepository()


@pytest.fixture
async def connection(repository, vault) -> Connection:
    record = Connection(
        owner_id="user-1",
        engine="postgresql",
        host="db.internal",
        database="shop",
        username="copilot",
        credentials_ref=vault.seal("s3cret"),
    )
    await repository.add_connection(record)
    return record


@pytest.fixture
async def chat(repository, connection) -> Chat:
    record = Chat(owner_id="user-1", connection_id=connection.connection_id)
    await repository.add_chat(record)
    return record


@pytest.fixture
async def auto_chat(repository, connection) -> Chat:
    record = Chat(
        owner_id="user-1", connection_id=connection.connection_id, auto_execute=True
    )
    await repository.add_chat(record)
    return record


# ============================================================================
# Components
# ============================================================================


@pytest.fixture
async def pool(repository, vault, pool_settings, handle_factory):
    manager = ConnectionPoolManager(
        VaultResolver(repository, vault),
        pool_settings,
        handle_timeout=1.0,
        handle_factory=handle_factory,
    )
    yield manager
    await manager.close()


@pytest.fixture
def gateway(gateway_settings) -> QueryGateway:
    return QueryGateway(gateway_settings)


@pytest.fixture
def registry(stream_settings) -> StreamSessionRegistry:
    return StreamSessionRegistry(stream_settings)


@pytest.fixture
def hub(stream_settings) -> DeliveryHub:
    return DeliveryHub(stream_settings)


@pytest.fixture
def schema_catalog(pool, schema_settings) -> SchemaCatalog:
    return SchemaCatalog(pool, schema_settings)


class ScriptedChunkSource:
    """
    Chunk source replaying a fixed script.

    After the script is exhausted it either ends the stream or, with
    ``hold=True``, waits until ``release`` is set.
    """

    def __init__(self, chunks: list[AIChunk] | None = None, hold: bool = False):
        self.script = list(chunks or [])
        self.hold = hold
        self.release = asyncio.Event()
        self.error: Exception | None = None
        self.requests = []

    async def chunks(self, request) -> AsyncIterator[AIChunk]:
        self.requests.append(request)
        for chunk in self.script:
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hold:
            await self.release.wait()


@pytest.fixture
def chunk_source() -> ScriptedChunkSource:
    return ScriptedChunkSource()


@pytest.fixture
def make_orchestrator(repository, pool, gateway, registry, hub, stream_settings):
    """Build an orchestrator over the shared components with its own script."""

    def _make(chunks=None, hold=False, settings=None, schema_catalog=None, repo=None):
        source = ScriptedChunkSource(chunks, hold=hold)
        orchestrator = ResponseOrchestrator(
            repository=repo or repository,
            pool=pool,
            gateway=gateway,
            registry=registry,
            hub=hub,
            chunk_source=source,
            settings=settings or stream_settings,
            schema_catalog=schema_catalog,
        )
        return orchestrator, source

    return _make


@pytest.fixture
def orchestrator(repository, pool, gateway, registry, hub, chunk_source, stream_settings):
    return ResponseOrchestrator(
        repository=repository,
        pool=pool,
        gateway=gateway,
        registry=registry,
        hub=hub,
        chunk_source=chunk_source,
        settings=stream_settings,
    )


@pytest.fixture
def make_handle() -> type[FakeHandle]:
    return FakeHandle
