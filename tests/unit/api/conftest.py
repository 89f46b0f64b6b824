"""Fixtures for API route tests: real components behind the FastAPI app."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from dbcopilot.api.main import app, app_state
from dbcopilot.gateway import QueryGateway
from dbcopilot.llm.models import LLMStreamChunk, LLMToolCall
from dbcopilot.pool import ConnectionPoolManager, VaultResolver
from dbcopilot.streaming import (
    AIChunkSource,
    DeliveryHub,
    ResponseOrchestrator,
    SchemaCatalog,
    StreamSessionRegistry,
)


class ScriptedProvider:
    """LLM provider replaying fixed chunks, optionally holding the stream open."""

    def __init__(self, pieces, hold=False):
        self.pieces = pieces
        self.hold = hold
        self.release = asyncio.Event()
        self.closed = False

    async def stream(self, request):
        for piece in self.pieces:
            yield piece
        if self.hold:
            await self.release.wait()

    async def close(self):
        self.closed = True


def proposal_script(query="SELECT id, name FROM users"):
    return [
        LLMStreamChunk(content="Here is a query. "),
        LLMStreamChunk(
            tool_call=LLMToolCall(
                name="propose_query", arguments={"query": query, "explanation": "Lists users"}
            )
        ),
        LLMStreamChunk(finish_reason="stop"),
    ]


@pytest.fixture
def provider():
    return ScriptedProvider(proposal_script())


@pytest.fixture
def components(
    repository,
    vault,
    handle_factory,
    provider,
    stream_settings,
    pool_settings,
    gateway_settings,
    schema_settings,
):
    pool = ConnectionPoolManager(
        VaultResolver(repository, vault), pool_settings, handle_factory=handle_factory
    )
    gateway = QueryGateway(gateway_settings)
    registry = StreamSessionRegistry(stream_settings)
    hub = DeliveryHub(stream_settings)
    schema_catalog = SchemaCatalog(pool, schema_settings)
    orchestrator = ResponseOrchestrator(
        repository=repository,
        pool=pool,
        gateway=gateway,
        registry=registry,
        hub=hub,
        chunk_source=AIChunkSource(provider) if provider is not None else None,
        settings=stream_settings,
        schema_catalog=schema_catalog,
    )
    return {
        "repository": repository,
        "vault": vault,
        "pool": pool,
        "gateway": gateway,
        "registry": registry,
        "hub": hub,
        "schema_catalog": schema_catalog,
        "provider": provider,
        "orchestrator": orchestrator,
    }


@pytest.fixture
def client(monkeypatch, components):
    """TestClient running the app lifespan over the test components."""
    original = app_state.copy()
    monkeypatch.setattr("dbcopilot.api.main.build_components", lambda settings: components)
    with TestClient(app) as test_client:
        yield test_client
    app_state.clear()
    app_state.update(original)


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def proposal_chunks():
    return proposal_script
