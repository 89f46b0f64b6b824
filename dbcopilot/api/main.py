"""
FastAPI Application

Main FastAPI application for the database copilot with:
- Lifespan management for the pool, registry, delivery hub and orchestrator
- CORS middleware for frontend integration
- Global exception handlers mapping copilot errors to HTTP responses
- Chat streaming, visualization and health endpoints

Usage:
    uvicorn dbcopilot.api.main:app --reload --port 8000
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dbcopilot import __version__
from dbcopilot.api.routes import chats, health, visualizations
from dbcopilot.config import Settings, get_settings
from dbcopilot.errors import CopilotError
from dbcopilot.gateway import QueryGateway
from dbcopilot.llm import LLMProviderFactory
from dbcopilot.pool import ConnectionPoolManager, CredentialVault, VaultResolver
from dbcopilot.store import InMemoryChatRepository
from dbcopilot.streaming import (
    AIChunkSource,
    DeliveryHub,
    ResponseOrchestrator,
    SchemaCatalog,
    StreamSessionRegistry,
)

logger = logging.getLogger(__name__)

# Global state for shared components
app_state: dict[str, Any] = {
    "repository": None,
    "vault": None,
    "pool": None,
    "gateway": None,
    "registry": None,
    "hub": None,
    "schema_catalog": None,
    "provider": None,
    "orchestrator": None,
}

ERROR_STATUS: dict[str, int] = {
    "chat_not_found": status.HTTP_404_NOT_FOUND,
    "proposal_not_found": status.HTTP_404_NOT_FOUND,
    "connection_not_found": status.HTTP_404_NOT_FOUND,
    "already_streaming": status.HTTP_409_CONFLICT,
    "no_active_stream": status.HTTP_409_CONFLICT,
    "invalid_proposal_transition": status.HTTP_409_CONFLICT,
    "connection_in_use": status.HTTP_409_CONFLICT,
    "no_active_execution": status.HTTP_409_CONFLICT,
    "rollback_unavailable": status.HTTP_409_CONFLICT,
    "execution_cancelled": status.HTTP_409_CONFLICT,
    "backlog_unavailable": status.HTTP_410_GONE,
    "permission_denied": status.HTTP_403_FORBIDDEN,
    "syntax_rejected": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "engine_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "pool_exhausted": status.HTTP_503_SERVICE_UNAVAILABLE,
    "connect_failed": status.HTTP_502_BAD_GATEWAY,
    "engine_timeout": status.HTTP_504_GATEWAY_TIMEOUT,
    "ai_service_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def build_components(settings: Settings) -> dict[str, Any]:
    """
    Wire the shared components from settings.

    The AI provider is optional: without one, posting a message answers 503
    while proposal execution and visualizations keep working.
    """
    repository = InMemoryChatRepository()
    vault = CredentialVault(settings.database_credentials_key)
    pool = ConnectionPoolManager(
        VaultResolver(repository, vault),
        settings.pool,
        handle_timeout=settings.gateway.execution_timeout,
    )
    gateway = QueryGateway(settings.gateway)
    registry = StreamSessionRegistry(settings.stream)
    hub = DeliveryHub(settings.stream)
    schema_catalog = SchemaCatalog(pool, settings.schema_context)

    try:
        provider = LLMProviderFactory.create_default_provider(settings.llm)
    except ValueError as e:
        logger.warning(f"AI provider not configured; streaming disabled: {e}")
        provider = None

    orchestrator = ResponseOrchestrator(
        repository=repository,
        pool=pool,
        gateway=gateway,
        registry=registry,
        hub=hub,
        chunk_source=AIChunkSource(provider) if provider is not None else None,
        settings=settings.stream,
        history_limit=settings.llm.history_limit,
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


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan context manager for startup and shutdown.

    Initializes:
    - Chat repository and credential vault
    - Connection pool (with health-check ticker)
    - Query gateway, stream registry, delivery hub and schema catalog
    - AI provider and response orchestrator
    """
    config = get_settings()
    logger.info(f"Starting {config.app_name} API server...")

    try:
        app_state.update(build_components(config))
        await app_state["pool"].start()
        logger.info(f"{config.app_name} API server started successfully")

        yield  # Application runs here

    finally:
        logger.info(f"Shutting down {config.app_name} API server...")

        if app_state["orchestrator"]:
            try:
                await app_state["orchestrator"].close()
            except Exception as e:
                logger.error(f"Error closing orchestrator: {e}")

        if app_state["hub"]:
            await app_state["hub"].close()

        if app_state["pool"]:
            try:
                await app_state["pool"].close()
                logger.info("Connection pool closed")
            except Exception as e:
                logger.error(f"Error closing connection pool: {e}")

        if app_state["provider"]:
            try:
                await app_state["provider"].close()
            except Exception as e:
                logger.error(f"Error closing AI provider: {e}")

        logger.info("API server shut down complete")


# Create FastAPI app
app = FastAPI(
    title="DB Copilot API",
    description="Streaming AI chat over external databases with confirmed query execution",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(CopilotError)
async def copilot_error_handler(request: Request, exc: CopilotError) -> JSONResponse:
    """Handle copilot errors with their stable code."""
    status_code = ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    log = logger.error if status_code >= 500 else logger.info
    log(
        f"{exc.code} on {request.method} {request.url.path}: {exc.message}",
        extra={"error_code": exc.code},
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": exc.message},
    )


# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(chats.router, prefix="/api/v1", tags=["chats"])
app.include_router(visualizations.router, prefix="/api/v1", tags=["visualizations"])


# Root endpoint
@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "name": "DB Copilot API",
        "version": __version__,
        "description": "Streaming AI chat over external databases",
        "docs": "/docs",
    }
