"""
Health Check Routes

FastAPI endpoints for service health and readiness checks.
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from dbcopilot import __version__
from dbcopilot.models.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health() -> HealthResponse:
    """
    Liveness check with stream and pool counters.

    Returns 200 OK if the service is running, whether or not components
    have been initialized yet.
    """
    from dbcopilot.api.main import app_state

    registry = app_state.get("registry")
    pool = app_state.get("pool")
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(UTC).isoformat(),
        active_streams=registry.active_count() if registry is not None else 0,
        pools=pool.stats() if pool is not None else {},
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness() -> JSONResponse:
    """
    Readiness check for shared components.

    Returns:
        200 OK when the pool, registry, hub and orchestrator are initialized
        503 Service Unavailable otherwise
    """
    from dbcopilot.api.main import app_state

    checks = {
        name: app_state.get(name) is not None
        for name in ("repository", "pool", "gateway", "registry", "hub", "orchestrator")
    }
    checks["ai_provider"] = app_state.get("provider") is not None
    all_ready = all(value for key, value in checks.items() if key != "ai_provider")
    if not all_ready:
        logger.warning(f"Readiness check failed: {checks}")

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_ready else "not_ready",
            "version": __version__,
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": checks,
        },
    )
