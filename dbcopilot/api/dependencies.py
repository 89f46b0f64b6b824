"""Shared request dependencies for the API routes."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Header, HTTPException, status


def get_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    """Caller identity; every chat route is scoped to it."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header is required",
        )
    return x_user_id.strip()


def get_component(name: str) -> Any:
    """Look up an initialized shared component or answer 503."""
    from dbcopilot.api.main import app_state

    component = app_state.get(name)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} is not initialized",
        )
    return component
