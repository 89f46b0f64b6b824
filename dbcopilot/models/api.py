"""
API Request/Response Models

Pydantic models for FastAPI endpoints.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from dbcopilot.connectors import TableInfo
from dbcopilot.models.chat import Message
from dbcopilot.models.execution import ExecutionResult


class CreateMessageRequest(BaseModel):
    """Request model for posting a chat message."""

    content: str = Field(..., min_length=1, description="User's message to the AI")

    model_config = {
        "json_schema_extra": {
            "example": {"content": "Which customers placed the most orders last month?"}
        }
    }


class MessageAcceptedResponse(BaseModel):
    """Response model for an accepted chat message."""

    message: Message = Field(..., description="Stored user message")
    session_id: str = Field(..., description="Stream session producing the AI response")


class CancelStreamResponse(BaseModel):
    """Response model for stream cancellation."""

    cancelled: bool = Field(..., description="Whether a cancel was requested")
    session_id: str = Field(..., description="Cancelled stream session")


class ProposalExecutionResponse(BaseModel):
    """Response model for user-triggered proposal execution."""

    chat_id: str
    message_id: str
    proposal_id: str
    status: str = Field(..., description="Proposal status after the request")
    result: ExecutionResult | None = None
    error: dict[str, Any] | None = None


class EditProposalRequest(BaseModel):
    """Request model for replacing a pending proposal's query."""

    query: str = Field(..., min_length=1, description="Query text to run instead")

    model_config = {
        "json_schema_extra": {"example": {"query": "SELECT id, email FROM users LIMIT 50"}}
    }


class CancelExecutionResponse(BaseModel):
    """Response model for cancelling a running proposal execution."""

    cancelled: bool = Field(..., description="Whether a running execution was stopped")
    proposal_id: str = Field(..., description="Proposal whose execution was cancelled")


class SchemaResponse(BaseModel):
    """Response model for a chat's introspected schema."""

    connection_id: str
    fetched_at: datetime = Field(..., description="When the schema was introspected")
    table_count: int = Field(..., ge=0)
    tables: list[TableInfo] = Field(default_factory=list)


class VisualizationExecuteRequest(BaseModel):
    """Request model for executing a visualization query."""

    chat_id: str = Field(..., description="Chat whose Connection is queried")
    query: str = Field(..., min_length=1, description="Read-only query text")
    title: str | None = Field(None, description="Chart title")
    visualization_type: str | None = Field(
        None, description="Requested chart type (inferred from the result when unset)"
    )


class VisualizationExecuteResponse(BaseModel):
    """Response model for visualization execution."""

    title: str | None = None
    query: str
    visualization_type: str = Field(..., description="Chart type used for rendering")
    visualization_metadata: dict[str, str] = Field(default_factory=dict)
    result: ExecutionResult


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""

    status: str = Field(..., description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(..., description="API version")
    timestamp: str = Field(..., description="Current timestamp (ISO 8601)")
    active_streams: int = Field(default=0, description="Non-terminal stream sessions")
    pools: dict[str, dict[str, int]] = Field(
        default_factory=dict, description="Per-connection pool counts"
    )


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "already_streaming",
                "message": "Chat 5f1c... already has an active stream",
            }
        }
    }
