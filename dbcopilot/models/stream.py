"""
Stream Session and Event Models
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class StreamState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.CANCELLED, StreamState.FAILED})


class EventType(str, Enum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL = "tool_call"
    QUERY_PROPOSED = "query_proposed"
    QUERY_RESULT = "query_result"
    QUERY_FAILED = "query_failed"
    STREAM_COMPLETED = "stream_completed"
    STREAM_CANCELLED = "stream_cancelled"
    STREAM_FAILED = "stream_failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EVENTS


TERMINAL_EVENTS = frozenset(
    {EventType.STREAM_COMPLETED, EventType.STREAM_CANCELLED, EventType.STREAM_FAILED}
)


class StreamEvent(BaseModel):
    """One event emitted by a stream session."""

    sequence: int = Field(..., ge=1, description="Strictly increasing within a session")
    session_id: str = Field(..., description="Producing stream session")
    chat_id: str = Field(..., description="Chat the session belongs to")
    type: EventType = Field(..., description="Event type")
    data: dict[str, Any] = Field(default_factory=dict, description="Event payload")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.type.is_terminal
