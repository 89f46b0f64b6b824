"""
DB Copilot Models Module

Pydantic models for type-safe data validation throughout the application.

Available Models:
    Records:
        - Connection / ConnectionConfig: External database configuration
        - Chat: Conversation scoped to one Connection
        - Message: User or AI entry in a Chat
        - QueryProposal / ProposalStatus: AI-suggested statement and its status

    Execution:
        - ExecutionResult: Rows, counts and timing from the gateway
        - QueryClassification: read / write
        - ExecutionTrigger: auto / user

    Streaming:
        - StreamEvent / EventType: Sequenced events delivered to listeners
        - StreamState: Session state machine

Usage:
    from dbcopilot.models import Chat, QueryProposal, StreamEvent
"""

from dbcopilot.models.chat import Chat, Message, ProposalError, ProposalStatus, QueryProposal
from dbcopilot.models.database import Connection, ConnectionConfig, EngineKind
from dbcopilot.models.execution import ExecutionResult, ExecutionTrigger, QueryClassification
from dbcopilot.models.stream import EventType, StreamEvent, StreamState

__all__ = [
    "Chat",
    "Connection",
    "ConnectionConfig",
    "EngineKind",
    "EventType",
    "ExecutionResult",
    "ExecutionTrigger",
    "Message",
    "ProposalError",
    "ProposalStatus",
    "QueryClassification",
    "QueryProposal",
    "StreamEvent",
    "StreamState",
]
