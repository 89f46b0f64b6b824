"""
Copilot Error Taxonomy

Domain exceptions shared by the pool, gateway, registry, orchestrator and
API layers. Every error carries a stable ``code`` used in stream events and
JSON error bodies, plus optional context for logging.

Pool/Gateway errors are non-fatal to a stream (they become ``query_failed``
events). AI-service errors are fatal to a stream (``stream_failed``).
Registry errors are rejected synchronously at the API boundary.
"""

from typing import Any


class CopilotError(Exception):
    """
    Base exception for all copilot errors.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable description
        context: Additional context for debugging
    """

    code = "copilot_error"

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for stream events/API responses."""
        return {
            "code": self.code,
            "message": self.message,
            **({"context": self.context} if self.context else {}),
        }


# ============================================================================
# Connection Pool
# ============================================================================


class PoolExhausted(CopilotError):
    """No handle became available within the acquire timeout."""

    code = "pool_exhausted"


class ConnectFailed(CopilotError):
    """Dialing the external database failed."""

    code = "connect_failed"


# ============================================================================
# Query Execution Gateway
# ============================================================================


class SyntaxRejected(CopilotError):
    """Query text could not be parsed for its engine."""

    code = "syntax_rejected"


class PermissionDenied(CopilotError):
    """Query is not allowed under the requested trigger (e.g. auto-executing a write)."""

    code = "permission_denied"


class EngineTimeout(CopilotError):
    """Engine did not finish within the execution timeout."""

    code = "engine_timeout"


class ExecutionCancelled(CopilotError):
    """The user cancelled a running execution."""

    code = "execution_cancelled"



class EngineError(CopilotError):
    """Engine-native failure. ``message`` is the engine's text, verbatim."""

    code = "engine_error"

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        connection_broken: bool = False,
    ):
        super().__init__(message, context=context)
        self.connection_broken = connection_broken


# ============================================================================
# Streaming
# ============================================================================


class AlreadyStreaming(CopilotError):
    """The chat already has a non-terminal stream session."""

    code = "already_streaming"


class NoActiveStream(CopilotError):
    """The chat has no non-terminal stream session."""

    code = "no_active_stream"


class AIServiceUnavailable(CopilotError):
    """The AI service failed, dropped the stream or produced malformed output."""

    code = "ai_service_unavailable"


class BacklogUnavailable(CopilotError):
    """Requested events were evicted from the delivery buffer."""

    code = "backlog_unavailable"


# ============================================================================
# Records
# ============================================================================


class InvalidProposalTransition(CopilotError):
    """A QueryProposal status change would move backwards."""

    code = "invalid_proposal_transition"


class ChatNotFound(CopilotError):
    """Chat does not exist or is not owned by the caller."""

    code = "chat_not_found"


class ConnectionNotFound(CopilotError):
    """Connection does not exist."""

    code = "connection_not_found"


class ConnectionInUse(CopilotError):
    """Connection is still referenced by chats and cascade was not requested."""

    code = "connection_in_use"


class ProposalNotFound(CopilotError):
    """QueryProposal does not exist in the chat."""

    code = "proposal_not_found"


class NoActiveExecution(CopilotError):
    """The proposal has no running execution to cancel."""

    code = "no_active_execution"


class RollbackUnavailable(CopilotError):
    """The proposal has no rollback statement, or it cannot run in its current state."""

    code = "rollback_unavailable"
