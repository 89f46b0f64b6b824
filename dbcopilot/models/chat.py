"""
Chat, Message and QueryProposal models.

QueryProposal status only moves forward:

    proposed -> auto-executed | user-executed | rejected | failed

Terminal statuses are absorbing; any other change raises
InvalidProposalTransition.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from dbcopilot.errors import InvalidProposalTransition
from dbcopilot.models.execution import (
    ExecutionResult,
    ExecutionTrigger,
    QueryClassification,
)


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    AUTO_EXECUTED = "auto-executed"
    USER_EXECUTED = "user-executed"
    REJECTED = "rejected"
    FAILED = "failed"


_FORWARD_TRANSITIONS: dict[ProposalStatus, set[ProposalStatus]] = {
    ProposalStatus.PROPOSED: {
        ProposalStatus.AUTO_EXECUTED,
        ProposalStatus.USER_EXECUTED,
        ProposalStatus.REJECTED,
        ProposalStatus.FAILED,
    },
}


class Chat(BaseModel):
    """A conversation scoped to exactly one Connection."""

    chat_id: str = Field(default_factory=_new_id, description="Chat identifier")
    owner_id: str = Field(..., min_length=1, description="Owning user")
    connection_id: str = Field(..., description="Connection this chat queries")
    auto_execute: bool = Field(
        default=False, description="Run read-only proposals without confirmation"
    )
    share_with_ai: bool = Field(
        default=False, description="Send executed result rows back to the AI as context"
    )
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ProposalError(BaseModel):
    code: str
    message: str


class QueryProposal(BaseModel):
    """An AI-suggested statement with an execution status."""

    proposal_id: str = Field(default_factory=_new_id)
    message_id: str = Field(..., description="AI message carrying this proposal")
    connection_id: str = Field(..., description="Target Connection")
    query: str = Field(..., min_length=1, description="Statement text")
    explanation: str | None = Field(None, description="AI's description of the statement")
    rollback_query: str | None = Field(
        None, description="Statement undoing this one, when the AI supplied it"
    )
    classification: QueryClassification = Field(..., description="read or write")
    status: ProposalStatus = Field(default=ProposalStatus.PROPOSED)
    executed_by: ExecutionTrigger | None = Field(None)
    result: ExecutionResult | None = Field(None)
    error: ProposalError | None = Field(None)
    is_edited: bool = Field(default=False, description="Query text was changed by the user")
    original_query: str | None = Field(None, description="AI's text before the first edit")
    rolled_back: bool = Field(default=False, description="Rollback statement ran successfully")
    rollback_result: ExecutionResult | None = Field(None)
    rollback_error: ProposalError | None = Field(None)
    created_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status != ProposalStatus.PROPOSED

    def transition(self, status: ProposalStatus) -> None:
        """Move to ``status`` or raise InvalidProposalTransition."""
        allowed = _FORWARD_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise InvalidProposalTransition(
                f"Cannot move proposal {self.proposal_id} from "
                f"'{self.status.value}' to '{status.value}'",
                context={"proposal_id": self.proposal_id},
            )
        self.status = status

    def mark_executed(self, trigger: ExecutionTrigger, result: ExecutionResult) -> None:
        if trigger == ExecutionTrigger.AUTO:
            if self.classification != QueryClassification.READ:
                raise InvalidProposalTransition(
                    f"Proposal {self.proposal_id} is a write and cannot be auto-executed",
                    context={"proposal_id": self.proposal_id},
                )
            self.transition(ProposalStatus.AUTO_EXECUTED)
        else:
            self.transition(ProposalStatus.USER_EXECUTED)
        self.executed_by = trigger
        self.result = result

    def mark_failed(self, trigger: ExecutionTrigger, code: str, message: str) -> None:
        self.transition(ProposalStatus.FAILED)
        self.executed_by = trigger
        self.error = ProposalError(code=code, message=message)

    def mark_rejected(self) -> None:
        self.transition(ProposalStatus.REJECTED)

    def edit(self, query: str, classification: QueryClassification) -> None:
        """Replace the query text while the proposal is still pending."""
        if self.is_terminal:
            raise InvalidProposalTransition(
                f"Proposal {self.proposal_id} is already {self.status.value} and cannot be edited",
                context={"proposal_id": self.proposal_id},
            )
        if self.original_query is None:
            self.original_query = self.query
        self.query = query
        self.classification = classification
        self.is_edited = True

    @property
    def can_roll_back(self) -> bool:
        return (
            self.status == ProposalStatus.USER_EXECUTED
            and self.classification == QueryClassification.WRITE
            and bool(self.rollback_query)
            and not self.rolled_back
        )

    def mark_rolled_back(self, result: ExecutionResult) -> None:
        self.rolled_back = True
        self.rollback_result = result
        self.rollback_error = None

    def mark_rollback_failed(self, code: str, message: str) -> None:
        self.rollback_error = ProposalError(code=code, message=message)


class Message(BaseModel):
    """An ordered entry in a Chat."""

    message_id: str = Field(default_factory=_new_id)
    chat_id: str = Field(...)
    role: Literal["user", "assistant"] = Field(...)
    content: str = Field(default="")
    proposals: list[QueryProposal] = Field(default_factory=list)
    is_partial: bool = Field(
        default=False, description="Stream producing this message was cancelled or failed"
    )
    created_at: datetime = Field(default_factory=_now)

    def proposal(self, proposal_id: str) -> QueryProposal | None:
        return next((p for p in self.proposals if p.proposal_id == proposal_id), None)

    def to_llm_context(self, include_rows: bool) -> str:
        """Render the message for the AI prompt."""
        if not self.proposals:
            return self.content
        parts: list[str] = [self.content] if self.content else []
        for proposal in self.proposals:
            line: dict[str, Any] = {
                "query": proposal.query,
                "status": proposal.status.value,
            }
            if proposal.is_edited:
                line["edited_by_user"] = True
            if proposal.rolled_back:
                line["rolled_back"] = True
            if proposal.result is not None:
                line["result"] = (
                    proposal.result.model_dump(include={"columns", "rows", "row_count"})
                    if include_rows
                    else proposal.result.summary()
                )
            if proposal.error is not None:
                line["error"] = proposal.error.message
            parts.append(str(line))
        return "\n".join(parts)
