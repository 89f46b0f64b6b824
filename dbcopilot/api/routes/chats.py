"""
Chat Routes

Posting messages, following the AI response over Server-Sent Events and
cancelling it; acting on proposed queries (execute, reject, edit, cancel,
roll back); and reading the schema the AI is given.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sse_starlette.sse import EventSourceResponse

from dbcopilot.api.dependencies import get_component, get_user_id
from dbcopilot.errors import BacklogUnavailable
from dbcopilot.models.api import (
    CancelExecutionResponse,
    CancelStreamResponse,
    CreateMessageRequest,
    EditProposalRequest,
    MessageAcceptedResponse,
    ProposalExecutionResponse,
    SchemaResponse,
)
from dbcopilot.models.chat import Message, QueryProposal
from dbcopilot.streaming import DeliveryHub, SchemaCatalog

logger = logging.getLogger(__name__)

router = APIRouter()

UserId = Annotated[str, Depends(get_user_id)]


@router.post(
    "/chats/{chat_id}/messages",
    response_model=MessageAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_message(
    chat_id: str, payload: CreateMessageRequest, user_id: UserId
) -> MessageAcceptedResponse:
    """
    Store the user's message and start streaming the AI response.

    The response is produced asynchronously; follow it on
    ``GET /chats/{chat_id}/stream``. Answers 409 while a stream is active.
    """
    repository = get_component("repository")
    orchestrator = get_component("orchestrator")

    chat = await repository.get_owned_chat(chat_id, user_id)
    message = Message(chat_id=chat.chat_id, role="user", content=payload.content)
    session = await orchestrator.start(chat, message)
    logger.info(
        f"Message {message.message_id} accepted for chat {chat_id}",
        extra={"chat_id": chat_id, "session_id": session.session_id},
    )
    return MessageAcceptedResponse(message=message, session_id=session.session_id)


@router.get("/chats/{chat_id}/messages", response_model=list[Message])
async def list_messages(chat_id: str, user_id: UserId) -> list[Message]:
    """Persisted messages, for clients whose stream backlog is gone."""
    repository = get_component("repository")
    await repository.get_owned_chat(chat_id, user_id)
    return await repository.list_messages(chat_id)


@router.get("/chats/{chat_id}/stream")
async def stream_events(
    request: Request,
    chat_id: str,
    user_id: UserId,
    after_sequence: Annotated[int | None, Query(alias="afterSequence", ge=0)] = None,
    last_event_id: Annotated[str | None, Header(alias="Last-Event-ID")] = None,
) -> EventSourceResponse:
    """
    SSE stream of the chat's current session.

    Each event carries ``id`` = sequence and ``event`` = type. Resume with
    ``afterSequence`` (or the browser's ``Last-Event-ID``) to receive only
    newer events. Answers 409 when there is nothing to follow and 410 when
    the requested events are no longer buffered.
    """
    repository = get_component("repository")
    hub: DeliveryHub = get_component("hub")

    await repository.get_owned_chat(chat_id, user_id)
    after = after_sequence if after_sequence is not None else _parse_event_id(last_event_id)
    hub.ensure_available(chat_id, after)

    return EventSourceResponse(
        _event_generator(request, hub, chat_id, after),
        ping=max(1, int(hub.settings.keepalive_seconds)),
    )


async def _event_generator(
    request: Request, hub: DeliveryHub, chat_id: str, after: int
) -> AsyncGenerator[dict, None]:
    try:
        async for event in hub.subscribe(chat_id, after):
            if await request.is_disconnected():
                break
            yield {
                "id": str(event.sequence),
                "event": event.type.value,
                "data": event.model_dump_json(),
            }
    except BacklogUnavailable as exc:
        yield {"event": "error", "data": json.dumps(exc.to_dict())}


def _parse_event_id(value: str | None) -> int:
    if value is None:
        return 0
    try:
        return max(int(value.strip()), 0)
    except ValueError:
        return 0


@router.post("/chats/{chat_id}/stream/cancel", response_model=CancelStreamResponse)
async def cancel_stream(chat_id: str, user_id: UserId) -> CancelStreamResponse:
    """Cancel the chat's active stream; 409 when there is none."""
    repository = get_component("repository")
    registry = get_component("registry")

    await repository.get_owned_chat(chat_id, user_id)
    session = registry.cancel(chat_id)
    return CancelStreamResponse(cancelled=True, session_id=session.session_id)


@router.post(
    "/chats/{chat_id}/queries/{proposal_id}/execute",
    response_model=ProposalExecutionResponse,
)
async def execute_proposal(
    chat_id: str, proposal_id: str, user_id: UserId
) -> ProposalExecutionResponse:
    """
    Run a proposed query on the user's confirmation.

    Engine failures are reported in the body with status ``failed``, not as
    an HTTP error.
    """
    orchestrator = get_component("orchestrator")
    proposal = await orchestrator.execute_proposal(chat_id, proposal_id, user_id)
    return _proposal_response(chat_id, proposal)


@router.post(
    "/chats/{chat_id}/queries/{proposal_id}/reject",
    response_model=ProposalExecutionResponse,
)
async def reject_proposal(
    chat_id: str, proposal_id: str, user_id: UserId
) -> ProposalExecutionResponse:
    """Reject a proposed query so it can no longer run."""
    orchestrator = get_component("orchestrator")
    proposal = await orchestrator.reject_proposal(chat_id, proposal_id, user_id)
    return _proposal_response(chat_id, proposal)


@router.post(
    "/chats/{chat_id}/queries/{proposal_id}/edit",
    response_model=QueryProposal,
)
async def edit_proposal(
    chat_id: str, proposal_id: str, payload: EditProposalRequest, user_id: UserId
) -> QueryProposal:
    """
    Replace a pending proposal's query with the user's text.

    The edited query is classified again; 409 once the proposal has run,
    been rejected, or while it is executing.
    """
    orchestrator = get_component("orchestrator")
    return await orchestrator.edit_proposal(chat_id, proposal_id, user_id, payload.query)


@router.post(
    "/chats/{chat_id}/queries/{proposal_id}/cancel",
    response_model=CancelExecutionResponse,
)
async def cancel_execution(
    chat_id: str, proposal_id: str, user_id: UserId
) -> CancelExecutionResponse:
    """Stop a running execution; the proposal settles as failed. 409 when nothing runs."""
    orchestrator = get_component("orchestrator")
    await orchestrator.cancel_execution(chat_id, proposal_id, user_id)
    return CancelExecutionResponse(cancelled=True, proposal_id=proposal_id)


@router.post(
    "/chats/{chat_id}/queries/{proposal_id}/rollback",
    response_model=QueryProposal,
)
async def rollback_proposal(chat_id: str, proposal_id: str, user_id: UserId) -> QueryProposal:
    """
    Undo an executed write with the rollback query the AI supplied.

    Engine failures are recorded in ``rollback_error``; 409 when the proposal
    cannot be rolled back.
    """
    orchestrator = get_component("orchestrator")
    return await orchestrator.rollback_proposal(chat_id, proposal_id, user_id)


@router.get("/chats/{chat_id}/schema", response_model=SchemaResponse)
async def get_schema(chat_id: str, user_id: UserId) -> SchemaResponse:
    """Schema of the chat's database, as shown to the AI (cached)."""
    return await _schema_response(chat_id, user_id, refresh=False)


@router.post("/chats/{chat_id}/schema/refresh", response_model=SchemaResponse)
async def refresh_schema(chat_id: str, user_id: UserId) -> SchemaResponse:
    """Introspect the chat's database again, replacing the cached schema."""
    return await _schema_response(chat_id, user_id, refresh=True)


async def _schema_response(chat_id: str, user_id: str, *, refresh: bool) -> SchemaResponse:
    repository = get_component("repository")
    catalog: SchemaCatalog = get_component("schema_catalog")

    chat = await repository.get_owned_chat(chat_id, user_id)
    snapshot = await catalog.get(chat.connection_id, refresh=refresh)
    return SchemaResponse(
        connection_id=snapshot.connection_id,
        fetched_at=snapshot.fetched_at,
        table_count=len(snapshot.tables),
        tables=snapshot.tables,
    )


def _proposal_response(chat_id: str, proposal: QueryProposal) -> ProposalExecutionResponse:
    return ProposalExecutionResponse(
        chat_id=chat_id,
        message_id=proposal.message_id,
        proposal_id=proposal.proposal_id,
        status=proposal.status.value,
        result=proposal.result,
        error=proposal.error.model_dump() if proposal.error else None,
    )
