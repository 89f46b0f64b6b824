"""
AI Response Orchestrator

Drives one StreamSession per chat from the user's message to a terminal
event:

    Pending -> Streaming -> Completed | Cancelled | Failed

Each AI chunk becomes exactly one event. Text is forwarded as
``text_delta``; a query proposal is persisted and announced as
``query_proposed`` and, for read-only proposals in auto-execute chats, run
through the gateway with the outcome reported as ``query_result`` or
``query_failed``.

Outside of a stream the orchestrator also serves the user's actions on a
proposal: execute, reject, edit, cancel a running execution and roll back
an executed write.

Events are numbered under the session's emit lock together with any
persistence they depend on, so a listener resuming from a sequence number
never sees a gap.

Usage:
    orchestrator = ResponseOrchestrator(
        repository=repo, pool=pool, gateway=gateway, registry=registry,
        hub=hub, chunk_source=AIChunkSource(provider),
    )
    session = await orchestrator.start(chat, user_message)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from dbcopilot.config import StreamSettings
from dbcopilot.errors import (
    AIServiceUnavailable,
    CopilotError,
    ExecutionCancelled,
    InvalidProposalTransition,
    NoActiveExecution,
    RollbackUnavailable,
    SyntaxRejected,
)
from dbcopilot.gateway import QueryGateway
from dbcopilot.models.chat import Chat, Message, QueryProposal
from dbcopilot.models.database import Connection
from dbcopilot.models.execution import (
    ExecutionResult,
    ExecutionTrigger,
    QueryClassification,
)
from dbcopilot.models.stream import EventType, StreamEvent
from dbcopilot.pool import ConnectionPoolManager
from dbcopilot.store import ChatRepository
from dbcopilot.streaming.chunks import AIChunk, AIChunkSource, ChunkKind, ChunkRequest
from dbcopilot.streaming.delivery import DeliveryHub
from dbcopilot.streaming.registry import StreamSession, StreamSessionRegistry
from dbcopilot.streaming.schema import SchemaCatalog

logger = logging.getLogger(__name__)

_END = object()


async def _pull(iterator: AsyncIterator[AIChunk]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class ResponseOrchestrator:
    """Runs AI response sessions and user-triggered proposal executions."""

    def __init__(
        self,
        *,
        repository: ChatRepository,
        pool: ConnectionPoolManager,
        gateway: QueryGateway,
        registry: StreamSessionRegistry,
        hub: DeliveryHub,
        chunk_source: AIChunkSource | None,
        settings: StreamSettings | None = None,
        history_limit: int = 20,
        schema_catalog: SchemaCatalog | None = None,
    ):
        self.repository = repository
        self.pool = pool
        self.gateway = gateway
        self.registry = registry
        self.hub = hub
        self.chunk_source = chunk_source
        self.settings = settings or StreamSettings()
        self.history_limit = history_limit
        self.schema_catalog = schema_catalog
        self._tasks: set[asyncio.Task] = set()
        self._executing: set[str] = set()
        self._running: dict[str, tuple[str, asyncio.Task]] = {}

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start(self, chat: Chat, user_message: Message) -> StreamSession:
        """
        Persist the user's message and start streaming the AI response.

        Raises:
            AIServiceUnavailable: No AI provider is configured
            AlreadyStreaming: The chat already has an active session
        """
        if self.chunk_source is None:
            raise AIServiceUnavailable("No AI provider is configured")
        session = self.registry.start(chat.chat_id)
        try:
            await self.repository.save_message(user_message)
        except BaseException:
            self.registry.fail(chat.chat_id, "Could not store the user message")
            raise

        self.hub.open(chat.chat_id, session.session_id)
        task = asyncio.create_task(
            self._run(session, chat, user_message), name=f"stream-{session.session_id}"
        )
        session.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session

    async def _run(self, session: StreamSession, chat: Chat, user_message: Message) -> None:
        assistant = Message(chat_id=chat.chat_id, role="assistant")
        iterator: AsyncIterator[AIChunk] | None = None
        try:
            connection = await self.repository.get_connection(chat.connection_id)
            history = await self.repository.list_messages(
                chat.chat_id, limit=self.history_limit
            )
            schema = (
                await self.schema_catalog.context_for(connection.connection_id)
                if self.schema_catalog is not None
                else None
            )
            await self.repository.save_message(assistant)
            self.registry.mark_streaming(chat.chat_id)

            request = ChunkRequest(
                chat=chat,
                connection=connection,
                history=history,
                user_message=user_message,
                schema=schema,
            )
            iterator = aiter(self.chunk_source.chunks(request))
            while not session.cancel_requested:
                chunk = await self._next_chunk(session, iterator)
                if chunk is _END or session.cancel_requested:
                    break
                await self._handle_chunk(session, chat, connection, assistant, chunk)

            if session.cancel_requested:
                await self._finish_cancelled(session, assistant)
            else:
                await self._finish_completed(session, assistant)
        except asyncio.CancelledError:
            session.cancel_requested = True
            await self._finish_cancelled(session, assistant)
            raise
        except CopilotError as exc:
            await self._finish_failed(session, assistant, exc)
        except Exception as exc:
            logger.exception(
                f"Stream session {session.session_id} crashed",
                extra={"chat_id": chat.chat_id, "session_id": session.session_id},
            )
            await self._finish_failed(
                session, assistant, AIServiceUnavailable(f"Stream failed: {exc}")
            )
        finally:
            if iterator is not None and hasattr(iterator, "aclose"):
                try:
                    await iterator.aclose()
                except Exception as exc:
                    logger.debug(f"Closing AI chunk iterator failed: {exc}")

    async def _next_chunk(self, session: StreamSession, iterator: AsyncIterator[AIChunk]) -> Any:
        """Wait for the next chunk, a cancel request, or the chunk timeout."""
        pull = asyncio.ensure_future(_pull(iterator))
        cancelled = asyncio.ensure_future(session.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {pull, cancelled},
                timeout=self.settings.chunk_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            if not pull.done():
                pull.cancel()
                await asyncio.gather(pull, return_exceptions=True)

        if session.cancel_requested:
            if pull.done() and not pull.cancelled():
                pull.exception()
            return _END
        if pull not in done:
            raise AIServiceUnavailable(
                f"AI service sent nothing for {self.settings.chunk_timeout}s"
            )
        return pull.result()

    async def _handle_chunk(
        self,
        session: StreamSession,
        chat: Chat,
        connection: Connection,
        assistant: Message,
        chunk: AIChunk,
    ) -> None:
        if chunk.kind == ChunkKind.TEXT:
            assistant.content += chunk.text
            await self._emit(
                session,
                EventType.TEXT_DELTA,
                {"message_id": assistant.message_id, "text": chunk.text},
            )
        elif chunk.kind == ChunkKind.TOOL_CALL:
            await self._emit(
                session,
                EventType.TOOL_CALL,
                {
                    "message_id": assistant.message_id,
                    "name": chunk.tool_name,
                    "arguments": chunk.tool_arguments,
                },
            )
        else:
            await self._handle_proposal(session, chat, connection, assistant, chunk)

    async def _handle_proposal(
        self,
        session: StreamSession,
        chat: Chat,
        connection: Connection,
        assistant: Message,
        chunk: AIChunk,
    ) -> None:
        proposal = QueryProposal(
            message_id=assistant.message_id,
            connection_id=connection.connection_id,
            query=chunk.query,
            explanation=chunk.explanation,
            rollback_query=chunk.rollback_query,
            classification=self.gateway.classify(connection.engine, chunk.query),
        )
        assistant.proposals.append(proposal)
        auto = chat.auto_execute and proposal.classification == QueryClassification.READ

        # Claimed before it is announced, released only once the outcome is stored.
        if auto:
            self._executing.add(proposal.proposal_id)
        try:
            await self._emit(
                session,
                EventType.QUERY_PROPOSED,
                {"message_id": assistant.message_id, "proposal": proposal.model_dump(mode="json")},
                persist=lambda: self.repository.save_proposal(chat.chat_id, proposal),
            )
            if auto:
                await self._auto_execute(session, chat, proposal)
        finally:
            if auto:
                self._executing.discard(proposal.proposal_id)

    async def _auto_execute(
        self, session: StreamSession, chat: Chat, proposal: QueryProposal
    ) -> None:
        execution = self._track(chat.chat_id, proposal, ExecutionTrigger.AUTO)
        session.inflight = execution
        try:
            await asyncio.wait({execution})
        except asyncio.CancelledError:
            execution.cancel()
            await asyncio.gather(execution, return_exceptions=True)
            raise
        finally:
            session.inflight = None

        if session.cancel_requested:
            if not execution.cancelled():
                execution.exception()
            logger.info(
                f"Discarding auto-execution of proposal {proposal.proposal_id} after cancel",
                extra={"chat_id": chat.chat_id, "session_id": session.session_id},
            )
            return

        result, error = self._outcome(execution)
        self._settle(proposal, ExecutionTrigger.AUTO, result, error)
        try:
            await self._emit(
                session,
                *self._outcome_event(proposal, error),
                persist=lambda: self.repository.save_proposal(chat.chat_id, proposal),
            )
        except InvalidProposalTransition as exc:
            logger.warning(
                f"Auto-execution outcome of proposal {proposal.proposal_id} not recorded: "
                f"{exc.message}",
                extra={"chat_id": chat.chat_id, "session_id": session.session_id},
            )

    async def _finish_completed(self, session: StreamSession, assistant: Message) -> None:
        await self._persist_message(session, assistant)
        await self._emit(
            session,
            EventType.STREAM_COMPLETED,
            {
                "message_id": assistant.message_id,
                "proposal_ids": [p.proposal_id for p in assistant.proposals],
            },
            transition=lambda: self.registry.complete(session.chat_id),
        )

    async def _finish_cancelled(self, session: StreamSession, assistant: Message) -> None:
        assistant.is_partial = True
        await self._persist_message(session, assistant)
        await self._emit(
            session,
            EventType.STREAM_CANCELLED,
            {"message_id": assistant.message_id},
            transition=lambda: self.registry.mark_cancelled(session.chat_id),
        )

    async def _finish_failed(
        self, session: StreamSession, assistant: Message, error: CopilotError
    ) -> None:
        logger.warning(
            f"Stream session {session.session_id} failed: {error.message}",
            extra={"chat_id": session.chat_id, "session_id": session.session_id},
        )
        assistant.is_partial = True
        await self._persist_message(session, assistant)
        await self._emit(
            session,
            EventType.STREAM_FAILED,
            {"message_id": assistant.message_id, "code": error.code, "reason": error.message},
            transition=lambda: self.registry.fail(session.chat_id, error.message),
        )

    async def _persist_message(self, session: StreamSession, assistant: Message) -> None:
        try:
            await self.repository.save_message(assistant)
        except Exception:
            logger.exception(
                f"Could not store AI message {assistant.message_id}",
                extra={"chat_id": session.chat_id, "session_id": session.session_id},
            )

    async def _emit(
        self,
        session: StreamSession,
        event_type: EventType,
        data: dict[str, Any],
        *,
        persist: Callable[[], Awaitable[Any]] | None = None,
        transition: Callable[[], Any] | None = None,
    ) -> StreamEvent:
        """Persist, number and publish one event as a single step."""
        async with session.emit_lock:
            if persist is not None:
                await persist()
            if event_type == EventType.STREAM_CANCELLED:
                data = {**data, "last_sequence": session.sequence}
            event = StreamEvent(
                sequence=session.next_sequence(),
                session_id=session.session_id,
                chat_id=session.chat_id,
                type=event_type,
                data=data,
            )
            await self.hub.publish(event)
            if transition is not None:
                transition()
            return event

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _track(
        self, chat_id: str, proposal: QueryProposal, trigger: ExecutionTrigger
    ) -> asyncio.Task:
        """Start executing ``proposal`` as a task that ``cancel_execution`` can reach."""
        proposal_id = proposal.proposal_id
        task = asyncio.create_task(
            self._execute(proposal, trigger), name=f"{trigger.value}-execute-{proposal_id}"
        )
        self._running[proposal_id] = (chat_id, task)

        def _forget(done: asyncio.Task) -> None:
            entry = self._running.get(proposal_id)
            if entry is not None and entry[1] is done:
                del self._running[proposal_id]

        task.add_done_callback(_forget)
        return task

    @staticmethod
    def _outcome(
        execution: asyncio.Task,
    ) -> tuple[ExecutionResult | None, CopilotError | None]:
        if execution.cancelled():
            return None, ExecutionCancelled("Query execution was cancelled by the user")
        return execution.result()

    async def _execute(
        self,
        proposal: QueryProposal,
        trigger: ExecutionTrigger,
        query: str | None = None,
        classification: QueryClassification | None = None,
    ) -> tuple[ExecutionResult | None, CopilotError | None]:
        try:
            async with self.pool.lease(proposal.connection_id) as handle:
                result = await self.gateway.execute(
                    handle,
                    query or proposal.query,
                    classification or proposal.classification,
                    trigger=trigger,
                )
        except CopilotError as exc:
            logger.info(
                f"Proposal {proposal.proposal_id} failed ({exc.code}): {exc.message}",
                extra={"proposal_id": proposal.proposal_id, "trigger": trigger.value},
            )
            return None, exc
        return result, None

    @staticmethod
    def _settle(
        proposal: QueryProposal,
        trigger: ExecutionTrigger,
        result: ExecutionResult | None,
        error: CopilotError | None,
    ) -> None:
        if error is not None:
            proposal.mark_failed(trigger, error.code, error.message)
        else:
            proposal.mark_executed(trigger, result)

    @staticmethod
    def _outcome_event(
        proposal: QueryProposal, error: CopilotError | None
    ) -> tuple[EventType, dict[str, Any]]:
        data: dict[str, Any] = {
            "message_id": proposal.message_id,
            "proposal_id": proposal.proposal_id,
            "status": proposal.status.value,
        }
        if error is not None:
            data["error"] = error.to_dict()
            return EventType.QUERY_FAILED, data
        data["result"] = proposal.result.model_dump(mode="json")
        return EventType.QUERY_RESULT, data

    async def execute_proposal(
        self, chat_id: str, proposal_id: str, user_id: str
    ) -> QueryProposal:
        """
        Run a proposal on the user's explicit request.

        Writes are allowed here. When the chat's session is still streaming,
        the outcome is also delivered on the stream. A run stopped through
        ``cancel_execution`` settles as failed with ``execution_cancelled``.

        Raises:
            ChatNotFound: Unknown chat or not owned by ``user_id``
            ProposalNotFound: Unknown proposal
            InvalidProposalTransition: Proposal already settled or running
        """
        await self.repository.get_owned_chat(chat_id, user_id)
        proposal = await self.repository.find_proposal(chat_id, proposal_id)
        self._claim(proposal)
        try:
            execution = self._track(chat_id, proposal, ExecutionTrigger.USER)
            try:
                await asyncio.wait({execution})
            except asyncio.CancelledError:
                execution.cancel()
                await asyncio.gather(execution, return_exceptions=True)
                raise
            result, error = self._outcome(execution)
            self._settle(proposal, ExecutionTrigger.USER, result, error)

            session = self.registry.get_active(chat_id)
            if session is None:
                await self.repository.save_proposal(chat_id, proposal)
            else:
                await self._emit(
                    session,
                    *self._outcome_event(proposal, error),
                    persist=lambda: self.repository.save_proposal(chat_id, proposal),
                )
        finally:
            self._executing.discard(proposal_id)
        return proposal

    async def cancel_execution(self, chat_id: str, proposal_id: str, user_id: str) -> None:
        """
        Stop a running execution of a proposal, auto or user triggered.

        The engine is asked to stop and the handle is discarded; the proposal
        settles as failed with ``execution_cancelled``.

        Raises:
            ChatNotFound: Unknown chat or not owned by ``user_id``
            NoActiveExecution: The proposal is not executing
        """
        await self.repository.get_owned_chat(chat_id, user_id)
        entry = self._running.get(proposal_id)
        if entry is None or entry[0] != chat_id or entry[1].done():
            raise NoActiveExecution(
                f"Proposal {proposal_id} is not executing",
                context={"chat_id": chat_id, "proposal_id": proposal_id},
            )
        task = entry[1]
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info(f"Execution of proposal {proposal_id} cancelled", extra={"chat_id": chat_id})

    async def reject_proposal(self, chat_id: str, proposal_id: str, user_id: str) -> QueryProposal:
        """
        Mark a proposal as rejected.

        Raises:
            ChatNotFound: Unknown chat or not owned by ``user_id``
            ProposalNotFound: Unknown proposal
            InvalidProposalTransition: Proposal already settled or running
        """
        await self.repository.get_owned_chat(chat_id, user_id)
        proposal = await self.repository.find_proposal(chat_id, proposal_id)
        self._ensure_idle(proposal_id)
        proposal.mark_rejected()
        await self.repository.save_proposal(chat_id, proposal)
        logger.info(f"Proposal {proposal_id} rejected", extra={"chat_id": chat_id})
        return proposal

    async def edit_proposal(
        self, chat_id: str, proposal_id: str, user_id: str, query: str
    ) -> QueryProposal:
        """
        Replace a pending proposal's query with the user's text.

        The new text is classified afresh, so an edit can turn a read into a
        write that then needs confirmation.

        Raises:
            ChatNotFound: Unknown chat or not owned by ``user_id``
            ProposalNotFound: Unknown proposal
            SyntaxRejected: The new query is empty
            InvalidProposalTransition: Proposal already settled or running
        """
        await self.repository.get_owned_chat(chat_id, user_id)
        query = query.strip()
        if not query:
            raise SyntaxRejected("Query is empty")
        proposal = await self.repository.find_proposal(chat_id, proposal_id)
        self._ensure_idle(proposal_id)
        connection = await self.repository.get_connection(proposal.connection_id)
        proposal.edit(query, self.gateway.classify(connection.engine, query))
        await self.repository.save_proposal(chat_id, proposal)
        logger.info(
            f"Proposal {proposal_id} edited ({proposal.classification.value})",
            extra={"chat_id": chat_id},
        )
        return proposal

    async def rollback_proposal(
        self, chat_id: str, proposal_id: str, user_id: str
    ) -> QueryProposal:
        """
        Run the rollback statement of a write the user executed.

        A failed rollback is recorded on the proposal and can be retried.

        Raises:
            ChatNotFound: Unknown chat or not owned by ``user_id``
            ProposalNotFound: Unknown proposal
            RollbackUnavailable: No rollback statement, not an executed write,
                or already rolled back
            InvalidProposalTransition: A rollback is already running
        """
        await self.repository.get_owned_chat(chat_id, user_id)
        proposal = await self.repository.find_proposal(chat_id, proposal_id)
        if not proposal.can_roll_back:
            raise RollbackUnavailable(
                self._rollback_refusal(proposal), context={"proposal_id": proposal_id}
            )
        self._claim_rollback(proposal_id)
        try:
            connection = await self.repository.get_connection(proposal.connection_id)
            rollback_query = proposal.rollback_query
            result, error = await self._execute(
                proposal,
                ExecutionTrigger.USER,
                rollback_query,
                self.gateway.classify(connection.engine, rollback_query),
            )
            if error is not None:
                proposal.mark_rollback_failed(error.code, error.message)
            else:
                proposal.mark_rolled_back(result)
            await self.repository.save_proposal(chat_id, proposal)
        finally:
            self._executing.discard(proposal_id)
        logger.info(
            f"Rollback of proposal {proposal_id} "
            + ("succeeded" if proposal.rolled_back else "failed"),
            extra={"chat_id": chat_id},
        )
        return proposal

    @staticmethod
    def _rollback_refusal(proposal: QueryProposal) -> str:
        if proposal.rolled_back:
            return f"Proposal {proposal.proposal_id} is already rolled back"
        if not proposal.rollback_query:
            return f"Proposal {proposal.proposal_id} has no rollback query"
        return "Only writes executed by the user can be rolled back"

    def _ensure_idle(self, proposal_id: str) -> None:
        if proposal_id in self._executing:
            raise InvalidProposalTransition(
                f"Proposal {proposal_id} is executing", context={"proposal_id": proposal_id}
            )

    def _claim_rollback(self, proposal_id: str) -> None:
        self._ensure_idle(proposal_id)
        self._executing.add(proposal_id)

    def _claim(self, proposal: QueryProposal) -> None:
        if proposal.proposal_id in self._executing:
            raise InvalidProposalTransition(
                f"Proposal {proposal.proposal_id} is already executing",
                context={"proposal_id": proposal.proposal_id},
            )
        if proposal.is_terminal:
            raise InvalidProposalTransition(
                f"Proposal {proposal.proposal_id} is already {proposal.status.value}",
                context={"proposal_id": proposal.proposal_id},
            )
        self._executing.add(proposal.proposal_id)

    async def close(self) -> None:
        """Cancel running sessions and executions, and wait for them to finish."""
        sessions = list(self._tasks)
        tasks = sessions + [task for _, task in self._running.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Orchestrator closed ({len(sessions)} session(s) cancelled)")
