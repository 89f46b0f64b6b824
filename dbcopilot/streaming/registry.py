"""
Stream Session Registry

Keyed by chat_id; guarantees at most one non-terminal StreamSession per
chat. Starting a session is a check-and-insert with no await in between,
so it is atomic on the event loop and no lock is held while a session runs.

Terminal sessions stay visible through ``get`` for a grace window so late
subscribers and cancel requests see the final state, then are evicted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from dbcopilot.config import StreamSettings
from dbcopilot.errors import AlreadyStreaming, NoActiveStream
from dbcopilot.models.stream import StreamState

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class StreamSession:
    """Live, cancellable orchestration of one AI response."""

    chat_id: str
    session_id: str = field(default_factory=lambda: uuid4().hex)
    state: StreamState = StreamState.PENDING
    sequence: int = 0
    cancel_requested: bool = False
    reason: str | None = None
    task: asyncio.Task | None = None
    inflight: asyncio.Task | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    emit_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence

    def request_cancel(self) -> None:
        """Flag the session and ask any in-flight execution to stop."""
        self.cancel_requested = True
        self.cancel_event.set()
        if self.inflight is not None and not self.inflight.done():
            self.inflight.cancel()


class StreamSessionRegistry:
    """Owns every StreamSession of the process, one slot per chat."""

    def __init__(self, settings: StreamSettings | None = None):
        self.settings = settings or StreamSettings()
        self._sessions: dict[str, StreamSession] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    def start(self, chat_id: str) -> StreamSession:
        """
        Register a new session for ``chat_id``.

        Raises:
            AlreadyStreaming: A non-terminal session already exists
        """
        current = self._sessions.get(chat_id)
        if current is not None and not current.is_terminal:
            raise AlreadyStreaming(
                f"Chat {chat_id} already has an active stream",
                context={"chat_id": chat_id, "session_id": current.session_id},
            )
        self._cancel_eviction(chat_id)
        session = StreamSession(chat_id=chat_id)
        self._sessions[chat_id] = session
        logger.info(
            f"Stream session {session.session_id} registered for chat {chat_id}",
            extra={"chat_id": chat_id, "session_id": session.session_id},
        )
        return session

    def get(self, chat_id: str) -> StreamSession | None:
        """Current session, including a terminal one still inside its grace window."""
        return self._sessions.get(chat_id)

    def get_active(self, chat_id: str) -> StreamSession | None:
        session = self._sessions.get(chat_id)
        return session if session is not None and not session.is_terminal else None

    def cancel(self, chat_id: str) -> StreamSession:
        """
        Request cancellation of the chat's active session.

        Raises:
            NoActiveStream: No non-terminal session exists
        """
        session = self.get_active(chat_id)
        if session is None:
            raise NoActiveStream(
                f"Chat {chat_id} has no active stream", context={"chat_id": chat_id}
            )
        if not session.cancel_requested:
            logger.info(
                f"Cancel requested for stream {session.session_id}",
                extra={"chat_id": chat_id, "session_id": session.session_id},
            )
        session.request_cancel()
        return session

    def mark_streaming(self, chat_id: str) -> StreamSession:
        session = self._require(chat_id)
        if session.state == StreamState.PENDING:
            session.state = StreamState.STREAMING
        return session

    def complete(self, chat_id: str) -> StreamSession:
        return self._finish(chat_id, StreamState.COMPLETED)

    def fail(self, chat_id: str, reason: str) -> StreamSession:
        return self._finish(chat_id, StreamState.FAILED, reason=reason)

    def mark_cancelled(self, chat_id: str) -> StreamSession:
        return self._finish(chat_id, StreamState.CANCELLED)

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.is_terminal)

    def active_sessions(self) -> list[StreamSession]:
        return [s for s in self._sessions.values() if not s.is_terminal]

    def _require(self, chat_id: str) -> StreamSession:
        session = self._sessions.get(chat_id)
        if session is None:
            raise NoActiveStream(
                f"Chat {chat_id} has no stream session", context={"chat_id": chat_id}
            )
        return session

    def _finish(
        self, chat_id: str, state: StreamState, reason: str | None = None
    ) -> StreamSession:
        session = self._require(chat_id)
        if session.is_terminal:
            return session
        session.state = state
        session.reason = reason
        session.finished_at = datetime.now(UTC)
        logger.info(
            f"Stream session {session.session_id} {state.value}"
            + (f": {reason}" if reason else ""),
            extra={"chat_id": chat_id, "session_id": session.session_id},
        )
        self._schedule_eviction(chat_id, session)
        return session

    def _schedule_eviction(self, chat_id: str, session: StreamSession) -> None:
        self._cancel_eviction(chat_id)
        loop = asyncio.get_running_loop()
        self._evictions[chat_id] = loop.call_later(
            self.settings.terminal_grace_seconds, self._evict, chat_id, session
        )

    def _cancel_eviction(self, chat_id: str) -> None:
        handle = self._evictions.pop(chat_id, None)
        if handle is not None:
            handle.cancel()

    def _evict(self, chat_id: str, session: StreamSession) -> None:
        self._evictions.pop(chat_id, None)
        if self._sessions.get(chat_id) is session:
            del self._sessions[chat_id]
            logger.debug(f"Evicted terminal stream session {session.session_id}")
