"""
Delivery Hub

Per-chat ring buffers of StreamEvents with any number of subscribers.

A subscriber asks for events after a sequence number, receives the buffered
backlog, then live events, and its iterator ends once the terminal event has
been delivered. Events that have already fallen out of the ring cannot be
replayed; the subscriber gets ``BacklogUnavailable`` and should reload the
persisted messages instead.

Producers never wait on subscribers: publishing only appends and notifies.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator

from dbcopilot.config import StreamSettings
from dbcopilot.errors import BacklogUnavailable, NoActiveStream
from dbcopilot.models.stream import StreamEvent

logger = logging.getLogger(__name__)


class _Channel:
    def __init__(self, chat_id: str, session_id: str, size: int):
        self.chat_id = chat_id
        self.session_id = session_id
        self.events: deque[StreamEvent] = deque(maxlen=size)
        self.evicted_through = 0
        self.last_sequence = 0
        self.finished = False
        self.condition = asyncio.Condition()


class DeliveryHub:
    """Fan-out of stream events to SSE subscribers with resumable backlog."""

    def __init__(self, settings: StreamSettings | None = None):
        self.settings = settings or StreamSettings()
        self._channels: dict[str, _Channel] = {}
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    def open(self, chat_id: str, session_id: str) -> None:
        """Start a fresh ring for the chat's new session, replacing the previous one."""
        handle = self._evictions.pop(chat_id, None)
        if handle is not None:
            handle.cancel()
        previous = self._channels.get(chat_id)
        if previous is not None and not previous.finished:
            logger.warning(
                f"Replacing unfinished delivery channel for chat {chat_id}",
                extra={"chat_id": chat_id, "session_id": previous.session_id},
            )
        self._channels[chat_id] = _Channel(chat_id, session_id, self.settings.buffer_size)

    async def publish(self, event: StreamEvent) -> None:
        """Append an event and wake subscribers."""
        channel = self._channels.get(event.chat_id)
        if channel is None or channel.session_id != event.session_id:
            logger.warning(
                f"Dropping event {event.sequence} for closed channel of chat {event.chat_id}",
                extra={"chat_id": event.chat_id, "session_id": event.session_id},
            )
            return
        async with channel.condition:
            if len(channel.events) == channel.events.maxlen:
                channel.evicted_through = channel.events[0].sequence
            channel.events.append(event)
            channel.last_sequence = event.sequence
            if event.is_terminal:
                channel.finished = True
            channel.condition.notify_all()
        if event.is_terminal:
            self._schedule_eviction(channel)

    async def subscribe(
        self, chat_id: str, after_sequence: int = 0
    ) -> AsyncIterator[StreamEvent]:
        """
        Yield events with ``sequence > after_sequence``, backlog first, then live.

        Raises:
            NoActiveStream: The chat has no delivery channel
            BacklogUnavailable: Requested events were evicted from the ring
        """
        channel = self.ensure_available(chat_id, after_sequence)
        cursor = max(after_sequence, 0)
        while True:
            async with channel.condition:
                if cursor < channel.evicted_through:
                    raise BacklogUnavailable(
                        f"Events after {cursor} are no longer buffered; "
                        f"oldest available is {channel.evicted_through + 1}",
                        context={"chat_id": chat_id, "session_id": channel.session_id},
                    )
                pending = [event for event in channel.events if event.sequence > cursor]
                if not pending:
                    if channel.finished:
                        return
                    await channel.condition.wait()
                    continue

            for event in pending:
                yield event
                cursor = event.sequence
                if event.is_terminal:
                    return

    def ensure_available(self, chat_id: str, after_sequence: int = 0) -> _Channel:
        """Check up front that a subscription could start, before any response is sent."""
        channel = self._channels.get(chat_id)
        if channel is None:
            raise NoActiveStream(
                f"Chat {chat_id} has no stream to subscribe to", context={"chat_id": chat_id}
            )
        if after_sequence < channel.evicted_through:
            raise BacklogUnavailable(
                f"Events after {after_sequence} are no longer buffered",
                context={"chat_id": chat_id, "session_id": channel.session_id},
            )
        return channel

    def last_sequence(self, chat_id: str) -> int:
        channel = self._channels.get(chat_id)
        return channel.last_sequence if channel else 0

    async def close(self) -> None:
        """End every subscription (application shutdown)."""
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        for channel in self._channels.values():
            async with channel.condition:
                channel.finished = True
                channel.condition.notify_all()
        self._channels.clear()

    def _schedule_eviction(self, channel: _Channel) -> None:
        loop = asyncio.get_running_loop()
        previous = self._evictions.pop(channel.chat_id, None)
        if previous is not None:
            previous.cancel()
        self._evictions[channel.chat_id] = loop.call_later(
            self.settings.terminal_grace_seconds, self._evict, channel
        )

    def _evict(self, channel: _Channel) -> None:
        self._evictions.pop(channel.chat_id, None)
        if self._channels.get(channel.chat_id) is channel:
            del self._channels[channel.chat_id]
