"""
Chat Repository

Persistence boundary for Connections, Chats, Messages and QueryProposals.
The orchestrator and API only talk to the ``ChatRepository`` protocol; the
in-memory implementation backs tests and single-process deployments.

Records are copied on the way in and on the way out, so callers must save
after mutating, the same as with a database-backed store.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime
from typing import Protocol

from dbcopilot.errors import (
    ChatNotFound,
    ConnectionInUse,
    ConnectionNotFound,
    InvalidProposalTransition,
    ProposalNotFound,
)
from dbcopilot.models.chat import Chat, Message, QueryProposal
from dbcopilot.models.database import Connection

logger = logging.getLogger(__name__)


class ChatRepository(Protocol):
    async def add_connection(self, connection: Connection) -> Connection: ...

    async def get_connection(self, connection_id: str) -> Connection: ...

    async def rotate_credentials(self, connection_id: str, credentials_ref: str) -> Connection: ...

    async def delete_connection(self, connection_id: str, *, cascade: bool = False) -> list[str]: ...

    async def add_chat(self, chat: Chat) -> Chat: ...

    async def get_chat(self, chat_id: str) -> Chat: ...

    async def get_owned_chat(self, chat_id: str, owner_id: str) -> Chat: ...

    async def list_chats(self, owner_id: str) -> list[Chat]: ...

    async def save_message(self, message: Message) -> Message: ...

    async def list_messages(self, chat_id: str, *, limit: int | None = None) -> list[Message]: ...

    async def save_proposal(self, chat_id: str, proposal: QueryProposal) -> QueryProposal: ...

    async def find_proposal(self, chat_id: str, proposal_id: str) -> QueryProposal: ...


class InMemoryChatRepository:
    """Dictionary-backed ChatRepository."""

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._chats: dict[str, Chat] = {}
        self._messages: dict[str, dict[str, Message]] = defaultdict(dict)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def add_connection(self, connection: Connection) -> Connection:
        self._connections[connection.connection_id] = connection.model_copy(deep=True)
        logger.info(f"Stored connection {connection.connection_id} ({connection.describe()})")
        return connection

    async def get_connection(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise ConnectionNotFound(
                f"Connection {connection_id} not found",
                context={"connection_id": connection_id},
            )
        return connection.model_copy(deep=True)

    async def rotate_credentials(self, connection_id: str, credentials_ref: str) -> Connection:
        """Replace the stored credential token; the only mutation a Connection allows."""
        connection = await self.get_connection(connection_id)
        rotated = connection.model_copy(update={"credentials_ref": credentials_ref})
        self._connections[connection_id] = rotated
        logger.info(f"Rotated credentials for connection {connection_id}")
        return rotated.model_copy(deep=True)

    async def delete_connection(self, connection_id: str, *, cascade: bool = False) -> list[str]:
        """
        Delete a Connection.

        Returns:
            IDs of chats deleted along with it (only when ``cascade=True``)

        Raises:
            ConnectionNotFound: Unknown connection
            ConnectionInUse: Chats still reference it and cascade was not requested
        """
        await self.get_connection(connection_id)
        chat_ids = [c.chat_id for c in self._chats.values() if c.connection_id == connection_id]
        if chat_ids and not cascade:
            raise ConnectionInUse(
                f"Connection {connection_id} is used by {len(chat_ids)} chat(s)",
                context={"connection_id": connection_id, "chat_ids": chat_ids},
            )
        for chat_id in chat_ids:
            self._chats.pop(chat_id, None)
            self._messages.pop(chat_id, None)
        del self._connections[connection_id]
        logger.info(
            f"Deleted connection {connection_id}"
            + (f" and {len(chat_ids)} chat(s)" if chat_ids else "")
        )
        return chat_ids

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def add_chat(self, chat: Chat) -> Chat:
        await self.get_connection(chat.connection_id)
        self._chats[chat.chat_id] = chat.model_copy(deep=True)
        return chat

    async def get_chat(self, chat_id: str) -> Chat:
        chat = self._chats.get(chat_id)
        if chat is None:
            raise ChatNotFound(f"Chat {chat_id} not found", context={"chat_id": chat_id})
        return chat.model_copy(deep=True)

    async def get_owned_chat(self, chat_id: str, owner_id: str) -> Chat:
        """Fetch a chat, hiding chats owned by someone else as not found."""
        chat = await self.get_chat(chat_id)
        if chat.owner_id != owner_id:
            raise ChatNotFound(f"Chat {chat_id} not found", context={"chat_id": chat_id})
        return chat

    async def list_chats(self, owner_id: str) -> list[Chat]:
        chats = [c for c in self._chats.values() if c.owner_id == owner_id]
        return [c.model_copy(deep=True) for c in sorted(chats, key=lambda c: c.created_at)]

    # ------------------------------------------------------------------
    # Messages and proposals
    # ------------------------------------------------------------------

    async def save_message(self, message: Message) -> Message:
        """
        Insert or replace a message and touch its chat.

        A proposal already settled or edited in the store is never reverted by
        a stale copy still showing it as originally proposed.
        """
        chat = self._chats.get(message.chat_id)
        if chat is None:
            raise ChatNotFound(
                f"Chat {message.chat_id} not found", context={"chat_id": message.chat_id}
            )
        stored = message.model_copy(deep=True)
        existing = self._messages[message.chat_id].get(message.message_id)
        if existing is not None:
            settled = {
                p.proposal_id: p for p in existing.proposals if p.is_terminal or p.is_edited
            }
            stored.proposals = [
                settled.get(p.proposal_id, p) if not p.is_terminal else p
                for p in stored.proposals
            ]
        self._messages[message.chat_id][message.message_id] = stored
        chat.updated_at = datetime.now(UTC)
        return message

    async def list_messages(self, chat_id: str, *, limit: int | None = None) -> list[Message]:
        """Messages in creation order; ``limit`` keeps the most recent ones."""
        messages = sorted(self._messages.get(chat_id, {}).values(), key=lambda m: m.created_at)
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return [m.model_copy(deep=True) for m in messages]

    async def save_proposal(self, chat_id: str, proposal: QueryProposal) -> QueryProposal:
        message = self._messages.get(chat_id, {}).get(proposal.message_id)
        if message is None:
            raise ProposalNotFound(
                f"Message {proposal.message_id} for proposal {proposal.proposal_id} not found",
                context={"chat_id": chat_id, "proposal_id": proposal.proposal_id},
            )
        stored = proposal.model_copy(deep=True)
        for index, existing in enumerate(message.proposals):
            if existing.proposal_id == proposal.proposal_id:
                if existing.is_terminal and existing.status != proposal.status:
                    raise InvalidProposalTransition(
                        f"Proposal {proposal.proposal_id} is already {existing.status.value}",
                        context={"chat_id": chat_id, "proposal_id": proposal.proposal_id},
                    )
                message.proposals[index] = stored
                break
        else:
            message.proposals.append(stored)
        return proposal

    async def find_proposal(self, chat_id: str, proposal_id: str) -> QueryProposal:
        for message in self._messages.get(chat_id, {}).values():
            proposal = message.proposal(proposal_id)
            if proposal is not None:
                return proposal.model_copy(deep=True)
        raise ProposalNotFound(
            f"Proposal {proposal_id} not found in chat {chat_id}",
            context={"chat_id": chat_id, "proposal_id": proposal_id},
        )
