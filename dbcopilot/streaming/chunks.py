"""
AI Chunk Source

Turns a provider's token stream into classified chunks the orchestrator can
act on:

- ``TEXT``: prose to forward as ``text_delta``
- ``PROPOSAL``: a query from a fenced ```sql / ```mongodb block or a
  ``propose_query`` tool call
- ``TOOL_CALL``: any other tool call

Text deltas without fences pass through one-to-one. Fenced blocks are held
until their closing fence arrives.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dbcopilot.connectors import get_variant
from dbcopilot.errors import AIServiceUnavailable
from dbcopilot.llm.base import BaseLLMProvider
from dbcopilot.llm.models import LLMMessage, LLMRequest, LLMToolCall
from dbcopilot.models.chat import Chat, Message
from dbcopilot.models.database import Connection
from dbcopilot.prompts import PromptLoader

logger = logging.getLogger(__name__)

FENCE = "```"
QUERY_LANGUAGES = frozenset(
    {"sql", "postgresql", "postgres", "mysql", "clickhouse", "mongodb", "mongo"}
)
ENGINE_LABELS = {
    "postgresql": "PostgreSQL",
    "mysql": "MySQL",
    "clickhouse": "ClickHouse",
    "mongodb": "MongoDB",
}

PROPOSE_QUERY_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "propose_query",
        "description": "Propose a single query to run against the user's database.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The query text"},
                "explanation": {
                    "type": "string",
                    "description": "One sentence describing what the query does",
                },
                "rollback_query": {
                    "type": "string",
                    "description": "For data changes, a query that undoes this one",
                },
            },
            "required": ["query"],
        },
    },
}


class ChunkKind(str, Enum):
    TEXT = "text"
    PROPOSAL = "proposal"
    TOOL_CALL = "tool_call"


@dataclass
class AIChunk:
    """One classified unit of AI output."""

    kind: ChunkKind
    text: str = ""
    query: str | None = None
    explanation: str | None = None
    rollback_query: str | None = None
    tool_name: str | None = None
    tool_arguments: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_text(cls, text: str) -> AIChunk:
        return cls(kind=ChunkKind.TEXT, text=text)

    @classmethod
    def proposal(
        cls, query: str, explanation: str | None = None, rollback_query: str | None = None
    ) -> AIChunk:
        return cls(
            kind=ChunkKind.PROPOSAL,
            query=query,
            explanation=explanation,
            rollback_query=rollback_query,
        )

    @classmethod
    def tool_call(cls, name: str, arguments: dict[str, Any]) -> AIChunk:
        return cls(kind=ChunkKind.TOOL_CALL, tool_name=name, tool_arguments=arguments)


class FencedBlockAssembler:
    """Incrementally splits streamed text into prose and fenced query blocks."""

    def __init__(self) -> None:
        self._buffer = ""
        self._in_fence = False

    def feed(self, delta: str) -> Iterator[AIChunk]:
        self._buffer += delta
        while True:
            if self._in_fence:
                chunk = self._close_fence()
                if chunk is None:
                    return
                yield chunk
                continue

            start = self._buffer.find(FENCE)
            if start == -1:
                # Hold trailing backticks that may be the start of a fence.
                keep = len(self._buffer) - len(self._buffer.rstrip("`"))
                text, self._buffer = (
                    self._buffer[: len(self._buffer) - keep],
                    self._buffer[len(self._buffer) - keep :],
                )
                if text:
                    yield AIChunk.from_text(text)
                return

            if start > 0:
                yield AIChunk.from_text(self._buffer[:start])
            self._buffer = self._buffer[start + len(FENCE) :]
            self._in_fence = True

    def _close_fence(self) -> AIChunk | None:
        newline = self._buffer.find("\n")
        if newline == -1:
            return None
        end = self._buffer.find(FENCE, newline)
        if end == -1:
            return None

        language = self._buffer[:newline].strip().lower()
        body = self._buffer[newline + 1 : end].strip()
        raw = FENCE + self._buffer[: end + len(FENCE)]
        self._buffer = self._buffer[end + len(FENCE) :]
        self._in_fence = False

        if language in QUERY_LANGUAGES and body:
            return AIChunk.proposal(body)
        return AIChunk.from_text(raw)

    def flush(self) -> Iterator[AIChunk]:
        """Emit whatever is left when the stream ends (an unclosed fence stays prose)."""
        remainder = (FENCE if self._in_fence else "") + self._buffer
        self._buffer = ""
        self._in_fence = False
        if remainder:
            yield AIChunk.from_text(remainder)


@dataclass
class ChunkRequest:
    """Everything needed to prompt the AI for one response."""

    chat: Chat
    connection: Connection
    history: list[Message]
    user_message: Message
    schema: str | None = None


class AIChunkSource:
    """Prompts an LLM provider and yields classified chunks."""

    def __init__(self, provider: BaseLLMProvider, prompts: PromptLoader | None = None):
        self.provider = provider
        self.prompts = prompts or PromptLoader()

    def build_request(self, request: ChunkRequest) -> LLMRequest:
        chat, connection = request.chat, request.connection
        system = self.prompts.render(
            "copilot_system.md",
            engine_label=ENGINE_LABELS.get(connection.engine, connection.engine),
            database=connection.database,
            family=get_variant(connection.engine).family.value,
            auto_execute=chat.auto_execute,
            share_with_ai=chat.share_with_ai,
            schema=request.schema,
        )
        messages = [LLMMessage(role="system", content=system)]
        for message in request.history:
            if message.message_id == request.user_message.message_id:
                continue
            content = message.to_llm_context(include_rows=chat.share_with_ai)
            if content.strip():
                messages.append(LLMMessage(role=message.role, content=content))
        messages.append(LLMMessage(role="user", content=request.user_message.content))
        return LLMRequest(messages=messages, tools=[PROPOSE_QUERY_TOOL])

    async def chunks(self, request: ChunkRequest) -> AsyncIterator[AIChunk]:
        """
        Stream classified chunks for one AI response.

        A fresh iterator per call; it cannot be restarted.

        Raises:
            AIServiceUnavailable: The provider failed or sent malformed output
        """
        assembler = FencedBlockAssembler()
        async for piece in self.provider.stream(self.build_request(request)):
            if piece.content:
                for chunk in assembler.feed(piece.content):
                    yield chunk
            if piece.tool_call is not None:
                for chunk in assembler.flush():
                    yield chunk
                yield self._tool_chunk(piece.tool_call)
        for chunk in assembler.flush():
            yield chunk

    @staticmethod
    def _tool_chunk(call: LLMToolCall) -> AIChunk:
        if call.name != "propose_query":
            return AIChunk.tool_call(call.name, call.arguments)
        query = call.arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            raise AIServiceUnavailable("AI service sent propose_query without a query")
        explanation = call.arguments.get("explanation")
        rollback = call.arguments.get("rollback_query")
        return AIChunk.proposal(
            query.strip(),
            explanation if isinstance(explanation, str) else None,
            rollback.strip() if isinstance(rollback, str) and rollback.strip() else None,
        )
