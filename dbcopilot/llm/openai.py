"""
OpenAI LLM Provider

Implementation of BaseLLMProvider for OpenAI's GPT models.
Supports GPT-4o, GPT-4o-mini, etc. Streams text deltas and assembles
function-call deltas into complete tool calls.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from dbcopilot.errors import AIServiceUnavailable
from dbcopilot.llm.base import BaseLLMProvider
from dbcopilot.llm.models import LLMRequest, LLMStreamChunk, LLMToolCall

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseLLMProvider):
    """
    OpenAI LLM provider implementation.

    Uses the official openai Python SDK with async support.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: int = 30,
    ):
        """
        Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key
            model: Default model to use
            temperature: Default temperature
            max_tokens: Default max tokens
            timeout: Request timeout
        """
        super().__init__(
            provider_name="openai",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

        self.model = model
        self.client = AsyncOpenAI(
            api_key=api_key,
            timeout=float(timeout),
        )

        logger.info(f"OpenAI provider initialized with model: {model}", extra={"model": model})

    async def stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        """
        Stream completion using OpenAI API.

        Args:
            request: LLM request

        Yields:
            LLMStreamChunk with text content or a completed tool call

        Raises:
            AIServiceUnavailable: On API errors, timeouts or malformed tool arguments
        """
        request = self._apply_defaults(request)
        request.stream = True
        self._log_request(request)

        messages = [{"role": msg.role, "content": msg.content} for msg in request.messages]
        params: dict[str, Any] = {
            "model": request.model or self.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": True,
            **request.metadata,
        }
        if request.tools:
            params["tools"] = request.tools

        pending: dict[int, dict[str, Any]] = {}
        try:
            stream = await self.client.chat.completions.create(**params)

            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta.content:
                    yield LLMStreamChunk(content=delta.content, metadata={"id": chunk.id})

                for call in delta.tool_calls or []:
                    entry = pending.setdefault(call.index, {"id": None, "name": "", "arguments": ""})
                    if call.id:
                        entry["id"] = call.id
                    if call.function and call.function.name:
                        entry["name"] += call.function.name
                    if call.function and call.function.arguments:
                        entry["arguments"] += call.function.arguments

                if choice.finish_reason:
                    for index in sorted(pending):
                        yield LLMStreamChunk(tool_call=self._finish_tool_call(pending[index]))
                    pending.clear()
                    yield LLMStreamChunk(
                        finish_reason=self._map_finish_reason(choice.finish_reason),
                        metadata={"id": chunk.id},
                    )

        except openai.APITimeoutError as e:
            logger.error(f"OpenAI API timeout: {e}")
            raise AIServiceUnavailable(f"AI service timed out: {e}") from e
        except openai.APIError as e:
            logger.error(f"OpenAI streaming error: {e}")
            raise AIServiceUnavailable(f"AI service error: {e}") from e

    @staticmethod
    def _finish_tool_call(entry: dict[str, Any]) -> LLMToolCall:
        raw = entry["arguments"] or "{}"
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            raise AIServiceUnavailable(
                f"AI service sent malformed arguments for tool '{entry['name']}'"
            ) from e
        if not isinstance(arguments, dict):
            arguments = {"value": arguments}
        return LLMToolCall(id=entry["id"], name=entry["name"], arguments=arguments)

    def _map_finish_reason(self, reason: str | None) -> str:
        """Map OpenAI finish reason to our standard format."""
        if reason in ("stop", "length", "content_filter", "tool_calls"):
            return reason
        return "stop"

    async def close(self) -> None:
        await self.client.close()
