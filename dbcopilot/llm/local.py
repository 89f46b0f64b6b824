"""
Local LLM Provider

Implementation of BaseLLMProvider for local models.
Supports Ollama, vLLM, llama.cpp server, and any OpenAI-compatible endpoint.
"""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from dbcopilot.errors import AIServiceUnavailable
from dbcopilot.llm.base import BaseLLMProvider
from dbcopilot.llm.models import LLMRequest, LLMStreamChunk, LLMToolCall

logger = logging.getLogger(__name__)


class LocalProvider(BaseLLMProvider):
    """
    Local LLM provider implementation.

    Supports local model servers like Ollama, vLLM, and llama.cpp that
    expose an OpenAI-compatible API.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: int = 30,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize local provider.

        Args:
            base_url: Base URL for local model server
            model: Model name (e.g., "llama3.1:8b" for Ollama)
            temperature: Default temperature
            max_tokens: Default max tokens
            timeout: Request timeout
            client: Preconfigured HTTP client (tests)
        """
        super().__init__(
            provider_name="local",
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )

        self.base_url = base_url.rstrip("/")
        self.model = model
        self.client = client or httpx.AsyncClient(timeout=float(timeout))

        logger.info(
            f"Local provider initialized: {base_url} with model: {model}",
            extra={"base_url": base_url, "model": model},
        )

    async def stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        """Stream completion from the OpenAI-compatible ``/v1/chat/completions`` endpoint."""
        request = self._apply_defaults(request)
        request.stream = True
        self._log_request(request)

        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "messages": [{"role": msg.role, "content": msg.content} for msg in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": True,
        }
        if request.tools:
            payload["tools"] = request.tools

        pending: dict[int, dict[str, Any]] = {}
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/v1/chat/completions",
                json=payload,
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data: ") or line.endswith("[DONE]"):
                        continue
                    chunk_data = json.loads(line[6:])
                    choice = (chunk_data.get("choices") or [{}])[0]
                    delta = choice.get("delta", {})

                    if content := delta.get("content"):
                        yield LLMStreamChunk(content=content)

                    for call in delta.get("tool_calls") or []:
                        entry = pending.setdefault(
                            call.get("index", 0), {"id": None, "name": "", "arguments": ""}
                        )
                        function = call.get("function") or {}
                        entry["id"] = call.get("id") or entry["id"]
                        entry["name"] += function.get("name") or ""
                        entry["arguments"] += function.get("arguments") or ""

                    if finish_reason := choice.get("finish_reason"):
                        for index in sorted(pending):
                            entry = pending[index]
                            yield LLMStreamChunk(
                                tool_call=LLMToolCall(
                                    id=entry["id"],
                                    name=entry["name"],
                                    arguments=json.loads(entry["arguments"] or "{}"),
                                )
                            )
                        pending.clear()
                        yield LLMStreamChunk(
                            finish_reason=finish_reason
                            if finish_reason in ("stop", "length", "tool_calls")
                            else "stop"
                        )

        except httpx.HTTPError as e:
            logger.error(f"Local model streaming error: {e}")
            raise AIServiceUnavailable(f"Local model server error: {e}") from e
        except json.JSONDecodeError as e:
            logger.error(f"Local model sent malformed chunk: {e}")
            raise AIServiceUnavailable("Local model server sent a malformed chunk") from e

    async def close(self) -> None:
        await self.client.aclose()
