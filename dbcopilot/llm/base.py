"""
Base LLM Provider

Abstract base class defining the interface for all LLM providers.
Ensures consistent API across OpenAI and local model servers.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from dbcopilot.llm.models import LLMRequest, LLMStreamChunk

logger = logging.getLogger(__name__)


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Providers raise ``AIServiceUnavailable`` for transport and API failures
    so the orchestrator can fail a stream without knowing the SDK.

    Attributes:
        provider_name: Unique identifier for this provider
        temperature: Default sampling temperature
        max_tokens: Default maximum tokens to generate
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        provider_name: str,
        temperature: float = 0.0,
        max_tokens: int = 2000,
        timeout: int = 30,
    ):
        self.provider_name = provider_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

        logger.info(
            f"Initialized {provider_name} provider",
            extra={
                "provider": provider_name,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

    @abstractmethod
    def stream(self, request: LLMRequest) -> AsyncIterator[LLMStreamChunk]:
        """
        Stream a completion from the LLM.

        Yields chunks of generated text as they're produced, plus one chunk
        per completed tool call.

        Args:
            request: LLM request with messages and parameters

        Yields:
            LLMStreamChunk: Text or tool-call chunks

        Raises:
            AIServiceUnavailable: The provider failed or dropped the stream
        """
        pass  # pragma: no cover - abstract method

    async def close(self) -> None:
        """Release provider resources (HTTP clients)."""
        return None

    def _apply_defaults(self, request: LLMRequest) -> LLMRequest:
        """Apply default values to request if not specified."""
        if request.temperature is None:
            request.temperature = self.temperature
        if request.max_tokens is None:
            request.max_tokens = self.max_tokens
        return request

    def _log_request(self, request: LLMRequest) -> None:
        """Log request details for debugging."""
        logger.debug(
            f"{self.provider_name} request",
            extra={
                "provider": self.provider_name,
                "message_count": len(request.messages),
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "stream": request.stream,
                "tools": len(request.tools),
            },
        )
