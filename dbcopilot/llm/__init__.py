"""
LLM Provider Module

Streaming LLM abstraction supporting OpenAI and local OpenAI-compatible models.

Usage:
    from dbcopilot.llm import LLMProviderFactory, LLMRequest, LLMMessage
    from dbcopilot.config import get_settings

    provider = LLMProviderFactory.create_default_provider(get_settings().llm)

    request = LLMRequest(messages=[LLMMessage(role="user", content="Hello!")])
    async for chunk in provider.stream(request):
        print(chunk.content, end="")
"""

from dbcopilot.llm.base import BaseLLMProvider
from dbcopilot.llm.factory import LLMProviderFactory
from dbcopilot.llm.local import LocalProvider
from dbcopilot.llm.models import LLMMessage, LLMRequest, LLMStreamChunk, LLMToolCall
from dbcopilot.llm.openai import OpenAIProvider

__all__ = [
    # Base classes
    "BaseLLMProvider",
    # Models
    "LLMMessage",
    "LLMRequest",
    "LLMStreamChunk",
    "LLMToolCall",
    # Factory
    "LLMProviderFactory",
    # Providers
    "OpenAIProvider",
    "LocalProvider",
]
