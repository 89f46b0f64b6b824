"""
LLM Request and Stream Models

Pydantic models for LLM provider interactions.
Provider-agnostic models that work across OpenAI and local OpenAI-compatible
servers.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class LLMMessage(BaseModel):
    """Single message in an LLM conversation."""

    role: Literal["system", "user", "assistant"] = Field(..., description="Message role")
    content: str = Field(..., description="Message content", min_length=1)


class LLMRequest(BaseModel):
    """Request to an LLM provider."""

    messages: list[LLMMessage] = Field(
        ..., description="Conversation messages", min_length=1
    )
    temperature: float | None = Field(
        None, ge=0.0, le=2.0, description="Sampling temperature (overrides default)"
    )
    max_tokens: int | None = Field(
        None, gt=0, description="Maximum tokens to generate (overrides default)"
    )
    stream: bool = Field(default=False, description="Whether to stream the response")
    model: str | None = Field(None, description="Specific model to use (overrides default)")
    tools: list[dict[str, Any]] = Field(
        default_factory=list, description="Function tools in OpenAI schema"
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Additional provider-specific parameters"
    )


class LLMToolCall(BaseModel):
    """A complete function call assembled from streamed deltas."""

    id: str | None = Field(None, description="Provider call id")
    name: str = Field(..., description="Function name")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Decoded arguments")


class LLMStreamChunk(BaseModel):
    """Streaming response chunk from an LLM provider."""

    content: str = Field(default="", description="Chunk of generated text")
    tool_call: LLMToolCall | None = Field(None, description="Completed tool call, if any")
    finish_reason: Literal["stop", "length", "content_filter", "tool_calls", "error"] | None = (
        Field(None, description="Reason if this is the final chunk")
    )
    metadata: dict[str, Any] = Field(default_factory=dict, description="Additional chunk metadata")
