"""
Streaming Module

Stream session registry, AI chunk source, schema context, response
orchestrator and the delivery hub feeding SSE listeners.
"""

from dbcopilot.streaming.chunks import AIChunk, AIChunkSource, ChunkKind, ChunkRequest
from dbcopilot.streaming.delivery import DeliveryHub
from dbcopilot.streaming.orchestrator import ResponseOrchestrator
from dbcopilot.streaming.registry import StreamSession, StreamSessionRegistry
from dbcopilot.streaming.schema import SchemaCatalog, SchemaSnapshot

__all__ = [
    "AIChunk",
    "AIChunkSource",
    "ChunkKind",
    "ChunkRequest",
    "DeliveryHub",
    "ResponseOrchestrator",
    "SchemaCatalog",
    "SchemaSnapshot",
    "StreamSession",
    "StreamSessionRegistry",
]
