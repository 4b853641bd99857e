"""Vendor adapters behind one streaming-completion contract.

Exports:
- ProviderAdapter: Abstract base every adapter implements
- build_adapter: Vendor -> adapter factory
- Neutral request/response types (ChatMessage, StreamChunk, ...)
"""

from src.providers.base import ProviderAdapter
from src.providers.config import (
    Attachment,
    CancellationToken,
    ChatMessage,
    Completion,
    CompletionParams,
    FinishReason,
    ProviderConfig,
    StreamChunk,
    ToolCallDelta,
    ToolDefinition,
    Usage,
)
from src.providers.registry import ADAPTERS, build_adapter

__all__ = [
    "ProviderAdapter",
    "build_adapter",
    "ADAPTERS",
    "Attachment",
    "CancellationToken",
    "ChatMessage",
    "Completion",
    "CompletionParams",
    "FinishReason",
    "ProviderConfig",
    "StreamChunk",
    "ToolCallDelta",
    "ToolDefinition",
    "Usage",
]
