"""Configuration and wire types shared by every vendor adapter.

Adapters translate between these vendor-neutral types and each
vendor's SDK objects, so the orchestrator never sees a vendor type.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from src.services.model_catalog import Vendor

ReasoningEffort = Literal["low", "medium", "high"]


class FinishReason(str, Enum):
    """Normalized reason a completion ended."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    CANCELLED = "cancelled"
    ERROR = "error"


_FINISH_REASON_MAP = {
    # OpenAI-compatible
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
    # Anthropic
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.CONTENT_FILTER,
    # Gemini via OpenAI compatibility
    "safety": FinishReason.CONTENT_FILTER,
}


def normalize_finish_reason(raw: str | None) -> str | None:
    """Map a vendor finish reason onto FinishReason values.

    Unknown reasons pass through lower-cased rather than being guessed.
    """
    if raw is None:
        return None
    mapped = _FINISH_REASON_MAP.get(str(raw).lower())
    return mapped.value if mapped else str(raw).lower()


@dataclass
class ProviderConfig:
    """Connection configuration for one adapter instance."""

    vendor: Vendor
    api_key: str
    base_url: str | None = None
    timeout_seconds: float = 600.0
    max_retries: int = 2
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Attachment:
    """Reference to user content already stored elsewhere."""

    type: str
    url: str
    mime_type: str = ""
    file_name: str = ""
    size: int = 0


@dataclass
class ChatMessage:
    """Vendor-neutral chat message."""

    role: str
    content: str
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class ToolDefinition:
    """Function tool offered to the model (JSON-schema parameters)."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionParams:
    """Sampling parameters for one completion request."""

    temperature: float | None = 0.7
    max_tokens: int | None = None
    reasoning_effort: ReasoningEffort | None = None
    tools: list[ToolDefinition] = field(default_factory=list)


@dataclass
class Usage:
    """Token usage as reported by the vendor. Missing counts stay None."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ToolCallDelta:
    """Incremental piece of a tool call, keyed by its index in the turn."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments_delta: str = ""


@dataclass
class StreamChunk:
    """One increment of a streamed completion."""

    content_delta: str = ""
    reasoning_delta: str = ""
    tool_call_deltas: list[ToolCallDelta] = field(default_factory=list)
    annotations: list[dict[str, Any]] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None
    generation_id: str | None = None

    @property
    def has_text(self) -> bool:
        return bool(self.content_delta or self.reasoning_delta)


@dataclass
class Completion:
    """Result of a non-streaming completion."""

    text: str = ""
    usage: Usage | None = None
    finish_reason: str | None = None
    model: str = ""


class CancellationToken:
    """Cooperative cancellation flag checked once per streamed chunk."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
