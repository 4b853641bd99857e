"""Static, capability-annotated registry of models per vendor.

Vendors do not publish reliable machine-readable capability or pricing
metadata, so descriptors here are hard-coded and must be kept in step
with each vendor's model and pricing documentation. Rates are USD per
1,000 tokens.

Lookups never raise: get_model() returns None for unknown ids so the
orchestrator can turn a miss into a recorded NotFoundError itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from src.errors import NotFoundError

logger = logging.getLogger(__name__)

WEB_SEARCH_SUFFIX = ":online"


class Vendor(str, Enum):
    """External AI services a user can hold credentials for."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"
    TOGETHERAI = "togetherai"
    GROQ = "groq"
    MISTRAL = "mistral"


class AttachmentType(str, Enum):
    """Kinds of user-supplied content a message can reference."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


@dataclass(frozen=True)
class ModelCapabilities:
    """Feature flags for a model."""

    vision: bool = False
    tools: bool = False
    audio: bool = False
    video: bool = False
    documents: bool = False
    reasoning: bool = False
    streaming: bool = True


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable catalog entry for one addressable model."""

    vendor: Vendor
    id: str
    display_name: str
    context_window: int
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    description: str = ""
    is_custom: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "vendor": self.vendor.value,
            "id": self.id,
            "display_name": self.display_name,
            "description": self.description,
            "context_window": self.context_window,
            "input_cost_per_1k": str(self.input_cost_per_1k),
            "output_cost_per_1k": str(self.output_cost_per_1k),
            "capabilities": {
                "vision": self.capabilities.vision,
                "tools": self.capabilities.tools,
                "audio": self.capabilities.audio,
                "video": self.capabilities.video,
                "documents": self.capabilities.documents,
                "reasoning": self.capabilities.reasoning,
                "streaming": self.capabilities.streaming,
            },
            "is_custom": self.is_custom,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelDescriptor:
        """Build a descriptor from a stored custom-model dict.

        Raises:
            ValueError: If vendor or id is missing or the vendor is unknown.
        """
        if not data.get("id") or not data.get("vendor"):
            raise ValueError("custom model requires 'vendor' and 'id'")
        caps = data.get("capabilities") or {}
        return cls(
            vendor=Vendor(data["vendor"]),
            id=str(data["id"]),
            display_name=str(data.get("display_name") or data["id"]),
            description=str(data.get("description") or ""),
            context_window=int(data.get("context_window") or 0),
            input_cost_per_1k=Decimal(str(data.get("input_cost_per_1k") or "0")),
            output_cost_per_1k=Decimal(str(data.get("output_cost_per_1k") or "0")),
            capabilities=ModelCapabilities(
                vision=bool(caps.get("vision", False)),
                tools=bool(caps.get("tools", False)),
                audio=bool(caps.get("audio", False)),
                video=bool(caps.get("video", False)),
                documents=bool(caps.get("documents", False)),
                reasoning=bool(caps.get("reasoning", False)),
                streaming=bool(caps.get("streaming", True)),
            ),
            is_custom=True,
        )


def _model(
    vendor: Vendor,
    model_id: str,
    display_name: str,
    context_window: int,
    input_rate: str,
    output_rate: str,
    description: str = "",
    **caps: bool,
) -> ModelDescriptor:
    return ModelDescriptor(
        vendor=vendor,
        id=model_id,
        display_name=display_name,
        description=description,
        context_window=context_window,
        input_cost_per_1k=Decimal(input_rate),
        output_cost_per_1k=Decimal(output_rate),
        capabilities=ModelCapabilities(**caps),
    )


_ALL_MEDIA = dict(vision=True, tools=True, audio=True, video=True, documents=True)

BUILTIN_MODELS: tuple[ModelDescriptor, ...] = (
    # OpenAI
    _model(Vendor.OPENAI, "gpt-4.1-mini", "GPT-4.1 Mini", 128_000, "0.0004", "0.0016",
           "Fast, affordable model for everyday tasks", vision=True, tools=True),
    _model(Vendor.OPENAI, "gpt-4.1", "GPT-4.1", 128_000, "0.002", "0.008",
           "Flagship GPT model for complex tasks", vision=True, tools=True),
    _model(Vendor.OPENAI, "o4-mini", "o4-mini", 128_000, "0.0011", "0.0044",
           "Compact reasoning model", vision=True, tools=True, reasoning=True),
    # Anthropic
    _model(Vendor.ANTHROPIC, "claude-sonnet-4-20250514", "Claude Sonnet 4", 200_000,
           "0.003", "0.015", "Balanced Claude model with extended thinking",
           vision=True, tools=True, documents=True, reasoning=True),
    _model(Vendor.ANTHROPIC, "claude-opus-4-20250514", "Claude Opus 4", 200_000,
           "0.015", "0.075", "Most capable Claude model",
           vision=True, tools=True, documents=True, reasoning=True),
    _model(Vendor.ANTHROPIC, "claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 200_000,
           "0.0008", "0.004", "Fastest Claude model",
           vision=True, tools=True, documents=True),
    # Google
    _model(Vendor.GOOGLE, "gemini-2.5-pro", "Gemini 2.5 Pro", 1_048_576,
           "0.00125", "0.01", "Google's most capable multimodal model",
           reasoning=True, **_ALL_MEDIA),
    _model(Vendor.GOOGLE, "gemini-2.5-flash", "Gemini 2.5 Flash", 1_048_576,
           "0.0003", "0.0025", "Fast multimodal model with thinking",
           reasoning=True, **_ALL_MEDIA),
    _model(Vendor.GOOGLE, "gemini-2.5-flash-lite-preview-06-17", "Gemini 2.5 Flash Lite",
           1_048_576, "0.0001", "0.0004", "Lowest-latency Gemini model", **_ALL_MEDIA),
    # OpenRouter
    _model(Vendor.OPENROUTER, "anthropic/claude-sonnet-4", "Claude Sonnet 4 (OpenRouter)",
           200_000, "0.003", "0.015", vision=True, tools=True, documents=True),
    _model(Vendor.OPENROUTER, "google/gemini-2.5-pro", "Gemini 2.5 Pro (OpenRouter)",
           1_048_576, "0.00125", "0.01", reasoning=True, **_ALL_MEDIA),
    _model(Vendor.OPENROUTER, "qwen/qwen2.5-vl-72b-instruct", "Qwen2.5 VL 72B",
           32_000, "0.00025", "0.00075", **_ALL_MEDIA),
    _model(Vendor.OPENROUTER, "minimax/minimax-m1", "MiniMax M1", 1_000_000,
           "0.0003", "0.00165"),
    # DeepSeek
    _model(Vendor.DEEPSEEK, "deepseek-reasoner", "DeepSeek Reasoner", 200_000,
           "0.00055", "0.00219", "Reasoning model with visible chain of thought",
           reasoning=True),
    _model(Vendor.DEEPSEEK, "deepseek-chat", "DeepSeek Chat", 200_000,
           "0.00027", "0.0011", "General chat model"),
    # Together AI
    _model(Vendor.TOGETHERAI, "meta-llama/Llama-4-Maverick-17B-128E-Instruct-FP8",
           "Llama 4 Maverick", 1_048_576, "0.00027", "0.00085", vision=True),
    _model(Vendor.TOGETHERAI, "Qwen/Qwen3-235B-A22B-fp8-tput", "Qwen3 235B",
           40_960, "0.0002", "0.0006", reasoning=True),
    # Groq
    _model(Vendor.GROQ, "llama-3.3-70b-versatile", "Llama 3.3 70B", 132_000,
           "0.00059", "0.00079", tools=True),
    # Mistral
    _model(Vendor.MISTRAL, "magistral-medium-latest", "Magistral Medium", 40_000,
           "0.002", "0.005", reasoning=True),
    _model(Vendor.MISTRAL, "mistral-large-latest", "Mistral Large", 32_000,
           "0.002", "0.006", tools=True),
)


_ATTACHMENT_CAPABILITY = {
    AttachmentType.IMAGE: "vision",
    AttachmentType.AUDIO: "audio",
    AttachmentType.VIDEO: "video",
    AttachmentType.DOCUMENT: "documents",
}


def base_model_id(model_id: str) -> str:
    """Strip the web-search suffix from a model id."""
    if model_id.endswith(WEB_SEARCH_SUFFIX):
        return model_id[: -len(WEB_SEARCH_SUFFIX)]
    return model_id


def web_search_model_id(model_id: str) -> str:
    """Return the web-search augmented variant of a model id."""
    return f"{base_model_id(model_id)}{WEB_SEARCH_SUFFIX}"


def supports_vision(model: ModelDescriptor) -> bool:
    return model.capabilities.vision


def supports_tools(model: ModelDescriptor) -> bool:
    return model.capabilities.tools


def supports_audio(model: ModelDescriptor) -> bool:
    return model.capabilities.audio


def supports_video(model: ModelDescriptor) -> bool:
    return model.capabilities.video


def supports_documents(model: ModelDescriptor) -> bool:
    return model.capabilities.documents


def supports_reasoning(model: ModelDescriptor) -> bool:
    return model.capabilities.reasoning


def supports_streaming(model: ModelDescriptor) -> bool:
    return model.capabilities.streaming


def required_capability(attachment_type: AttachmentType | str) -> str:
    """Name of the capability flag an attachment type needs."""
    return _ATTACHMENT_CAPABILITY[AttachmentType(attachment_type)]


def supports_attachment(model: ModelDescriptor, attachment_type: AttachmentType | str) -> bool:
    """Check whether a model accepts an attachment of the given type."""
    return bool(getattr(model.capabilities, required_capability(attachment_type)))


class ModelCatalog:
    """Lookup over a fixed set of model descriptors.

    Instances are immutable; with_custom_models() returns a new catalog
    with a user's own models layered over the built-in ones.

    Args:
        models: Descriptors to index. Defaults to BUILTIN_MODELS.
    """

    def __init__(self, models: Iterable[ModelDescriptor] | None = None) -> None:
        self._models: tuple[ModelDescriptor, ...] = tuple(
            BUILTIN_MODELS if models is None else models
        )

    def list_models(self, vendor: Vendor | None = None) -> list[ModelDescriptor]:
        """Return all descriptors, optionally for one vendor."""
        if vendor is None:
            return list(self._models)
        return [m for m in self._models if m.vendor == vendor]

    def get_model(
        self, model_id: str, vendor: Vendor | None = None
    ) -> ModelDescriptor | None:
        """Find a descriptor by id.

        The web-search suffix is ignored. Custom models win over built-in
        ones with the same id. When vendor is given, only that vendor's
        models are searched.

        Returns:
            The descriptor, or None when no model matches.
        """
        wanted = base_model_id(model_id)
        match = None
        for model in self._models:
            if model.id != wanted:
                continue
            if vendor is not None and model.vendor != vendor:
                continue
            if model.is_custom:
                return model
            if match is None:
                match = model
        return match

    def require_model(
        self, model_id: str, vendor: Vendor | None = None
    ) -> ModelDescriptor:
        """Like get_model() but raises NotFoundError on a miss."""
        model = self.get_model(model_id, vendor)
        if model is None:
            raise NotFoundError("Model", model_id)
        return model

    def available_for(self, vendors: Iterable[Vendor]) -> list[ModelDescriptor]:
        """Models of the given vendors, in catalog order."""
        allowed = set(vendors)
        return [m for m in self._models if m.vendor in allowed]

    def with_custom_models(self, models: Iterable[ModelDescriptor]) -> ModelCatalog:
        """Return a new catalog with custom models appended."""
        custom = tuple(m if m.is_custom else replace(m, is_custom=True) for m in models)
        return ModelCatalog(self._models + custom)

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, model_id: object) -> bool:
        return isinstance(model_id, str) and self.get_model(model_id) is not None
