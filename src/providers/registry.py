"""Vendor to adapter mapping.

The set of adapters is closed: every Vendor maps to exactly one adapter
class, and build_adapter() is the only place that picks one.
"""

from __future__ import annotations

import logging
from typing import Any

from src.providers.anthropic_provider import AnthropicAdapter
from src.providers.base import ProviderAdapter
from src.providers.config import ProviderConfig
from src.providers.openai_provider import (
    DeepSeekAdapter,
    GoogleAdapter,
    GroqAdapter,
    MistralAdapter,
    OpenAIAdapter,
    OpenRouterAdapter,
    TogetherAIAdapter,
)
from src.services.model_catalog import Vendor

logger = logging.getLogger(__name__)

ADAPTERS: dict[Vendor, type[ProviderAdapter]] = {
    Vendor.OPENAI: OpenAIAdapter,
    Vendor.ANTHROPIC: AnthropicAdapter,
    Vendor.GOOGLE: GoogleAdapter,
    Vendor.OPENROUTER: OpenRouterAdapter,
    Vendor.DEEPSEEK: DeepSeekAdapter,
    Vendor.TOGETHERAI: TogetherAIAdapter,
    Vendor.GROQ: GroqAdapter,
    Vendor.MISTRAL: MistralAdapter,
}


def build_adapter(vendor: Vendor, api_key: str, **options: Any) -> ProviderAdapter:
    """Create the adapter for a vendor.

    Args:
        vendor: Vendor to talk to.
        api_key: Decrypted API key.
        **options: Extra ProviderConfig fields (base_url, timeout_seconds,
            max_retries, extra).

    Returns:
        A ready-to-use adapter instance (SDK client is created lazily).
    """
    adapter_cls = ADAPTERS[vendor]
    return adapter_cls(ProviderConfig(vendor=vendor, api_key=api_key, **options))
