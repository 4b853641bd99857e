"""Abstract base class for all vendor adapters."""

from __future__ import annotations

import abc
from collections.abc import AsyncIterator

from src.providers.config import (
    CancellationToken,
    ChatMessage,
    Completion,
    CompletionParams,
    ProviderConfig,
    StreamChunk,
)
from src.services.model_catalog import Vendor


class ProviderAdapter(abc.ABC):
    """Interface that every vendor adapter implements.

    Subclasses handle:
    1. Converting neutral messages and tools to the vendor's format
    2. Streaming the vendor response as neutral StreamChunk objects
    3. Mapping vendor SDK errors onto the domain error types

    A stream returned by stream_completion() is finite and cannot be
    restarted. Closing it (aclose(), or leaving an ``async for`` early)
    closes the vendor connection.
    """

    vendor: Vendor

    def __init__(self, config: ProviderConfig):
        self.config = config

    @abc.abstractmethod
    def stream_completion(
        self,
        model: str,
        messages: list[ChatMessage],
        params: CompletionParams,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion.

        Args:
            model: Vendor model id, possibly a derived variant such as
                the web-search ':online' id, passed through untouched.
            messages: Conversation, oldest first. System messages may
                appear anywhere; adapters place them as the vendor needs.
            params: Sampling parameters.
            cancel_token: Checked before each chunk is yielded.

        Yields:
            StreamChunk increments. The last chunk usually carries usage
            and finish_reason.

        Raises:
            AuthError: The vendor rejected the key.
            ProviderTimeoutError: The vendor did not respond in time.
            ProviderError: Any other vendor failure.
        """

    @abc.abstractmethod
    async def generate_completion(
        self,
        model: str,
        messages: list[ChatMessage],
        params: CompletionParams,
    ) -> Completion:
        """Non-streaming completion for short best-effort calls."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(vendor={self.vendor.value!r})>"
