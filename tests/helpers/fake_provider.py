"""Scripted vendor adapter for generation tests.

Streams a configured list of chunks without any network access and
records every call for verification.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

from src.providers.base import ProviderAdapter
from src.providers.config import (
    CancellationToken,
    ChatMessage,
    Completion,
    CompletionParams,
    ProviderConfig,
    StreamChunk,
    Usage,
)
from src.services.model_catalog import Vendor


@dataclass
class StreamCall:
    """Record of one stream_completion() call."""

    model: str
    messages: list[ChatMessage]
    params: CompletionParams
    api_key: str


@dataclass
class FakeProviderAdapter(ProviderAdapter):
    """Adapter whose output is fixed by the test.

    Attributes:
        chunks: Chunks streamed in order.
        fail_after: Raise `failure` after this many chunks (None: never).
        failure: Exception raised at fail_after.
        block_after: After this many chunks, wait until released or
            cancelled (None: never).
        before_chunk: Called with the index of each chunk before it is
            yielded; tests use it to inject a cancel between chunks.
    """

    chunks: list[StreamChunk] = field(default_factory=list)
    fail_after: int | None = None
    failure: Exception | None = None
    block_after: int | None = None
    before_chunk: Callable[[int], None] | None = None
    completion_text: str = "Generated Title"
    calls: list[StreamCall] = field(default_factory=list)
    completions: list[StreamCall] = field(default_factory=list)
    api_keys: list[str] = field(default_factory=list)
    closed: bool = False

    def __post_init__(self) -> None:
        self.vendor = Vendor.OPENAI
        self.config = ProviderConfig(vendor=Vendor.OPENAI, api_key="")
        self.release = asyncio.Event()

    @classmethod
    def from_text(cls, *pieces: str, usage: Usage | None = None, **kwargs) -> "FakeProviderAdapter":
        """Stream one content chunk per piece, then a stop chunk with usage."""
        chunks = [StreamChunk(content_delta=p) for p in pieces]
        chunks.append(StreamChunk(
            finish_reason="stop",
            usage=usage or Usage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500),
            generation_id="gen-1",
        ))
        return cls(chunks=chunks, **kwargs)

    def factory(self, vendor: Vendor, api_key: str) -> "FakeProviderAdapter":
        """Drop-in replacement for build_adapter()."""
        self.vendor = vendor
        self.api_keys.append(api_key)
        return self

    async def stream_completion(
        self,
        model: str,
        messages: list[ChatMessage],
        params: CompletionParams,
        cancel_token: CancellationToken | None = None,
    ):
        self.calls.append(StreamCall(model, list(messages), params, self.api_keys[-1]))
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index == self.fail_after:
                    raise self.failure or RuntimeError("scripted failure")
                if self.block_after is not None and index == self.block_after:
                    await self._wait_for_release(cancel_token)
                    if cancel_token is not None and cancel_token.cancelled:
                        return
                if self.before_chunk is not None:
                    self.before_chunk(index)
                yield chunk
                await asyncio.sleep(0)
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                raise self.failure or RuntimeError("scripted failure")
        finally:
            self.closed = True

    async def _wait_for_release(self, cancel_token: CancellationToken | None) -> None:
        waiters = [asyncio.ensure_future(self.release.wait())]
        if cancel_token is not None:
            waiters.append(asyncio.ensure_future(cancel_token.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def generate_completion(
        self,
        model: str,
        messages: list[ChatMessage],
        params: CompletionParams,
    ) -> Completion:
        self.completions.append(StreamCall(model, list(messages), params, self.api_keys[-1]))
        return Completion(text=self.completion_text, model=model)
