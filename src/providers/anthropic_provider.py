"""Anthropic (Claude) adapter."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from src.errors import AuthError, ProviderError, ProviderTimeoutError
from src.providers.base import ProviderAdapter
from src.providers.config import (
    Attachment,
    CancellationToken,
    ChatMessage,
    Completion,
    CompletionParams,
    ProviderConfig,
    StreamChunk,
    ToolCallDelta,
    Usage,
    normalize_finish_reason,
)
from src.services.model_catalog import Vendor

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096

# Extended-thinking budget per reasoning effort.
THINKING_BUDGETS = {"low": 1024, "medium": 4096, "high": 16384}


class AnthropicAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API.

    System messages are lifted into the top-level ``system`` field.
    Reasoning effort turns on extended thinking, whose text is surfaced
    as reasoning deltas; thinking requires the default temperature, so
    no temperature is sent in that mode.
    """

    vendor = Vendor.ANTHROPIC

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client: AsyncAnthropic | None = None

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                max_retries=self.config.max_retries,
            )
        return self._client

    # ── Request building ──────────────────────────────────────────────

    @staticmethod
    def _attachment_block(attachment: Attachment) -> dict[str, Any]:
        if attachment.type == "image":
            return {"type": "image", "source": {"type": "url", "url": attachment.url}}
        if attachment.type == "document" and attachment.mime_type in ("application/pdf", ""):
            return {"type": "document", "source": {"type": "url", "url": attachment.url}}
        label = attachment.file_name or attachment.mime_type or attachment.type
        return {"type": "text", "text": f"[Attached {attachment.type}: {label}] {attachment.url}"}

    def _convert_messages(
        self, messages: list[ChatMessage]
    ) -> tuple[str, list[dict[str, Any]]]:
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                system_parts.append(message.content)
                continue
            role = "assistant" if message.role == "assistant" else "user"
            if message.attachments:
                content: Any = [self._attachment_block(a) for a in message.attachments]
                if message.content:
                    content.append({"type": "text", "text": message.content})
            else:
                content = message.content
            converted.append({"role": role, "content": content})
        return "\n\n".join(p for p in system_parts if p), converted

    def _request_kwargs(
        self, model: str, messages: list[ChatMessage], params: CompletionParams
    ) -> dict[str, Any]:
        system, converted = self._convert_messages(messages)
        max_tokens = params.max_tokens or DEFAULT_MAX_TOKENS
        kwargs: dict[str, Any] = {"model": model, "messages": converted}
        if system:
            kwargs["system"] = system
        if params.reasoning_effort:
            budget = THINKING_BUDGETS[params.reasoning_effort]
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
            max_tokens = max(max_tokens, budget + DEFAULT_MAX_TOKENS)
        elif params.temperature is not None:
            kwargs["temperature"] = params.temperature
        kwargs["max_tokens"] = max_tokens
        if params.tools:
            kwargs["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in params.tools
            ]
        return kwargs

    def _map_error(self, exc: Exception) -> Exception:
        if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return AuthError(f"anthropic rejected the API key: {exc}", vendor=self.vendor.value)
        if isinstance(exc, anthropic.APITimeoutError):
            return ProviderTimeoutError("anthropic request timed out", vendor=self.vendor.value)
        if isinstance(exc, anthropic.APIStatusError):
            return ProviderError(
                f"anthropic returned HTTP {exc.status_code}: {exc.message}",
                vendor=self.vendor.value,
                status_code=exc.status_code,
            )
        if isinstance(exc, anthropic.APIError):
            return ProviderError(f"anthropic error: {exc}", vendor=self.vendor.value)
        return exc

    # ── ProviderAdapter ──────────────────────────────────────────────

    async def stream_completion(
        self,
        model: str,
        messages: list[ChatMessage],
        params: CompletionParams,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        client = self._get_client()
        try:
            stream = await client.messages.create(
                **self._request_kwargs(model, messages, params), stream=True
            )
        except anthropic.APIError as e:
            raise self._map_error(e) from e

        prompt_tokens: int | None = None
        try:
            async for event in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    break
                chunk = None
                if event.type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    prompt_tokens = getattr(usage, "input_tokens", None)
                    chunk = StreamChunk(generation_id=event.message.id)
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        chunk = StreamChunk(tool_call_deltas=[
                            ToolCallDelta(index=event.index, id=block.id, name=block.name)
                        ])
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        chunk = StreamChunk(content_delta=delta.text)
                    elif delta.type == "thinking_delta":
                        chunk = StreamChunk(reasoning_delta=delta.thinking)
                    elif delta.type == "input_json_delta":
                        chunk = StreamChunk(tool_call_deltas=[
                            ToolCallDelta(index=event.index, arguments_delta=delta.partial_json)
                        ])
                    elif delta.type == "citations_delta":
                        chunk = StreamChunk(annotations=[delta.citation.model_dump(exclude_none=True)])
                elif event.type == "message_delta":
                    completion_tokens = getattr(event.usage, "output_tokens", None)
                    total = (
                        prompt_tokens + completion_tokens
                        if prompt_tokens is not None and completion_tokens is not None
                        else None
                    )
                    chunk = StreamChunk(
                        finish_reason=normalize_finish_reason(event.delta.stop_reason),
                        usage=Usage(
                            prompt_tokens=prompt_tokens,
                            completion_tokens=completion_tokens,
                            total_tokens=total,
                        ),
                    )
                if chunk is not None:
                    yield chunk
        except anthropic.APIError as e:
            raise self._map_error(e) from e
        finally:
            await stream.close()

    async def generate_completion(
        self,
        model: str,
        messages: list[ChatMessage],
        params: CompletionParams,
    ) -> Completion:
        client = self._get_client()
        try:
            response = await client.messages.create(**self._request_kwargs(model, messages, params))
        except anthropic.APIError as e:
            raise self._map_error(e) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        prompt = getattr(usage, "input_tokens", None)
        completion = getattr(usage, "output_tokens", None)
        return Completion(
            text=text,
            usage=Usage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=(prompt + completion) if prompt is not None and completion is not None else None,
            ),
            finish_reason=normalize_finish_reason(response.stop_reason),
            model=model,
        )
