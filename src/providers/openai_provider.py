"""OpenAI adapter, also used for every OpenAI-compatible vendor.

OpenRouter, DeepSeek, Together AI, Groq, Mistral and Google (through
Gemini's OpenAI compatibility endpoint) speak the Chat Completions
protocol, so each is a subclass that only changes the base URL and the
few request fields the vendor treats differently.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

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

# o-series reasoning models reject a custom temperature.
_FIXED_TEMPERATURE_MODELS = re.compile(r"^o\d")


def _extra_field(obj: Any, name: str) -> Any:
    """Read a field the SDK model does not declare (vendor extensions)."""
    value = getattr(obj, name, None)
    if value is None:
        extra = getattr(obj, "model_extra", None) or {}
        value = extra.get(name)
    return value


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump(exclude_none=True)
    return {"value": str(obj)}


def _usage_from(raw: Any) -> Usage | None:
    if raw is None:
        return None
    return Usage(
        prompt_tokens=getattr(raw, "prompt_tokens", None),
        completion_tokens=getattr(raw, "completion_tokens", None),
        total_tokens=getattr(raw, "total_tokens", None),
    )


class OpenAIAdapter(ProviderAdapter):
    """Adapter for the OpenAI Chat Completions API.

    Class attributes tune the request for compatible vendors:
        default_base_url: Endpoint when ProviderConfig.base_url is unset.
        stream_usage: Send stream_options.include_usage.
        reasoning_style: 'reasoning_effort' (top-level field),
            'openrouter' (reasoning object in the body) or None.
    """

    vendor = Vendor.OPENAI
    default_base_url: str | None = None
    stream_usage: bool = True
    reasoning_style: str | None = "reasoning_effort"

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url or self.default_base_url,
                timeout=self.config.timeout_seconds,
                max_retries=self.config.max_retries,
                default_headers=self.default_headers() or None,
            )
        return self._client

    def default_headers(self) -> dict[str, str]:
        return {}

    # ── Request building ──────────────────────────────────────────────

    def _attachment_part(self, attachment: Attachment) -> dict[str, Any]:
        if attachment.type == "image":
            return {"type": "image_url", "image_url": {"url": attachment.url}}
        label = attachment.file_name or attachment.mime_type or attachment.type
        return {"type": "text", "text": f"[Attached {attachment.type}: {label}] {attachment.url}"}

    def _convert_message(self, message: ChatMessage) -> dict[str, Any]:
        if not message.attachments:
            return {"role": message.role, "content": message.content}
        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"type": "text", "text": message.content})
        parts.extend(self._attachment_part(a) for a in message.attachments)
        return {"role": message.role, "content": parts}

    def _convert_tools(self, params: CompletionParams) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters or {"type": "object", "properties": {}},
                },
            }
            for tool in params.tools
        ]

    def _request_kwargs(
        self,
        model: str,
        messages: list[ChatMessage],
        params: CompletionParams,
        stream: bool,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [self._convert_message(m) for m in messages],
        }
        if params.temperature is not None and not _FIXED_TEMPERATURE_MODELS.match(model):
            kwargs["temperature"] = params.temperature
        if params.max_tokens:
            kwargs["max_tokens"] = params.max_tokens
        if params.tools:
            kwargs["tools"] = self._convert_tools(params)
        if params.reasoning_effort:
            if self.reasoning_style == "reasoning_effort":
                kwargs["reasoning_effort"] = params.reasoning_effort
            elif self.reasoning_style == "openrouter":
                kwargs["extra_body"] = {"reasoning": {"effort": params.reasoning_effort}}
        if stream:
            kwargs["stream"] = True
            if self.stream_usage:
                kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    # ── Response parsing ──────────────────────────────────────────────

    def _parse_chunk(self, chunk: Any) -> StreamChunk:
        out = StreamChunk(
            generation_id=getattr(chunk, "id", None),
            usage=_usage_from(getattr(chunk, "usage", None)),
        )
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return out

        choice = choices[0]
        delta = getattr(choice, "delta", None)
        if delta is not None:
            out.content_delta = getattr(delta, "content", None) or ""
            out.reasoning_delta = (
                _extra_field(delta, "reasoning_content")
                or _extra_field(delta, "reasoning")
                or ""
            )
            for call in getattr(delta, "tool_calls", None) or []:
                function = getattr(call, "function", None)
                out.tool_call_deltas.append(ToolCallDelta(
                    index=getattr(call, "index", 0) or 0,
                    id=getattr(call, "id", None),
                    name=getattr(function, "name", None) if function else None,
                    arguments_delta=(getattr(function, "arguments", None) or "") if function else "",
                ))
            annotations = _extra_field(delta, "annotations")
            if annotations:
                out.annotations = [_as_dict(a) for a in annotations]

        out.finish_reason = normalize_finish_reason(getattr(choice, "finish_reason", None))
        return out

    def _map_error(self, exc: Exception) -> Exception:
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return AuthError(
                f"{self.vendor.value} rejected the API key: {exc}", vendor=self.vendor.value
            )
        if isinstance(exc, openai.APITimeoutError):
            return ProviderTimeoutError(
                f"{self.vendor.value} request timed out", vendor=self.vendor.value
            )
        if isinstance(exc, openai.APIStatusError):
            return ProviderError(
                f"{self.vendor.value} returned HTTP {exc.status_code}: {exc.message}",
                vendor=self.vendor.value,
                status_code=exc.status_code,
            )
        if isinstance(exc, openai.APIError):
            return ProviderError(f"{self.vendor.value} error: {exc}", vendor=self.vendor.value)
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
            stream = await client.chat.completions.create(
                **self._request_kwargs(model, messages, params, stream=True)
            )
        except openai.APIError as e:
            raise self._map_error(e) from e

        try:
            async for raw in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    break
                yield self._parse_chunk(raw)
        except openai.APIError as e:
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
            response = await client.chat.completions.create(
                **self._request_kwargs(model, messages, params, stream=False)
            )
        except openai.APIError as e:
            raise self._map_error(e) from e

        text = ""
        finish_reason = None
        if response.choices:
            choice = response.choices[0]
            text = choice.message.content or ""
            finish_reason = normalize_finish_reason(choice.finish_reason)
        return Completion(
            text=text,
            usage=_usage_from(response.usage),
            finish_reason=finish_reason,
            model=model,
        )


class OpenRouterAdapter(OpenAIAdapter):
    """OpenRouter: routes to many vendors; ':online' ids enable web search."""

    vendor = Vendor.OPENROUTER
    default_base_url = "https://openrouter.ai/api/v1"
    reasoning_style = "openrouter"

    def default_headers(self) -> dict[str, str]:
        return {
            "HTTP-Referer": self.config.extra.get("app_url", "https://kepler.chat"),
            "X-Title": self.config.extra.get("app_name", "Kepler Chat"),
        }

    def _attachment_part(self, attachment: Attachment) -> dict[str, Any]:
        if attachment.type == "document":
            return {
                "type": "file",
                "file": {
                    "filename": attachment.file_name or "document",
                    "file_data": attachment.url,
                },
            }
        return super()._attachment_part(attachment)


class DeepSeekAdapter(OpenAIAdapter):
    """DeepSeek: reasoning text arrives in delta.reasoning_content."""

    vendor = Vendor.DEEPSEEK
    default_base_url = "https://api.deepseek.com/v1"
    reasoning_style = None


class TogetherAIAdapter(OpenAIAdapter):
    vendor = Vendor.TOGETHERAI
    default_base_url = "https://api.together.xyz/v1"
    reasoning_style = None


class GroqAdapter(OpenAIAdapter):
    vendor = Vendor.GROQ
    default_base_url = "https://api.groq.com/openai/v1"
    reasoning_style = None


class MistralAdapter(OpenAIAdapter):
    """Mistral reports usage on the final chunk without stream_options."""

    vendor = Vendor.MISTRAL
    default_base_url = "https://api.mistral.ai/v1"
    stream_usage = False
    reasoning_style = None


class GoogleAdapter(OpenAIAdapter):
    """Gemini through its OpenAI compatibility endpoint."""

    vendor = Vendor.GOOGLE
    default_base_url = "https://generativelanguage.googleapis.com/v1beta/openai/"
