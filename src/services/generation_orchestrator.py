"""Generation lifecycle: trigger, stream, cancel, finalize.

start_generation() runs synchronously up to the point where a response
can be streamed: it validates the request, claims the conversation's
generation slot, persists the user turn, assembles the vendor context
and creates the empty assistant message. Streaming then continues on a
supervised background task that rewrites the assistant message with
cumulative snapshots.

Whatever happens after the slot is claimed (success, cancellation,
vendor error, assembly error) the conversation's generating flag is
cleared and its registry entry removed by _release_slot(). Once the
background task is spawned it owns the slot and releases it in its
finally block.

Example:
    orchestrator = GenerationOrchestrator()
    response = await orchestrator.start_generation(
        "user-1", GenerateRequest(message="Hello", model_id="gpt-4.1-mini")
    )
    orchestrator.cancel_generation(response.conversation_id)
"""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import AbstractContextManager, aclosing
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from src.config import KeplerConfig, get_config
from src.db.connection import get_db_context
from src.db.models import Conversation, Message, MessageRole, generate_uuid
from src.errors import UnsupportedCapabilityError, ValidationError, error_payload
from src.providers.base import ProviderAdapter
from src.providers.config import (
    Attachment,
    ChatMessage,
    CompletionParams,
    FinishReason,
    StreamChunk,
    Usage,
)
from src.providers.registry import build_adapter
from src.services.conversation_persistence_service import (
    AssistantMessagePatch,
    ConversationPersistenceService,
    message_metadata,
)
from src.services.credential_service import CredentialService
from src.services.generation_registry import (
    GenerationHandle,
    GenerationRegistry,
    TaskSupervisor,
)
from src.services.model_catalog import (
    AttachmentType,
    ModelCatalog,
    ModelDescriptor,
    Vendor,
    required_capability,
    supports_attachment,
    supports_reasoning,
    web_search_model_id,
)
from src.services.rules import build_rules_message, resolve_rules
from src.services.title_synthesizer import TitleSynthesizer
from src.services.usage_recorder import UsageRecorder, compute_cost

logger = logging.getLogger(__name__)

_ATTACHMENT_TYPES = {t.value for t in AttachmentType}
_REASONING_EFFORTS = {"low", "medium", "high"}


class AttachmentDescriptor(BaseModel):
    """User content already uploaded to object storage."""

    type: str
    url: str
    mime_type: str = ""
    size: int | None = None
    file_name: str | None = None
    storage_id: str | None = None


class GenerateRequest(BaseModel):
    """Trigger payload for one assistant turn."""

    message: str | None = None
    model_id: str | None = None
    conversation_id: str | None = None
    attachments: list[AttachmentDescriptor] = Field(default_factory=list)
    web_search_enabled: bool = False
    reasoning_effort: str | None = None


class GenerateResponse(BaseModel):
    ok: bool = True
    conversation_id: str
    message_id: str


@dataclass
class _GenerationJob:
    """Everything the background task needs, detached from any session."""

    user_id: str
    conversation_id: str
    message_id: str
    model: ModelDescriptor
    effective_model_id: str
    api_key: str
    messages: list[ChatMessage]
    reasoning_effort: str | None
    started: float = field(default_factory=time.monotonic)


@dataclass
class _StreamState:
    """Accumulated output of a streamed completion."""

    content: str = ""
    reasoning: str = ""
    tool_calls: dict[int, dict[str, Any]] = field(default_factory=dict)
    annotations: list[dict[str, Any]] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None
    generation_id: str | None = None
    chunks: int = 0
    cancelled: bool = False
    error: BaseException | None = None

    def apply(self, chunk: StreamChunk) -> None:
        self.chunks += 1
        self.content += chunk.content_delta
        self.reasoning += chunk.reasoning_delta
        for delta in chunk.tool_call_deltas:
            call = self.tool_calls.setdefault(
                delta.index, {"id": None, "name": None, "arguments": ""}
            )
            if delta.id:
                call["id"] = delta.id
            if delta.name:
                call["name"] = delta.name
            call["arguments"] += delta.arguments_delta
        self.annotations.extend(chunk.annotations)
        if chunk.usage is not None:
            self.usage = _merge_usage(self.usage, chunk.usage)
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        if chunk.generation_id and not self.generation_id:
            self.generation_id = chunk.generation_id

    def tool_invocations(self) -> list[dict[str, Any]]:
        return [self.tool_calls[i] for i in sorted(self.tool_calls)]


def _merge_usage(current: Usage | None, update: Usage) -> Usage:
    """Later reports win per field; fields a report leaves out are kept."""
    if current is None:
        return update
    return Usage(
        prompt_tokens=update.prompt_tokens if update.prompt_tokens is not None else current.prompt_tokens,
        completion_tokens=(
            update.completion_tokens if update.completion_tokens is not None
            else current.completion_tokens
        ),
        total_tokens=update.total_tokens if update.total_tokens is not None else current.total_tokens,
    )


def _attachments_from_metadata(message: Message, model: ModelDescriptor) -> list[Attachment]:
    attachments = []
    for item in message_metadata(message).get("attachments") or []:
        kind = item.get("type")
        if kind not in _ATTACHMENT_TYPES or not item.get("url"):
            continue
        if not supports_attachment(model, kind):
            logger.debug("Dropping %s attachment from history for %s", kind, model.id)
            continue
        attachments.append(Attachment(
            type=kind,
            url=item["url"],
            mime_type=item.get("mime_type") or "",
            file_name=item.get("file_name") or "",
            size=item.get("size") or 0,
        ))
    return attachments


def build_vendor_messages(
    conversation: Conversation | None,
    history: list[Message],
    rules_message: str | None,
    model: ModelDescriptor,
) -> list[ChatMessage]:
    """System prompt, then history in creation order, then the rules message.

    Assistant messages without content (failed or cancelled before any
    output) and tool messages are left out.
    """
    messages: list[ChatMessage] = []
    if conversation is not None and conversation.system_prompt:
        messages.append(ChatMessage(role="system", content=conversation.system_prompt))
    for message in history:
        if message.role == MessageRole.tool.value:
            continue
        if message.role == MessageRole.assistant.value and not message.content:
            continue
        attachments = (
            _attachments_from_metadata(message, model)
            if message.role == MessageRole.user.value
            else []
        )
        messages.append(ChatMessage(
            role=message.role, content=message.content, attachments=attachments
        ))
    if rules_message:
        messages.append(ChatMessage(role="system", content=rules_message))
    return messages


class GenerationOrchestrator:
    """Drives generations from trigger to finalization.

    Args:
        db_context: Factory for a short-lived session context manager.
        registry: Active generation registry.
        catalog: Built-in model catalog.
        adapter_factory: (vendor, api_key) -> ProviderAdapter.
        credentials_factory: Session -> CredentialService.
        supervisor: Owner of background tasks.
        config: Application config.
        title_synthesizer: Scheduled after the first assistant response.
        usage_recorder: Scheduled after every generation.
    """

    def __init__(
        self,
        db_context: Callable[[], AbstractContextManager[Session]] = get_db_context,
        registry: GenerationRegistry | None = None,
        catalog: ModelCatalog | None = None,
        adapter_factory: Callable[[Vendor, str], ProviderAdapter] = build_adapter,
        credentials_factory: Callable[[Session], CredentialService] = CredentialService,
        supervisor: TaskSupervisor | None = None,
        config: KeplerConfig | None = None,
        title_synthesizer: TitleSynthesizer | None = None,
        usage_recorder: UsageRecorder | None = None,
    ) -> None:
        self._db_context = db_context
        self._registry = registry or GenerationRegistry()
        self._catalog = catalog or ModelCatalog()
        self._adapter_factory = adapter_factory
        self._credentials_factory = credentials_factory
        self._supervisor = supervisor or TaskSupervisor()
        self._config = config or get_config()
        self._titles = title_synthesizer or TitleSynthesizer(
            db_context=db_context,
            adapter_factory=adapter_factory,
            credentials_factory=credentials_factory,
            catalog=self._catalog,
            config=self._config,
        )
        self._usage = usage_recorder or UsageRecorder(db_context)

    @property
    def registry(self) -> GenerationRegistry:
        return self._registry

    @property
    def supervisor(self) -> TaskSupervisor:
        return self._supervisor

    # --- Trigger ---

    @staticmethod
    def _validate_request(request: GenerateRequest) -> None:
        if not request.model_id or not request.model_id.strip():
            raise ValidationError("model_id is required")
        if not request.conversation_id and not (request.message or "").strip():
            raise ValidationError("message is required when starting a new conversation")
        for attachment in request.attachments:
            if attachment.type not in _ATTACHMENT_TYPES:
                raise ValidationError(
                    f"Unsupported attachment type '{attachment.type}'; "
                    f"expected one of {sorted(_ATTACHMENT_TYPES)}"
                )
        if request.reasoning_effort is not None and request.reasoning_effort not in _REASONING_EFFORTS:
            raise ValidationError(
                f"reasoning_effort must be one of {sorted(_REASONING_EFFORTS)}"
            )

    async def start_generation(self, user_id: str, request: GenerateRequest) -> GenerateResponse:
        """Start an assistant turn and return once streaming has been handed off.

        Only the conversation lookup (or creation) happens before the
        generation slot is claimed; a rejected trigger leaves an existing
        conversation untouched. Everything after the claim that fails is
        recorded as a structured error on the assistant message.

        Raises:
            ValidationError: Malformed request or no user turn to answer.
            NotFoundError: Unknown model, or unknown/foreign conversation.
            ConflictError: The conversation is already generating.
            UnsupportedCapabilityError: An attachment the model cannot take.
            AuthError: No usable credential for the model's vendor.
        """
        started = time.monotonic()
        self._validate_request(request)
        model_id = request.model_id.strip()

        with self._db_context() as db:
            conversation = ConversationPersistenceService(db).get_or_create_conversation(
                user_id, conversation_id=request.conversation_id
            )
            conversation_id = conversation.id

        def persist_claim() -> bool:
            with self._db_context() as db:
                return ConversationPersistenceService(db).claim_generating(conversation_id)

        handle = await self._registry.claim(conversation_id, persist_claim)

        model: ModelDescriptor | None = None
        spawned = False
        try:
            self._persist_user_turn(conversation_id, request)
            model = self._resolve_model(user_id, conversation_id, model_id)
            job = self._assemble(user_id, conversation_id, request, model, handle)
            job.started = started
            handle.task = self._supervisor.spawn(
                self._run_generation(job, handle), name=f"generation-{conversation_id}"
            )
            spawned = True
        except Exception as e:
            logger.warning(
                "generation_assembly_failed conversation=%s model=%s error=%s",
                conversation_id, model_id, type(e).__name__,
            )
            self._record_assembly_error(conversation_id, model_id, model, handle, e)
            raise
        finally:
            if not spawned:
                self._release_slot(conversation_id, handle)

        logger.info(
            "generation_started conversation=%s message=%s vendor=%s model=%s setup_ms=%d",
            conversation_id, job.message_id, model.vendor.value, job.effective_model_id,
            int((time.monotonic() - started) * 1000),
        )
        return GenerateResponse(conversation_id=conversation_id, message_id=job.message_id)

    def _persist_user_turn(self, conversation_id: str, request: GenerateRequest) -> None:
        if not (request.message or "").strip() and not request.attachments:
            return
        with self._db_context() as db:
            ConversationPersistenceService(db).append_user_message(
                conversation_id,
                request.message or "",
                attachments=[a.model_dump(exclude_none=True) for a in request.attachments],
                metadata={"web_search_enabled": request.web_search_enabled},
            )

    def _resolve_model(self, user_id: str, conversation_id: str, model_id: str) -> ModelDescriptor:
        """Look the model up in the user's catalog and make it the conversation's model."""
        with self._db_context() as db:
            catalog = self._credentials_factory(db).build_catalog(user_id, self._catalog)
            model = catalog.require_model(model_id)
            ConversationPersistenceService(db).set_model_config(
                conversation_id, model.vendor.value, model.id
            )
        return model

    def _assemble(
        self,
        user_id: str,
        conversation_id: str,
        request: GenerateRequest,
        model: ModelDescriptor,
        handle: GenerationHandle,
    ) -> _GenerationJob:
        with self._db_context() as db:
            svc = ConversationPersistenceService(db)
            for attachment in request.attachments:
                if not supports_attachment(model, attachment.type):
                    raise UnsupportedCapabilityError(model.id, required_capability(attachment.type))

            api_key = self._credentials_factory(db).get_secret(user_id, model.vendor)

            history = svc.get_messages(conversation_id)
            last_user = next(
                (m for m in reversed(history) if m.role == MessageRole.user.value), None
            )
            if last_user is None:
                raise ValidationError("Conversation has no user message to respond to")

            rules = resolve_rules(svc.list_rules(user_id), (m.content for m in history))
            messages = build_vendor_messages(
                svc.get_conversation(conversation_id),
                history,
                build_rules_message(rules),
                model,
            )

            web_search = bool(message_metadata(last_user).get("web_search_enabled"))
            effective_model_id = web_search_model_id(model.id) if web_search else model.id

            assistant = svc.create_assistant_message(
                conversation_id,
                vendor=model.vendor.value,
                model_id=effective_model_id,
                metadata={"web_search_enabled": True} if web_search else None,
                message_id=handle.message_id,
            )
            handle.message_id = assistant.id

        if rules:
            logger.debug("%d rule(s) attached to conversation %s", len(rules), conversation_id)

        return _GenerationJob(
            user_id=user_id,
            conversation_id=conversation_id,
            message_id=assistant.id,
            model=model,
            effective_model_id=effective_model_id,
            api_key=api_key,
            messages=messages,
            reasoning_effort=request.reasoning_effort if supports_reasoning(model) else None,
        )

    def _record_assembly_error(
        self,
        conversation_id: str,
        model_id: str,
        model: ModelDescriptor | None,
        handle: GenerationHandle,
        exc: BaseException,
    ) -> None:
        message_id = handle.message_id or generate_uuid()
        try:
            with self._db_context() as db:
                ConversationPersistenceService(db).upsert_assistant_message(
                    message_id,
                    AssistantMessagePatch(
                        error=error_payload(exc),
                        finish_reason=FinishReason.ERROR.value,
                        vendor=model.vendor.value if model else None,
                        model_id=model.id if model else model_id,
                    ),
                    conversation_id=conversation_id,
                )
            handle.message_id = message_id
        except Exception as e:
            logger.error("Failed to record assembly error for %s: %s", conversation_id, e)

    # --- Background phase ---

    async def _run_generation(self, job: _GenerationJob, handle: GenerationHandle) -> None:
        state = _StreamState()
        try:
            await self._stream(job, handle, state)
        except asyncio.CancelledError:
            state.cancelled = True
            self._finalize(job, state)
            raise
        except Exception as e:
            state.error = e
            logger.warning(
                "generation_failed conversation=%s model=%s error=%s: %s",
                job.conversation_id, job.effective_model_id, type(e).__name__, e,
            )
            self._finalize(job, state)
        else:
            self._finalize(job, state)
        finally:
            self._release_slot(job.conversation_id, handle)

        if state.error is None and not state.cancelled:
            self._schedule_followups(job, state)

    async def _stream(
        self, job: _GenerationJob, handle: GenerationHandle, state: _StreamState
    ) -> None:
        adapter = self._adapter_factory(job.model.vendor, job.api_key)
        params = CompletionParams(
            temperature=self._config.generation.temperature,
            max_tokens=self._config.generation.max_tokens,
            reasoning_effort=job.reasoning_effort,
        )
        stream = adapter.stream_completion(
            job.effective_model_id, job.messages, params, handle.token
        )
        async with aclosing(stream) as chunks:
            async for chunk in chunks:
                if handle.token.cancelled:
                    state.cancelled = True
                    break
                state.apply(chunk)
                if chunk.has_text:
                    self._persist(job, AssistantMessagePatch(
                        content=state.content,
                        reasoning=state.reasoning or None,
                    ))
        if handle.token.cancelled:
            state.cancelled = True

    def _persist(self, job: _GenerationJob, patch: AssistantMessagePatch) -> None:
        with self._db_context() as db:
            ConversationPersistenceService(db).upsert_assistant_message(
                job.message_id, patch, conversation_id=job.conversation_id
            )

    def _finalize(self, job: _GenerationJob, state: _StreamState) -> None:
        cost = compute_cost(state.usage, job.model)
        metadata: dict[str, Any] = {}
        if state.cancelled:
            finish_reason = FinishReason.CANCELLED.value
            metadata["cancelled"] = True
        elif state.error is not None:
            finish_reason = FinishReason.ERROR.value
        else:
            finish_reason = state.finish_reason or FinishReason.STOP.value

        patch = AssistantMessagePatch(
            content=state.content,
            reasoning=state.reasoning or None,
            tool_invocations=state.tool_invocations() or None,
            annotations=state.annotations or None,
            usage=state.usage.to_dict() if state.usage else None,
            finish_reason=finish_reason,
            cost_usd=cost,
            error=error_payload(state.error) if state.error is not None else None,
            metadata=metadata or None,
            generation_id=state.generation_id,
        )
        try:
            self._persist(job, patch)
        except Exception as e:
            logger.error("Failed to finalize message %s: %s", job.message_id, e)

        logger.info(
            "generation_finished conversation=%s message=%s model=%s finish=%s chunks=%d "
            "chars=%d cost=%s total_ms=%d",
            job.conversation_id, job.message_id, job.effective_model_id, finish_reason,
            state.chunks, len(state.content), cost,
            int((time.monotonic() - job.started) * 1000),
        )

    def _release_slot(self, conversation_id: str, handle: GenerationHandle) -> None:
        self._registry.release(conversation_id, handle)
        try:
            with self._db_context() as db:
                ConversationPersistenceService(db).set_generating(conversation_id, False)
        except Exception as e:
            logger.error("Failed to clear generating flag for %s: %s", conversation_id, e)

    def _schedule_followups(self, job: _GenerationJob, state: _StreamState) -> None:
        try:
            with self._db_context() as db:
                first_response = (
                    ConversationPersistenceService(db).count_assistant_messages(job.conversation_id) == 1
                )
        except Exception as e:
            logger.debug("Title check failed for %s: %s", job.conversation_id, e)
            first_response = False
        if first_response:
            self._supervisor.spawn(
                self._titles.synthesize(job.user_id, job.conversation_id),
                name=f"title-{job.conversation_id}",
            )
        self._supervisor.spawn(
            self._record_usage(job, state.usage, compute_cost(state.usage, job.model)),
            name=f"usage-{job.message_id}",
        )

    async def _record_usage(self, job: _GenerationJob, usage: Usage | None, cost: Decimal) -> None:
        try:
            self._usage.record(
                job.user_id, job.conversation_id, job.model.vendor.value,
                job.effective_model_id, usage, cost,
            )
        except Exception as e:
            logger.warning("Usage recording failed for %s: %s", job.message_id, e)

    # --- Control ---

    def cancel_generation(self, conversation_id: str, user_id: str | None = None) -> bool:
        """Request cancellation of a conversation's generation.

        Returns:
            True if an active generation was signalled. Unknown or finished
            conversations (and conversations owned by someone else, when
            user_id is given) are a no-op returning False.
        """
        if user_id is not None and self._registry.is_active(conversation_id):
            with self._db_context() as db:
                owned = ConversationPersistenceService(db).get_conversation(conversation_id, user_id)
            if owned is None:
                return False
        return self._registry.cancel(conversation_id)

    def is_generating(self, conversation_id: str) -> bool:
        return self._registry.is_active(conversation_id)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel active generations and wait for background work."""
        active = self._registry.active_ids()
        for conversation_id in active:
            self._registry.cancel(conversation_id)
        await self._supervisor.shutdown(timeout=timeout)
        # Tasks cancelled before their first step never reach their cleanup.
        for conversation_id in self._registry.active_ids():
            handle = self._registry.get(conversation_id)
            if handle is not None:
                self._release_slot(conversation_id, handle)
        if active:
            logger.info("Orchestrator shut down with %d active generation(s)", len(active))

