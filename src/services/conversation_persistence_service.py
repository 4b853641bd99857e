"""Persistence service for conversations, messages, rules and usage.

Thin layer between the generation core and SQLAlchemy models. All
conversation history reads and writes go through this service. Each
call commits its own work so that a snapshot written while a response
streams is immediately visible to readers on other sessions.

The generating flag is only ever set through claim_generating(), a
conditional UPDATE that succeeds for exactly one caller.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from src.db.models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    MessageRole,
    RuleAttachMode,
    UsageRecord,
    UserRule,
    generate_uuid,
    utc_now_iso,
)
from src.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class AssistantMessagePatch:
    """Fields to overwrite on an assistant message. None leaves a field as is.

    metadata is merged into the stored metadata rather than replacing it.
    """

    content: str | None = None
    reasoning: str | None = None
    tool_invocations: list[dict[str, Any]] | None = None
    annotations: list[dict[str, Any]] | None = None
    parts: list[dict[str, Any]] | None = None
    usage: dict[str, Any] | None = None
    finish_reason: str | None = None
    cost_usd: Decimal | None = None
    error: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    generation_id: str | None = None
    vendor: str | None = None
    model_id: str | None = None


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(raw: str | None, owner: str) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupted JSON column on %s", owner)
        return None


def message_metadata(message: Message) -> dict[str, Any]:
    """Parsed metadata_json of a message ({} when absent)."""
    return _loads(message.metadata_json, f"message {message.id}") or {}


def message_to_dict(message: Message) -> dict[str, Any]:
    """Serialize a message for API responses and snapshots."""
    owner = f"message {message.id}"
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sequence": message.sequence,
        "role": message.role,
        "content": message.content,
        "reasoning": message.reasoning,
        "parts": _loads(message.parts_json, owner),
        "tool_invocations": _loads(message.tool_invocations_json, owner),
        "annotations": _loads(message.annotations_json, owner),
        "vendor": message.vendor,
        "model_id": message.model_id,
        "generation_id": message.generation_id,
        "usage": _loads(message.usage_json, owner),
        "finish_reason": message.finish_reason,
        "cost_usd": message.cost_usd,
        "error": _loads(message.error_json, owner),
        "metadata": _loads(message.metadata_json, owner),
        "created_at": message.created_at,
        "updated_at": message.updated_at,
    }


def conversation_to_dict(conversation: Conversation) -> dict[str, Any]:
    """Serialize a conversation row (without messages)."""
    return {
        "id": conversation.id,
        "title": conversation.title,
        "vendor": conversation.vendor,
        "model_id": conversation.model_id,
        "system_prompt": conversation.system_prompt,
        "generating": conversation.generating,
        "created_at": conversation.created_at,
        "updated_at": conversation.updated_at,
    }


class ConversationPersistenceService:
    """CRUD operations for the generation core's persistent state.

    Args:
        db: SQLAlchemy session (sync).
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    # --- Conversations ---

    def get_conversation(
        self, conversation_id: str, user_id: str | None = None
    ) -> Conversation | None:
        """Load a conversation, optionally requiring ownership."""
        conversation = self._db.get(Conversation, conversation_id)
        if conversation is None or not conversation.is_active:
            return None
        if user_id is not None and conversation.user_id != user_id:
            return None
        return conversation

    def get_or_create_conversation(
        self,
        user_id: str,
        conversation_id: str | None = None,
        vendor: str | None = None,
        model_id: str | None = None,
        system_prompt: str | None = None,
    ) -> Conversation:
        """Return the user's conversation, creating one when no id is given.

        An existing conversation's model configuration is updated to the
        model chosen for this turn.

        Raises:
            NotFoundError: If conversation_id is given but does not belong
                to the user or does not exist.
        """
        if conversation_id:
            conversation = self.get_conversation(conversation_id, user_id)
            if conversation is None:
                raise NotFoundError("Conversation", conversation_id)
            if vendor and model_id:
                self.set_model_config(conversation.id, vendor, model_id)
            return conversation

        conversation = Conversation(
            id=generate_uuid(),
            user_id=user_id,
            title=DEFAULT_CONVERSATION_TITLE,
            vendor=vendor,
            model_id=model_id,
            system_prompt=system_prompt,
        )
        self._db.add(conversation)
        self._db.commit()
        logger.info("Created conversation %s for user %s", conversation.id, user_id)
        return conversation

    def set_model_config(self, conversation_id: str, vendor: str, model_id: str) -> None:
        """Record the model used for the conversation's latest turn."""
        conversation = self._db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        if conversation.vendor == vendor and conversation.model_id == model_id:
            return
        conversation.vendor = vendor
        conversation.model_id = model_id
        conversation.updated_at = utc_now_iso()
        self._db.commit()

    def list_conversations(self, user_id: str) -> list[Conversation]:
        """List a user's active conversations, most recently updated first."""
        stmt = (
            select(Conversation)
            .where(Conversation.user_id == user_id, Conversation.is_active == True)  # noqa: E712
            .order_by(Conversation.updated_at.desc(), Conversation.created_at.desc())
        )
        return list(self._db.scalars(stmt))

    def claim_generating(self, conversation_id: str) -> bool:
        """Atomically set generating=True if it is currently False.

        Returns:
            True if this caller now owns the generation slot.
        """
        result = self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.generating == False)  # noqa: E712
            .values(generating=True, updated_at=utc_now_iso())
        )
        self._db.commit()
        return result.rowcount == 1

    def set_generating(self, conversation_id: str, generating: bool) -> None:
        """Set the conversation's generating flag unconditionally."""
        self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(generating=generating, updated_at=utc_now_iso())
        )
        self._db.commit()

    def reset_stale_generating(self) -> int:
        """Clear every generating flag. Called at startup, before any
        generation can run, to recover from a crash mid-stream.

        Returns:
            Number of conversations that were unstuck.
        """
        result = self._db.execute(
            update(Conversation)
            .where(Conversation.generating == True)  # noqa: E712
            .values(generating=False, updated_at=utc_now_iso())
        )
        self._db.commit()
        return result.rowcount

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        """Set a user-chosen title.

        Returns:
            True if the conversation was found and updated.
        """
        conversation = self._db.get(Conversation, conversation_id)
        if conversation is None:
            return False
        conversation.title = title
        conversation.updated_at = utc_now_iso()
        self._db.commit()
        return True

    def update_title_if_default(
        self,
        conversation_id: str,
        title: str,
        default_title: str = DEFAULT_CONVERSATION_TITLE,
    ) -> bool:
        """Write a synthesized title only while the default is still in place.

        The check and the write are one UPDATE statement, so a rename
        that lands first always wins.

        Returns:
            True if the title was written.
        """
        result = self._db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.title == default_title)
            .values(title=title, updated_at=utc_now_iso())
        )
        self._db.commit()
        return result.rowcount == 1

    # --- Messages ---

    def get_messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation in creation order."""
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.sequence)
        )
        return list(self._db.scalars(stmt))

    def get_message(self, message_id: str) -> Message | None:
        return self._db.get(Message, message_id)

    def _next_sequence(self, conversation_id: str) -> int:
        max_seq = self._db.scalar(
            select(func.max(Message.sequence)).where(
                Message.conversation_id == conversation_id
            )
        )
        return (max_seq or 0) + 1

    def _touch(self, conversation_id: str) -> None:
        conversation = self._db.get(Conversation, conversation_id)
        if conversation:
            conversation.updated_at = utc_now_iso()

    def append_user_message(
        self,
        conversation_id: str,
        content: str,
        attachments: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Append a user message with its attachment descriptors."""
        meta = dict(metadata or {})
        if attachments:
            meta["attachments"] = attachments
        msg = Message(
            id=generate_uuid(),
            conversation_id=conversation_id,
            sequence=self._next_sequence(conversation_id),
            role=MessageRole.user.value,
            content=content,
            metadata_json=_dumps(meta) if meta else None,
        )
        self._db.add(msg)
        self._touch(conversation_id)
        self._db.commit()
        return msg

    def create_assistant_message(
        self,
        conversation_id: str,
        vendor: str | None = None,
        model_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> Message:
        """Create the empty assistant message for a new turn."""
        msg = Message(
            id=message_id or generate_uuid(),
            conversation_id=conversation_id,
            sequence=self._next_sequence(conversation_id),
            role=MessageRole.assistant.value,
            content="",
            vendor=vendor,
            model_id=model_id,
            metadata_json=_dumps(metadata) if metadata else None,
        )
        self._db.add(msg)
        self._touch(conversation_id)
        self._db.commit()
        return msg

    def upsert_assistant_message(
        self,
        message_id: str,
        patch: AssistantMessagePatch,
        conversation_id: str | None = None,
    ) -> Message:
        """Overwrite fields of an assistant message, creating it if missing.

        Writing the same patch twice leaves the row unchanged.

        Raises:
            ValidationError: If the message does not exist and no
                conversation_id was given to create it under.
        """
        msg = self._db.get(Message, message_id)
        if msg is None:
            if conversation_id is None:
                raise ValidationError(
                    f"Cannot create assistant message {message_id} without a conversation"
                )
            msg = self.create_assistant_message(
                conversation_id, vendor=patch.vendor, model_id=patch.model_id,
                message_id=message_id,
            )

        if patch.content is not None:
            msg.content = patch.content
        if patch.reasoning is not None:
            msg.reasoning = patch.reasoning
        if patch.tool_invocations is not None:
            msg.tool_invocations_json = _dumps(patch.tool_invocations)
        if patch.annotations is not None:
            msg.annotations_json = _dumps(patch.annotations)
        if patch.parts is not None:
            msg.parts_json = _dumps(patch.parts)
        if patch.usage is not None:
            msg.usage_json = _dumps(patch.usage)
        if patch.finish_reason is not None:
            msg.finish_reason = patch.finish_reason
        if patch.cost_usd is not None:
            msg.cost_usd = str(patch.cost_usd)
        if patch.error is not None:
            msg.error_json = _dumps(patch.error)
        if patch.generation_id is not None:
            msg.generation_id = patch.generation_id
        if patch.vendor is not None:
            msg.vendor = patch.vendor
        if patch.model_id is not None:
            msg.model_id = patch.model_id
        if patch.metadata:
            merged = message_metadata(msg)
            merged.update(patch.metadata)
            msg.metadata_json = _dumps(merged)

        msg.updated_at = utc_now_iso()
        self._db.commit()
        return msg

    def count_assistant_messages(self, conversation_id: str) -> int:
        """Number of assistant messages in a conversation."""
        return self._db.scalar(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id,
                Message.role == MessageRole.assistant.value,
            )
        ) or 0

    def get_conversation_with_messages(
        self, conversation_id: str, user_id: str
    ) -> dict[str, Any] | None:
        """Load a conversation and its messages for display.

        Returns:
            Dict with 'conversation' and 'messages' keys, or None if not found.
        """
        conversation = self.get_conversation(conversation_id, user_id)
        if conversation is None:
            return None
        return {
            "conversation": conversation_to_dict(conversation),
            "messages": [message_to_dict(m) for m in self.get_messages(conversation_id)],
        }

    # --- Rules ---

    def list_rules(self, user_id: str) -> list[UserRule]:
        stmt = select(UserRule).where(UserRule.user_id == user_id).order_by(UserRule.created_at)
        return list(self._db.scalars(stmt))

    def save_rule(
        self,
        user_id: str,
        name: str,
        rule: str,
        attach: RuleAttachMode | str = RuleAttachMode.manual,
    ) -> UserRule:
        """Create or replace a rule by name.

        Raises:
            ValidationError: If the name or attach mode is invalid.
        """
        name = name.strip().lstrip("@")
        if not name:
            raise ValidationError("Rule name must not be empty")
        try:
            attach_value = RuleAttachMode(attach).value
        except ValueError as e:
            raise ValidationError(f"Unknown rule attach mode '{attach}'") from e

        existing = self._db.scalar(
            select(UserRule).where(UserRule.user_id == user_id, UserRule.name == name)
        )
        if existing is not None:
            existing.rule = rule
            existing.attach = attach_value
            existing.updated_at = utc_now_iso()
            self._db.commit()
            return existing

        row = UserRule(
            id=generate_uuid(), user_id=user_id, name=name, rule=rule, attach=attach_value
        )
        self._db.add(row)
        self._db.commit()
        return row

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        row = self._db.get(UserRule, rule_id)
        if row is None or row.user_id != user_id:
            return False
        self._db.delete(row)
        self._db.commit()
        return True

    # --- Usage ---

    def record_usage(self, record: UsageRecord) -> UsageRecord:
        """Append a usage record. Existing records are never touched."""
        if not record.id:
            record.id = generate_uuid()
        self._db.add(record)
        self._db.commit()
        return record

    def list_usage(self, user_id: str) -> list[UsageRecord]:
        stmt = (
            select(UsageRecord)
            .where(UsageRecord.user_id == user_id)
            .order_by(UsageRecord.created_at)
        )
        return list(self._db.scalars(stmt))
