"""SQLAlchemy ORM models for the Kepler Chat state database.

Defines conversations, their messages, per-user vendor credentials,
user rules and the append-only usage ledger. Uses SQLAlchemy 2.0 style
with Mapped and mapped_column. JSON payloads live in TEXT columns and
are parsed in the service layer.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)

DEFAULT_CONVERSATION_TITLE = "New Chat"


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class MessageRole(str, Enum):
    """Author of a conversation message."""

    user = "user"
    assistant = "assistant"
    system = "system"
    tool = "tool"


class ValidationStatus(str, Enum):
    """Credential validation state.

    Lifecycle: pending -> valid/invalid, changed only by an explicit
    validation call (save or revalidate).
    """

    pending = "pending"
    valid = "valid"
    invalid = "invalid"


class RuleAttachMode(str, Enum):
    """How a user rule is brought into a generation."""

    always = "always"
    manual = "manual"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Conversation(Base):
    """A thread of messages owned by one user.

    Attributes:
        id: UUID primary key.
        user_id: Owning user (supplied by the identity collaborator).
        title: Display title; 'New Chat' until synthesized or renamed.
        vendor: Vendor of the model last used in this conversation.
        model_id: Model last used in this conversation.
        system_prompt: Optional system prompt prepended to every turn.
        generating: True while a generation is active for this conversation.
        is_active: Soft delete flag.
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last-update timestamp.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_user_updated", "user_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(
        String(255), nullable=False, default=DEFAULT_CONVERSATION_TITLE
    )
    vendor: Mapped[str | None] = mapped_column(String(30), nullable=True)
    model_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    generating: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id!r}, title={self.title!r}, "
            f"generating={self.generating})>"
        )


class Message(Base):
    """A single conversation message.

    The assistant message for a turn is created empty and rewritten in
    place with cumulative snapshots while the response streams.

    Attributes:
        id: UUID primary key.
        conversation_id: FK to Conversation.
        sequence: Ordering within the conversation (monotonically increasing).
        role: 'user', 'assistant', 'system' or 'tool'.
        content: Message text; only grows while streaming.
        reasoning: Visible reasoning text, for vendors that expose it.
        parts_json: Structured parts (JSON list).
        tool_invocations_json: Tool calls made during the turn (JSON list).
        annotations_json: Citations/annotations (JSON list).
        vendor: Vendor that produced the message.
        model_id: Model id actually invoked (may carry ':online').
        generation_id: Vendor-side id of the completion, when reported.
        usage_json: Token usage {prompt_tokens, completion_tokens, total_tokens}.
        finish_reason: Normalized finish reason.
        cost_usd: Decimal string, computed at finalization.
        error_json: Structured error when the generation failed.
        metadata_json: Attachment descriptors and flags such as 'cancelled'.
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last-update timestamp.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_messages_conv_seq"),
        Index("ix_messages_conv_seq", "conversation_id", "sequence"),
        Index("ix_messages_conv_role", "conversation_id", "role"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    parts_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    tool_invocations_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    annotations_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(30), nullable=True)
    model_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    generation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    usage_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    finish_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    cost_usd: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id!r}, role={self.role!r}, "
            f"seq={self.sequence})>"
        )


class ProviderCredential(Base):
    """Encrypted per-user, per-vendor API key.

    Attributes:
        id: UUID primary key.
        user_id: Owning user.
        vendor: Vendor enum value ('openai', 'anthropic', ...).
        encrypted_secret: base64(nonce || AES-256-GCM ciphertext), or None
            once the key has been deleted.
        is_enabled: Whether the vendor may be used for generation.
        validation_status: 'pending', 'valid' or 'invalid'.
        last_validated_at: ISO8601 timestamp of the last explicit validation.
        default_model: Model preselected for this vendor.
        custom_models_json: User-defined model descriptors (JSON list).
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 timestamp, service-managed.
    """

    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "vendor", name="uq_provider_credentials_user_vendor"),
        Index("ix_provider_credentials_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    vendor: Mapped[str] = mapped_column(String(30), nullable=False)
    encrypted_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    validation_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ValidationStatus.pending.value
    )
    last_validated_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    default_model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    custom_models_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderCredential(user={self.user_id!r}, vendor={self.vendor!r}, "
            f"status={self.validation_status!r})>"
        )


class UserRule(Base):
    """User-authored reusable prompt fragment.

    Attributes:
        name: Mention handle without the '@' prefix (unique per user).
        rule: Instruction text inserted into the system rules message.
        attach: 'always' (every generation) or 'manual' (on @mention).
    """

    __tablename__ = "rules"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_rules_user_name"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    rule: Mapped[str] = mapped_column(Text, nullable=False)
    attach: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RuleAttachMode.manual.value
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return f"<UserRule(name={self.name!r}, attach={self.attach!r})>"


class UsageRecord(Base):
    """Immutable usage ledger entry, one per completed generation.

    Attributes:
        cost_usd: Decimal string computed from the model's per-1k rates.
    """

    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_records_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    conversation_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="SET NULL"),
        nullable=True,
    )
    vendor: Mapped[str] = mapped_column(String(30), nullable=False)
    model_id: Mapped[str] = mapped_column(String(200), nullable=False)
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[str] = mapped_column(String(40), nullable=False, default="0")
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    def __repr__(self) -> str:
        return (
            f"<UsageRecord(model={self.model_id!r}, tokens={self.total_tokens}, "
            f"cost={self.cost_usd!r})>"
        )
