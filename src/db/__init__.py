"""Database module for Kepler Chat state management and persistence."""

from src.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from src.db.models import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    Message,
    MessageRole,
    ProviderCredential,
    RuleAttachMode,
    UsageRecord,
    UserRule,
    ValidationStatus,
)

__all__ = [
    # Models
    "Conversation",
    "Message",
    "ProviderCredential",
    "UserRule",
    "UsageRecord",
    # Enums
    "MessageRole",
    "ValidationStatus",
    "RuleAttachMode",
    "DEFAULT_CONVERSATION_TITLE",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
