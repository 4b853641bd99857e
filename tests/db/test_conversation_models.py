"""Tests for Conversation, Message and ProviderCredential models."""

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.models import (
    Conversation,
    Message,
    MessageRole,
    ProviderCredential,
    RuleAttachMode,
    ValidationStatus,
)


class TestEnums:

    def test_values(self):
        assert [r.value for r in MessageRole] == ["user", "assistant", "system", "tool"]
        assert ValidationStatus.pending.value == "pending"
        assert RuleAttachMode.always.value == "always"

    def test_is_string(self):
        assert isinstance(MessageRole.assistant, str)


class TestConversation:

    def test_defaults(self, db_session: Session):
        conversation = Conversation(user_id="u1")
        db_session.add(conversation)
        db_session.commit()

        assert len(conversation.id) == 36
        assert conversation.title == "New Chat"
        assert conversation.generating is False
        assert conversation.is_active is True
        assert conversation.created_at is not None


class TestMessage:

    def test_sequence_unique_per_conversation(self, db_session: Session):
        db_session.add(Conversation(id="c1", user_id="u1"))
        db_session.add(Message(conversation_id="c1", role="user", content="a", sequence=1))
        db_session.commit()

        db_session.add(Message(conversation_id="c1", role="user", content="b", sequence=1))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_content_defaults_empty(self, db_session: Session):
        db_session.add(Conversation(id="c1", user_id="u1"))
        message = Message(conversation_id="c1", role="assistant", sequence=1)
        db_session.add(message)
        db_session.commit()
        assert message.content == ""


class TestProviderCredential:

    def test_one_row_per_user_and_vendor(self, db_session: Session):
        db_session.add(ProviderCredential(user_id="u1", vendor="openai"))
        db_session.commit()

        db_session.add(ProviderCredential(user_id="u1", vendor="openai"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_defaults(self, db_session: Session):
        row = ProviderCredential(user_id="u1", vendor="groq")
        db_session.add(row)
        db_session.commit()
        assert row.validation_status == "pending"
        assert row.is_enabled is True
        assert row.encrypted_secret is None
