"""Tests for ConversationPersistenceService."""

import json
from decimal import Decimal

import pytest

from src.db.models import Conversation, Message, UsageRecord
from src.errors import NotFoundError, ValidationError
from src.services.conversation_persistence_service import (
    AssistantMessagePatch,
    ConversationPersistenceService,
    message_to_dict,
)


@pytest.fixture
def svc(db_session):
    """Service under test."""
    return ConversationPersistenceService(db_session)


@pytest.fixture
def conversation(svc):
    return svc.get_or_create_conversation("u1", vendor="openai", model_id="gpt-4.1")


class TestConversations:

    def test_creates_with_default_title(self, svc):
        conv = svc.get_or_create_conversation("u1", vendor="openai", model_id="gpt-4.1")
        assert conv.title == "New Chat"
        assert conv.generating is False
        assert conv.vendor == "openai"

    def test_existing_conversation_takes_new_model(self, svc, conversation):
        same = svc.get_or_create_conversation(
            "u1", conversation.id, vendor="groq", model_id="llama-3.3-70b-versatile"
        )
        assert same.id == conversation.id
        assert same.vendor == "groq"

    def test_foreign_conversation_not_found(self, svc, conversation):
        with pytest.raises(NotFoundError):
            svc.get_or_create_conversation("intruder", conversation.id)

    def test_set_model_config(self, svc, conversation):
        svc.set_model_config(conversation.id, "anthropic", "claude-sonnet-4-5")
        stored = svc.get_conversation(conversation.id, "u1")
        assert (stored.vendor, stored.model_id) == ("anthropic", "claude-sonnet-4-5")

    def test_set_model_config_unknown_conversation(self, svc):
        with pytest.raises(NotFoundError):
            svc.set_model_config("missing", "openai", "gpt-4.1")

    def test_get_conversation_checks_owner(self, svc, conversation):
        assert svc.get_conversation(conversation.id, "u1") is not None
        assert svc.get_conversation(conversation.id, "u2") is None
        assert svc.get_conversation("missing") is None

    def test_list_only_own(self, svc, conversation):
        svc.get_or_create_conversation("u2")
        assert [c.id for c in svc.list_conversations("u1")] == [conversation.id]


class TestGeneratingFlag:

    def test_claim_is_exclusive(self, svc, conversation):
        assert svc.claim_generating(conversation.id) is True
        assert svc.claim_generating(conversation.id) is False

    def test_claim_after_release(self, svc, conversation):
        svc.claim_generating(conversation.id)
        svc.set_generating(conversation.id, False)
        assert svc.claim_generating(conversation.id) is True

    def test_claim_missing_conversation(self, svc):
        assert svc.claim_generating("missing") is False

    def test_reset_stale(self, svc, conversation, db_session):
        other = svc.get_or_create_conversation("u1")
        svc.claim_generating(conversation.id)
        svc.claim_generating(other.id)
        assert svc.reset_stale_generating() == 2
        db_session.expire_all()
        assert db_session.get(Conversation, conversation.id).generating is False
        assert svc.reset_stale_generating() == 0


class TestTitles:

    def test_update_title_if_default(self, svc, conversation, db_session):
        assert svc.update_title_if_default(conversation.id, "Trip planning") is True
        db_session.expire_all()
        assert db_session.get(Conversation, conversation.id).title == "Trip planning"

    def test_rename_wins_over_synthesis(self, svc, conversation, db_session):
        svc.rename_conversation(conversation.id, "My title")
        assert svc.update_title_if_default(conversation.id, "Synthesized") is False
        db_session.expire_all()
        assert db_session.get(Conversation, conversation.id).title == "My title"

    def test_rename_missing(self, svc):
        assert svc.rename_conversation("missing", "x") is False


class TestMessages:

    def test_sequences_increase(self, svc, conversation):
        first = svc.append_user_message(conversation.id, "Hello")
        second = svc.create_assistant_message(conversation.id, "openai", "gpt-4.1")
        assert (first.sequence, second.sequence) == (1, 2)
        assert second.content == ""
        assert [m.id for m in svc.get_messages(conversation.id)] == [first.id, second.id]

    def test_user_message_attachments_in_metadata(self, svc, conversation):
        msg = svc.append_user_message(
            conversation.id,
            "Look",
            attachments=[{"type": "image", "url": "https://x/img.png"}],
            metadata={"web_search_enabled": True},
        )
        meta = json.loads(msg.metadata_json)
        assert meta["attachments"][0]["type"] == "image"
        assert meta["web_search_enabled"] is True

    def test_upsert_overwrites_content(self, svc, conversation):
        msg = svc.create_assistant_message(conversation.id)
        svc.upsert_assistant_message(msg.id, AssistantMessagePatch(content="Hel"))
        updated = svc.upsert_assistant_message(msg.id, AssistantMessagePatch(content="Hello"))
        assert updated.content == "Hello"

    def test_upsert_is_idempotent(self, svc, conversation):
        msg = svc.create_assistant_message(conversation.id)
        patch = AssistantMessagePatch(
            content="Done", finish_reason="stop", usage={"total_tokens": 3},
            cost_usd=Decimal("0.0012"),
        )
        once = message_to_dict(svc.upsert_assistant_message(msg.id, patch))
        twice = message_to_dict(svc.upsert_assistant_message(msg.id, patch))
        once.pop("updated_at")
        twice.pop("updated_at")
        assert once == twice
        assert twice["cost_usd"] == "0.0012"

    def test_upsert_merges_metadata(self, svc, conversation):
        msg = svc.create_assistant_message(conversation.id, metadata={"a": 1})
        svc.upsert_assistant_message(msg.id, AssistantMessagePatch(metadata={"cancelled": True}))
        assert json.loads(svc.get_message(msg.id).metadata_json) == {"a": 1, "cancelled": True}

    def test_upsert_none_fields_untouched(self, svc, conversation):
        msg = svc.create_assistant_message(conversation.id)
        svc.upsert_assistant_message(msg.id, AssistantMessagePatch(content="x", reasoning="r"))
        svc.upsert_assistant_message(msg.id, AssistantMessagePatch(finish_reason="stop"))
        stored = svc.get_message(msg.id)
        assert (stored.content, stored.reasoning) == ("x", "r")

    def test_upsert_creates_missing_message(self, svc, conversation):
        msg = svc.upsert_assistant_message(
            "fixed-id", AssistantMessagePatch(content="late"), conversation_id=conversation.id
        )
        assert msg.id == "fixed-id"
        assert msg.role == "assistant"

    def test_upsert_missing_without_conversation(self, svc):
        with pytest.raises(ValidationError):
            svc.upsert_assistant_message("nope", AssistantMessagePatch(content="x"))

    def test_count_assistant_messages(self, svc, conversation):
        svc.append_user_message(conversation.id, "hi")
        assert svc.count_assistant_messages(conversation.id) == 0
        svc.create_assistant_message(conversation.id)
        assert svc.count_assistant_messages(conversation.id) == 1

    def test_corrupted_json_reads_as_none(self, svc, conversation, db_session):
        msg = svc.create_assistant_message(conversation.id)
        db_session.get(Message, msg.id).usage_json = "{not json"
        db_session.commit()
        assert message_to_dict(svc.get_message(msg.id))["usage"] is None

    def test_conversation_with_messages(self, svc, conversation):
        svc.append_user_message(conversation.id, "hi")
        data = svc.get_conversation_with_messages(conversation.id, "u1")
        assert data["conversation"]["id"] == conversation.id
        assert [m["role"] for m in data["messages"]] == ["user"]
        assert svc.get_conversation_with_messages(conversation.id, "u2") is None


class TestRules:

    def test_save_and_list(self, svc):
        svc.save_rule("u1", "@concise", "Answer briefly", attach="always")
        rules = svc.list_rules("u1")
        assert [(r.name, r.attach) for r in rules] == [("concise", "always")]

    def test_save_replaces_by_name(self, svc):
        svc.save_rule("u1", "tone", "Be formal")
        svc.save_rule("u1", "tone", "Be casual")
        assert [r.rule for r in svc.list_rules("u1")] == ["Be casual"]

    def test_invalid_rule(self, svc):
        with pytest.raises(ValidationError):
            svc.save_rule("u1", "  ", "x")
        with pytest.raises(ValidationError):
            svc.save_rule("u1", "x", "y", attach="sometimes")

    def test_delete_checks_owner(self, svc):
        rule = svc.save_rule("u1", "tone", "Be formal")
        assert svc.delete_rule("u2", rule.id) is False
        assert svc.delete_rule("u1", rule.id) is True
        assert svc.list_rules("u1") == []


class TestUsage:

    def test_record_and_list(self, svc, conversation):
        svc.record_usage(UsageRecord(
            user_id="u1", conversation_id=conversation.id, vendor="openai",
            model_id="gpt-4.1", prompt_tokens=10, completion_tokens=5,
            total_tokens=15, cost_usd="0.0001",
        ))
        records = svc.list_usage("u1")
        assert len(records) == 1
        assert records[0].id
        assert svc.list_usage("u2") == []
