"""Tests for user rule resolution."""

from src.db.models import UserRule
from src.services.rules import (
    RULES_PREAMBLE,
    build_rules_message,
    extract_mentions,
    resolve_rules,
)


def _rule(rule_id, name, attach="manual", text=None):
    return UserRule(id=rule_id, user_id="u1", name=name, rule=text or f"{name} rule", attach=attach)


class TestExtractMentions:

    def test_ordered_unique(self):
        assert extract_mentions("@b then @a and @b again") == ["b", "a"]

    def test_allows_dash_and_underscore(self):
        assert extract_mentions("use @code-style and @no_emoji.") == ["code-style", "no_emoji"]

    def test_none_or_empty(self):
        assert extract_mentions("") == []
        assert extract_mentions(None) == []


class TestResolveRules:

    def test_always_rules_attached_without_mention(self):
        rules = [_rule("1", "concise", "always"), _rule("2", "formal")]
        assert [r.id for r in resolve_rules(rules, ["hello"])] == ["1"]

    def test_manual_rule_attached_on_mention(self):
        rules = [_rule("1", "concise", "always"), _rule("2", "formal")]
        resolved = resolve_rules(rules, ["first", "please be @formal"])
        assert [r.id for r in resolved] == ["1", "2"]

    def test_deduplicated(self):
        rules = [_rule("1", "formal")]
        resolved = resolve_rules(rules, ["@formal", "@formal again"])
        assert len(resolved) == 1

    def test_mentioning_always_rule_does_not_duplicate(self):
        rules = [_rule("1", "concise", "always")]
        assert len(resolve_rules(rules, ["@concise"])) == 1

    def test_unknown_mention_ignored(self):
        assert resolve_rules([_rule("1", "formal")], ["@someone"]) == []


class TestBuildRulesMessage:

    def test_empty_returns_none(self):
        assert build_rules_message([]) is None

    def test_format(self):
        message = build_rules_message([_rule("1", "formal", text="Use formal tone")])
        assert message == (
            f"{RULES_PREAMBLE}\nRules to follow:\n- formal: Use formal tone"
        )
        assert message.startswith("The user has mentioned one or more rules")
