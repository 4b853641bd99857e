"""User rule resolution for a generation.

A rule is attached to a turn when its mode is 'always', or when it is
'manual' and the user mentioned it as ``@name`` in any user message of
the conversation. Attached rules become one system message placed after
the history.
"""

import re
from collections.abc import Iterable

from src.db.models import RuleAttachMode, UserRule

MENTION_PATTERN = re.compile(r"@([A-Za-z0-9_-]+)")

RULES_PREAMBLE = (
    "The user has mentioned one or more rules to follow with the @<rule_name> "
    "syntax. Please follow these rules as they apply."
)


def extract_mentions(text: str) -> list[str]:
    """Rule names mentioned in text, in order of first appearance."""
    seen: dict[str, None] = {}
    for name in MENTION_PATTERN.findall(text or ""):
        seen.setdefault(name, None)
    return list(seen)


def resolve_rules(rules: Iterable[UserRule], messages: Iterable[str]) -> list[UserRule]:
    """Pick the rules that apply to a generation.

    Args:
        rules: All of the user's rules.
        messages: Text of the conversation's user messages.

    Returns:
        'always' rules followed by mentioned 'manual' rules, without
        duplicates, each in first-seen order.
    """
    rules = list(rules)
    attached: dict[str, UserRule] = {}
    for rule in rules:
        if rule.attach == RuleAttachMode.always.value:
            attached.setdefault(rule.id, rule)

    manual = {r.name: r for r in rules if r.attach == RuleAttachMode.manual.value}
    for text in messages:
        for name in extract_mentions(text):
            rule = manual.get(name)
            if rule is not None:
                attached.setdefault(rule.id, rule)
    return list(attached.values())


def build_rules_message(rules: list[UserRule]) -> str | None:
    """Render attached rules as the system message text, or None if empty."""
    if not rules:
        return None
    lines = "\n".join(f"- {r.name}: {r.rule}" for r in rules)
    return f"{RULES_PREAMBLE}\nRules to follow:\n{lines}"
