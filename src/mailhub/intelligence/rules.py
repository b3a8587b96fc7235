"""Deterministic learned-rule matching."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..core.models import LearnedRule, MatchType, Message

LOGGER = logging.getLogger(__name__)


def normalize_match_value(match_type: MatchType, value: str) -> str:
    """Canonical form stored for a rule pattern."""
    cleaned = value.strip()
    if match_type is MatchType.SENDER_DOMAIN:
        return cleaned.lstrip("@").casefold()
    return cleaned.casefold()


def rule_matches(rule: LearnedRule, message: Message) -> bool:
    pattern = normalize_match_value(rule.match_type, rule.match_value)
    if not pattern:
        return False
    match rule.match_type:
        case MatchType.SENDER_EMAIL:
            return message.sender is not None and message.sender.address.casefold() == pattern
        case MatchType.SENDER_DOMAIN:
            if message.sender is None:
                return False
            domain = message.sender.domain
            return domain == pattern or domain.endswith(f".{pattern}")
        case MatchType.SUBJECT_EXACT:
            return (message.subject or "").strip().casefold() == pattern
        case MatchType.SUBJECT_CONTAINS:
            return pattern in (message.subject or "").casefold()
    return False


class RuleMatcher:
    """Pick the first rule, by ascending priority, that matches a message."""

    def match(self, rules: Iterable[LearnedRule], message: Message) -> LearnedRule | None:
        ordered = sorted(
            (rule for rule in rules if rule.account_id in (None, message.account_id)),
            key=lambda rule: (rule.priority, rule.id or 0),
        )
        for rule in ordered:
            if rule_matches(rule, message):
                LOGGER.debug(
                    "Rule %s (%s=%s) matched message %s",
                    rule.id,
                    rule.match_type,
                    rule.match_value,
                    message.id,
                )
                return rule
        return None


__all__ = ["RuleMatcher", "normalize_match_value", "rule_matches"]
