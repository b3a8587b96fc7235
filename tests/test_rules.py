"""Tests for learned-rule matching."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from mailhub.core.models import EmailAddress, LearnedRule, MatchType, Message
from mailhub.intelligence import RuleMatcher, normalize_match_value
from mailhub.intelligence.rules import rule_matches


def _message(
    sender: str | None = "Billing@Shop.Example.com", subject: str = "Your March receipt"
) -> Message:
    return Message(
        id=1,
        account_id=10,
        thread_id=1,
        folder_id=1,
        provider_message_id="1",
        subject=subject,
        sender=EmailAddress(sender.lower()) if sender else None,
        to=(),
        cc=(),
        message_id_header=None,
        in_reply_to=None,
        date_received=datetime(2025, 10, 6, tzinfo=UTC),
        body_text=None,
        body_html=None,
        body_preview=None,
        attachments=(),
        labels=(),
        is_read=False,
        is_reply=False,
    )


def _rule(
    match_type: MatchType,
    value: str,
    *,
    rule_id: int = 1,
    priority: int = 100,
    account_id: int | None = None,
) -> LearnedRule:
    return LearnedRule(
        id=rule_id,
        user_id=1,
        match_type=match_type,
        match_value=value,
        priority=priority,
        account_id=account_id,
    )


def test_normalize_match_value() -> None:
    assert normalize_match_value(MatchType.SENDER_DOMAIN, " @Example.COM ") == "example.com"
    assert normalize_match_value(MatchType.SUBJECT_CONTAINS, " Receipt ") == "receipt"


@pytest.mark.parametrize(
    ("match_type", "value", "expected"),
    [
        (MatchType.SENDER_EMAIL, "billing@shop.example.com", True),
        (MatchType.SENDER_EMAIL, "other@shop.example.com", False),
        (MatchType.SENDER_DOMAIN, "shop.example.com", True),
        (MatchType.SENDER_DOMAIN, "example.com", True),
        (MatchType.SENDER_DOMAIN, "ample.com", False),
        (MatchType.SUBJECT_EXACT, "your march receipt", True),
        (MatchType.SUBJECT_EXACT, "receipt", False),
        (MatchType.SUBJECT_CONTAINS, "MARCH", True),
        (MatchType.SUBJECT_CONTAINS, "", False),
    ],
)
def test_rule_matches(match_type: MatchType, value: str, expected: bool) -> None:
    assert rule_matches(_rule(match_type, value), _message()) is expected


def test_sender_rules_never_match_without_sender() -> None:
    message = _message(sender=None)

    assert not rule_matches(_rule(MatchType.SENDER_EMAIL, "a@b.c"), message)
    assert not rule_matches(_rule(MatchType.SENDER_DOMAIN, "b.c"), message)


def test_lowest_priority_rule_wins_then_lowest_id() -> None:
    rules = [
        _rule(MatchType.SUBJECT_CONTAINS, "receipt", rule_id=3, priority=50),
        _rule(MatchType.SENDER_DOMAIN, "example.com", rule_id=2, priority=10),
        _rule(MatchType.SENDER_EMAIL, "billing@shop.example.com", rule_id=1, priority=10),
    ]

    matched = RuleMatcher().match(rules, _message())

    assert matched is not None
    assert matched.id == 1


def test_rules_scoped_to_another_account_are_ignored() -> None:
    rules = [_rule(MatchType.SENDER_DOMAIN, "example.com", account_id=99)]

    assert RuleMatcher().match(rules, _message()) is None
