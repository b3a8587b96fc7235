"""Merge learned rules and AI verdicts into a final category per message."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime

from ..core.config import ClassificationSettings
from ..core.datetime_utils import utcnow
from ..core.errors import AccountNotFoundError, ClassificationProviderError, ConfigurationError
from ..core.interfaces import AIClassifier, Store
from ..core.models import (
    Account,
    Category,
    ClassificationFactor,
    ClassificationInput,
    ClassificationOutcome,
    ClassificationResult,
    LearnedRule,
    MatchType,
    Message,
    RuleAction,
    SuggestedAction,
    User,
)
from ..ingestion.parser import build_preview
from .categories import DEFAULT_CATEGORIES
from .rules import RuleMatcher, normalize_match_value

LOGGER = logging.getLogger(__name__)

_RULE_ACTIONS: dict[RuleAction, SuggestedAction] = {
    RuleAction.ARCHIVE: SuggestedAction.ARCHIVE,
    RuleAction.TRASH: SuggestedAction.TRASH,
    RuleAction.QUARANTINE: SuggestedAction.QUARANTINE,
}


def clamp_confidence(value: float) -> float:
    """Clamp to [0, 1], rounded so that sums such as 0.6 + 0.3 stay exact."""
    return round(min(max(value, 0.0), 1.0), 6)


class ClassificationEngine:
    """Assign each message exactly one category.

    The AI scorer always runs; a matching learned rule either forces its
    target (exact sender or subject matches) or biases the AI scores
    (subject substring matches). Low-confidence results go to Quarantine.
    """

    def __init__(
        self,
        store: Store,
        classifier: AIClassifier,
        settings: ClassificationSettings,
        *,
        rule_matcher: RuleMatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._settings = settings
        self._rules = rule_matcher or RuleMatcher()
        self._clock = clock

    def classify_message(
        self, message_id: int, *, force: bool = False
    ) -> ClassificationOutcome | None:
        """Classify and persist one message; ``None`` when nothing was written."""
        message = self._store.get_message(message_id)
        if message is None:
            LOGGER.warning("Message %s no longer exists; skipping classification", message_id)
            return None
        if message.manual_category_id is not None or message.is_hidden or message.never_show:
            LOGGER.debug("Message %s is user-managed; skipping", message_id)
            return None
        if message.classified_at is not None and not force:
            LOGGER.debug("Message %s already classified", message_id)
            return None

        account = self._account(message.account_id)
        user = self._store.get_user(account.user_id)
        categories = self._categories(account.user_id)
        by_id = {category.id: category for category in categories}
        by_name = {category.name.casefold(): category for category in categories}
        quarantine = by_name.get(self._settings.quarantine_category.casefold())
        if quarantine is None:
            raise ConfigurationError(
                f"Quarantine category '{self._settings.quarantine_category}' is missing"
            )

        rule = self._rules.match(
            self._store.list_rules(account.user_id, account.id), message
        )
        payload = self._build_input(message, account, user)
        try:
            result = self._classifier.classify(payload, categories)
            if result.category.casefold() not in by_name:
                raise ClassificationProviderError(
                    f"Classifier returned unknown category '{result.category}'"
                )
        except ClassificationProviderError as exc:
            LOGGER.warning(
                "AI classification failed for message %s; using rules only: %s",
                message_id,
                exc,
            )
            outcome = self._rule_only(message, rule, by_id, quarantine, exc)
        else:
            outcome = self._merge(message, rule, result, by_id, by_name, quarantine)

        outcome.used_body_content = payload.body_preview is not None
        outcome.body_chars_sent = len(payload.body_preview or "")
        classified_at = self._clock()
        if not self._store.apply_classification(outcome, classified_at):
            LOGGER.info(
                "Message %s was taken over by the user; classification discarded",
                message_id,
            )
            return None
        if rule is not None and rule.id is not None:
            self._store.record_rule_applied(rule.id, classified_at)
            if rule.target_folder_id is not None:
                self._store.move_message(message.id, rule.target_folder_id)

        LOGGER.info(
            "Classified message %s as %s (confidence=%.2f, review=%s, degraded=%s)",
            message_id,
            outcome.category_name,
            outcome.confidence,
            outcome.needs_human_review,
            outcome.degraded,
        )
        return outcome

    def apply_override(
        self,
        message_id: int,
        category_id: int,
        *,
        make_permanent: bool = False,
        apply_to_domain: bool = False,
    ) -> LearnedRule | None:
        """Record a user's manual category and optionally learn a sender rule."""
        message = self._store.get_message(message_id)
        if message is None:
            raise KeyError(f"Message {message_id} does not exist")
        account = self._account(message.account_id)
        category = next(
            (
                item
                for item in self._categories(account.user_id)
                if item.id == category_id
            ),
            None,
        )
        if category is None:
            raise KeyError(f"Category {category_id} does not exist")

        self._store.set_manual_category(message_id, category, self._clock())
        LOGGER.info("Message %s manually filed as %s", message_id, category.name)
        if not make_permanent or message.sender is None:
            return None

        match_type = MatchType.SENDER_DOMAIN if apply_to_domain else MatchType.SENDER_EMAIL
        raw_value = message.sender.domain if apply_to_domain else message.sender.address
        rule = self._store.upsert_rule(
            LearnedRule(
                id=None,
                user_id=account.user_id,
                match_type=match_type,
                match_value=normalize_match_value(match_type, raw_value),
                target_category_id=category.id,
                priority=self._settings.override_rule_priority,
                confidence_boost=self._settings.override_rule_boost,
            )
        )
        LOGGER.info(
            "Learned rule %s: %s=%s -> %s",
            rule.id,
            rule.match_type,
            rule.match_value,
            category.name,
        )
        return rule

    # Internal helpers --------------------------------------------------------
    def _account(self, account_id: int) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} does not exist")
        return account

    def _categories(self, user_id: int) -> list[Category]:
        self._store.ensure_categories(user_id, DEFAULT_CATEGORIES)
        return self._store.list_categories(user_id)

    def _preview_limit(self, user: User | None) -> int:
        configured = user.settings.get("body_preview_chars") if user else None
        if isinstance(configured, int) and not isinstance(configured, bool) and configured >= 0:
            return configured
        return self._settings.body_preview_chars

    def _build_input(
        self, message: Message, account: Account, user: User | None
    ) -> ClassificationInput:
        limit = self._preview_limit(user)
        body: str | None = None
        if account.privacy_level.allows_remote_body and limit > 0:
            body = build_preview(message.body_text, message.body_html, limit)
            if body is None and message.body_preview:
                body = message.body_preview[:limit]
        history = (
            self._store.sender_history(
                account.user_id, message.sender.address, exclude_message_id=message.id
            )
            if message.sender is not None
            else None
        )
        return ClassificationInput(
            message_id=message.id,
            account_id=account.id,
            provider=account.provider,
            subject=message.subject or "",
            sender=message.sender,
            to=message.to,
            cc=message.cc,
            date=message.date_received,
            body_preview=body,
            body_preview_chars=limit,
            existing_labels=message.labels,
            is_reply=message.is_reply,
            has_attachments=bool(message.attachments),
            attachment_types=tuple(
                sorted(
                    {item.content_type for item in message.attachments if item.content_type}
                )
            ),
            sender_history=history,
        )

    def _merge(
        self,
        message: Message,
        rule: LearnedRule | None,
        result: ClassificationResult,
        by_id: Mapping[int, Category],
        by_name: Mapping[str, Category],
        quarantine: Category,
    ) -> ClassificationOutcome:
        # pylint: disable=too-many-arguments
        primary = by_name[result.category.casefold()]
        factors = list(result.factors)
        target = (
            by_id.get(rule.target_category_id)
            if rule is not None and rule.target_category_id is not None
            else None
        )
        forced = False
        if rule is not None and target is not None and rule.match_type.is_high_certainty:
            forced = True
            chosen = target
            confidence = clamp_confidence(result.confidence + rule.confidence_boost)
        else:
            scores: dict[int, float] = {}
            for candidate in result.candidates():
                category = by_name.get(candidate.category.casefold())
                if category is not None:
                    scores[category.id] = max(scores.get(category.id, 0.0), candidate.confidence)
            if rule is not None:
                boosted = target.id if target is not None else primary.id
                scores[boosted] = scores.get(boosted, 0.0) + rule.confidence_boost
            clamped = {key: clamp_confidence(value) for key, value in scores.items()}
            best = max(clamped.values())
            contenders = [
                by_id[key]
                for key, value in clamped.items()
                if best - value <= self._settings.tie_epsilon
            ]
            chosen = min(contenders, key=lambda item: (item.priority, item.id))
            confidence = clamped[chosen.id]

        if rule is not None:
            factors.append(
                ClassificationFactor(
                    factor="learned_rule",
                    signal=f"{rule.match_type}={rule.match_value}",
                    weight=rule.confidence_boost,
                )
            )

        below_threshold = confidence < self._settings.review_threshold
        needs_review = below_threshold or result.needs_human_review
        action = result.suggested_action
        if rule is not None and rule.action in _RULE_ACTIONS:
            action = _RULE_ACTIONS[rule.action]
            if rule.action is RuleAction.QUARANTINE:
                chosen = quarantine
        if below_threshold and not forced:
            chosen = quarantine
        if chosen.id == quarantine.id:
            action = SuggestedAction.QUARANTINE

        return ClassificationOutcome(
            message_id=message.id,
            category_id=chosen.id,
            category_name=chosen.name,
            confidence=confidence,
            explanation=result.explanation,
            needs_human_review=needs_review,
            suggested_action=action,
            factors=tuple(factors),
            rule_id=rule.id if rule is not None else None,
            model=result.model,
        )

    def _rule_only(
        self,
        message: Message,
        rule: LearnedRule | None,
        by_id: Mapping[int, Category],
        quarantine: Category,
        error: ClassificationProviderError,
    ) -> ClassificationOutcome:
        if rule is None:
            return ClassificationOutcome(
                message_id=message.id,
                category_id=quarantine.id,
                category_name=quarantine.name,
                confidence=0.0,
                explanation=f"AI classification unavailable: {error}",
                needs_human_review=True,
                suggested_action=SuggestedAction.QUARANTINE,
                degraded=True,
            )

        target = (
            by_id.get(rule.target_category_id)
            if rule.target_category_id is not None and rule.action is not RuleAction.QUARANTINE
            else None
        )
        chosen = target or quarantine
        action = _RULE_ACTIONS.get(rule.action, SuggestedAction.INBOX)
        if chosen.id == quarantine.id:
            action = SuggestedAction.QUARANTINE
        return ClassificationOutcome(
            message_id=message.id,
            category_id=chosen.id,
            category_name=chosen.name,
            confidence=clamp_confidence(
                self._settings.rule_only_confidence + rule.confidence_boost
            ),
            explanation=(
                f"AI classification unavailable; filed by learned rule "
                f"{rule.match_type}={rule.match_value}"
            ),
            needs_human_review=True,
            suggested_action=action,
            factors=(
                ClassificationFactor(
                    factor="learned_rule",
                    signal=f"{rule.match_type}={rule.match_value}",
                    weight=rule.confidence_boost,
                ),
            ),
            rule_id=rule.id,
            degraded=True,
        )


__all__ = ["ClassificationEngine", "clamp_confidence"]
