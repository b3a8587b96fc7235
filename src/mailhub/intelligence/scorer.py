"""AI scorer that turns LLM completions into classification verdicts."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.errors import ClassificationProviderError
from ..core.models import (
    Category,
    CategoryScore,
    ClassificationFactor,
    ClassificationInput,
    ClassificationResult,
    SuggestedAction,
)
from .llm import LLMClient, LLMError
from .prompts import build_classification_prompt

LOGGER = logging.getLogger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def _clamp(value: object) -> object:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return min(max(float(value), 0.0), 1.0)
    return value


class _FactorPayload(BaseModel):
    factor: str
    signal: str = ""
    weight: float = 0.0


class _ScorePayload(BaseModel):
    category: str
    confidence: float

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: object) -> object:
        return _clamp(value)


class _VerdictPayload(BaseModel):
    category: str
    confidence: float
    explanation: str = ""
    alternates: list[_ScorePayload] = Field(default_factory=list)
    factors: list[_FactorPayload] = Field(default_factory=list)
    suggested_action: SuggestedAction = SuggestedAction.INBOX
    needs_human_review: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value: object) -> object:
        return _clamp(value)

    @field_validator("suggested_action", mode="before")
    @classmethod
    def lower_action(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value


class LLMClassifier:
    """Classify messages by prompting an LLM for a JSON verdict."""

    def __init__(self, llm_client: LLMClient) -> None:
        self._llm_client = llm_client

    def classify(
        self, payload: ClassificationInput, categories: Sequence[Category]
    ) -> ClassificationResult:
        """Return the model's verdict or raise ``ClassificationProviderError``."""
        if not categories:
            raise ClassificationProviderError("No categories available to classify into")
        prompt = build_classification_prompt(payload, categories)
        try:
            raw_output = self._llm_client.generate(prompt)
        except LLMError as exc:
            raise ClassificationProviderError(
                f"LLM classification failed for message {payload.message_id}: {exc}"
            ) from exc
        return parse_verdict(
            raw_output, categories, model=self._llm_client.provider_id
        )


def parse_verdict(
    raw: str, categories: Sequence[Category], *, model: str | None = None
) -> ClassificationResult:
    """Validate LLM output and map category names onto known categories."""
    try:
        verdict = _VerdictPayload.model_validate_json(_extract_json(raw))
    except ValidationError as exc:
        raise ClassificationProviderError(
            f"LLM output did not match the verdict schema: {exc.error_count()} error(s)"
        ) from exc

    by_name = {category.name.casefold(): category for category in categories}
    primary = by_name.get(verdict.category.strip().casefold())
    if primary is None:
        raise ClassificationProviderError(
            f"LLM chose unknown category '{verdict.category}'"
        )

    alternates: list[CategoryScore] = []
    for item in verdict.alternates:
        match = by_name.get(item.category.strip().casefold())
        if match is None or match.id == primary.id:
            LOGGER.debug("Ignoring alternate category '%s'", item.category)
            continue
        alternates.append(CategoryScore(category=match.name, confidence=item.confidence))

    return ClassificationResult(
        category=primary.name,
        confidence=verdict.confidence,
        explanation=verdict.explanation.strip(),
        factors=tuple(
            ClassificationFactor(
                factor=item.factor, signal=item.signal, weight=item.weight
            )
            for item in verdict.factors
        ),
        suggested_action=verdict.suggested_action,
        needs_human_review=verdict.needs_human_review,
        alternates=tuple(alternates),
        model=model,
    )


def _extract_json(raw: str) -> str:
    text = raw.strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        raise ClassificationProviderError("LLM output was not a JSON object")
    return text[start : end + 1]


__all__ = ["LLMClassifier", "parse_verdict"]
