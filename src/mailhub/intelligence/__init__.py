"""Rule matching and AI-backed classification."""

from .categories import DEFAULT_CATEGORIES
from .engine import ClassificationEngine, clamp_confidence
from .llm import AnthropicClient, LLMClient, LLMError, OllamaClient, build_llm_client
from .rules import RuleMatcher, normalize_match_value
from .scorer import LLMClassifier, parse_verdict

__all__ = [
    "AnthropicClient",
    "ClassificationEngine",
    "DEFAULT_CATEGORIES",
    "LLMClassifier",
    "LLMClient",
    "LLMError",
    "OllamaClient",
    "RuleMatcher",
    "build_llm_client",
    "clamp_confidence",
    "normalize_match_value",
    "parse_verdict",
]
