"""LLM client abstractions used by the AI scorer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urljoin

import anthropic
import httpx
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..core.config import LlmSettings

LOGGER = logging.getLogger(__name__)


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMClient(Protocol):
    """Protocol describing the minimal LLM client behaviour."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    def generate(self, prompt: str) -> str:
        """Return the raw text completion for ``prompt``."""
        raise NotImplementedError


@dataclass(slots=True)
class OllamaClient:
    """Thin synchronous client for the Ollama HTTP API."""

    settings: LlmSettings

    def generate(self, prompt: str) -> str:
        """Send a completion request to the Ollama server."""
        options: dict[str, object] = {"temperature": self.settings.temperature}
        if self.settings.max_output_tokens is not None:
            options["num_predict"] = self.settings.max_output_tokens
        payload: dict[str, object] = {
            "model": self.settings.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": options,
        }
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential_jitter(initial=1, max=8),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        )
        try:
            response = retrying(self._post, payload)
        except RetryError as exc:
            raise LLMError("LLM request failed after retries") from exc.last_attempt.exception()
        except httpx.HTTPError as exc:
            raise LLMError(f"LLM request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMError("LLM returned invalid JSON") from exc
        result = data.get("response") if isinstance(data, dict) else None
        if not isinstance(result, str):
            raise LLMError("LLM response missing 'response' field")
        return result

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self.settings.model}"

    def _post(self, payload: dict[str, object]) -> httpx.Response:
        response = httpx.post(
            _resolve_endpoint(self.settings.base_url),
            json=payload,
            timeout=self.settings.timeout_seconds,
        )
        response.raise_for_status()
        return response


@dataclass(slots=True)
class AnthropicClient:
    """Claude-backed completion client.

    The SDK performs its own retries with backoff for connection errors,
    throttling and 5xx responses.
    """

    settings: LlmSettings
    client: Any = field(default=None, repr=False)

    def generate(self, prompt: str) -> str:
        try:
            response = self._client().messages.create(
                model=self.settings.model,
                max_tokens=self.settings.max_output_tokens or 512,
                temperature=self.settings.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.AnthropicError as exc:
            raise LLMError(f"Anthropic request failed: {exc}") from exc
        text = "".join(
            getattr(block, "text", "") for block in response.content
        ).strip()
        if not text:
            raise LLMError("Anthropic response contained no text")
        return text

    @property
    def provider_id(self) -> str:
        return f"anthropic:{self.settings.model}"

    def _client(self) -> Any:
        if self.client is None:
            api_key = (
                self.settings.api_key.get_secret_value()
                if self.settings.api_key is not None
                else None
            )
            self.client = anthropic.Anthropic(
                api_key=api_key,
                timeout=float(self.settings.timeout_seconds),
                max_retries=max(self.settings.max_attempts - 1, 0),
            )
        return self.client


def build_llm_client(settings: LlmSettings) -> LLMClient:
    """Return the client selected by ``settings.provider``."""
    if settings.provider == "anthropic":
        return AnthropicClient(settings)
    return OllamaClient(settings)


def _resolve_endpoint(base_url: str) -> str:
    trimmed = base_url.rstrip("/") + "/"
    return urljoin(trimmed, "api/generate")


__all__ = [
    "AnthropicClient",
    "LLMClient",
    "LLMError",
    "OllamaClient",
    "build_llm_client",
]
