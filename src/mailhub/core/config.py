"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field, SecretStr


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./mailhub.db"), description="SQLite database path"
    )
    busy_timeout_seconds: float = Field(
        default=30.0, gt=0, description="How long writers wait on a locked database"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class VaultSettings(BaseModel):
    """Credential vault key material."""

    key: SecretStr | None = Field(
        default=None, description="AES-256 key as 64 hexadecimal characters"
    )


class SyncSettings(BaseModel):
    """Settings controlling fetch cadence and bounds."""

    lookback_days: int = Field(
        default=14, ge=1, description="Window fetched on an account's first sync"
    )
    max_messages_per_sync: int = Field(
        default=200, ge=1, description="Hard cap for messages fetched per run"
    )
    default_interval_minutes: int = Field(
        default=5, ge=1, description="Interval assigned to newly connected accounts"
    )
    lease_seconds: int = Field(
        default=900, ge=30, description="Expiry of the per-account sync lease"
    )
    failure_alert_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures before an error-level alert is logged",
    )
    connect_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Socket timeout for IMAP connections"
    )
    prune_outside_window: bool = Field(
        default=False,
        description="Delete unstarred messages older than the lookback window",
    )


class QueueSettings(BaseModel):
    """Worker pool and durable queue tuning."""

    sync_concurrency: int = Field(default=2, ge=1)
    classification_concurrency: int = Field(default=5, ge=1)
    sync_rate_limit: int = Field(
        default=10, ge=1, description="Sync jobs allowed per rate period"
    )
    sync_rate_period_seconds: float = Field(default=60.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base_seconds: float = Field(default=30.0, ge=0)
    backoff_max_seconds: float = Field(default=1800.0, ge=0)
    tick_cron: str = Field(
        default="* * * * *", description="Cron expression for the due-account tick"
    )
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=60.0, gt=0)
    stale_after_seconds: float = Field(
        default=1800.0,
        ge=0,
        description="Age after which a running job is presumed abandoned",
    )
    keep_completed: int = Field(
        default=100, ge=0, description="Completed jobs retained per lane"
    )
    keep_dead: int = Field(
        default=50, ge=0, description="Dead-lettered jobs retained per lane"
    )


class ClassificationSettings(BaseModel):
    """Knobs for merging rule and AI signals."""

    review_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Confidence below which a message is quarantined for review",
    )
    tie_epsilon: float = Field(
        default=0.05, ge=0.0, description="Score band resolved by category priority"
    )
    body_preview_chars: int = Field(
        default=500, ge=0, description="Default body characters sent to the AI"
    )
    quarantine_category: str = Field(default="Quarantine")
    rule_only_confidence: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Base confidence when filing by rule after an AI failure",
    )
    override_rule_boost: float = Field(default=0.3, ge=-1.0, le=1.0)
    override_rule_priority: int = Field(default=50)


class LlmSettings(BaseModel):
    """Settings for the AI classification provider."""

    provider: Literal["ollama", "anthropic"] = Field(
        default="ollama", description="Backend used for AI scoring"
    )
    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str = Field(default="llama3.1:8b", description="Model identifier")
    api_key: SecretStr | None = Field(
        default=None, description="API key for hosted providers"
    )
    timeout_seconds: int = Field(
        default=30, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )
    max_output_tokens: int | None = Field(
        default=512,
        ge=32,
        description="Maximum tokens to request from the provider",
    )
    max_attempts: int = Field(default=3, ge=1)


class GoogleSettings(BaseModel):
    """OAuth client used to refresh Gmail tokens."""

    client_id: str | None = None
    client_secret: SecretStr | None = None
    token_uri: str = Field(default="https://oauth2.googleapis.com/token")


class ZohoSettings(BaseModel):
    """OAuth client and endpoints for the Zoho Mail REST API."""

    client_id: str | None = None
    client_secret: SecretStr | None = None
    api_base: str = Field(default="https://mail.zoho.com/api")
    token_url: str = Field(default="https://accounts.zoho.com/oauth/v2/token")
    timeout_seconds: float = Field(default=30.0, gt=0)


class BridgeSettings(BaseModel):
    """Location of the local Proton Mail bridge."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=1143)


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    vault: VaultSettings = Field(default_factory=VaultSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    classification: ClassificationSettings = Field(
        default_factory=ClassificationSettings
    )
    llm: LlmSettings = Field(default_factory=LlmSettings)
    google: GoogleSettings = Field(default_factory=GoogleSettings)
    zoho: ZohoSettings = Field(default_factory=ZohoSettings)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)

    def secret_values(self) -> list[str]:
        """Return configured secrets that must never reach a log line."""
        secrets = [
            self.vault.key,
            self.llm.api_key,
            self.google.client_secret,
            self.zoho.client_secret,
        ]
        return [item.get_secret_value() for item in secrets if item is not None]


ENV_PREFIX = "MAILHUB_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = (
        {key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)}
        if include_environment
        else {}
    )

    for key, value in {**file_values, **env_values}.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str) and value.lower() in {"true", "false"}:
            normalized_value = value.lower() == "true"
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "BridgeSettings",
    "ClassificationSettings",
    "GoogleSettings",
    "LlmSettings",
    "LoggingSettings",
    "QueueSettings",
    "StorageSettings",
    "SyncSettings",
    "VaultSettings",
    "ZohoSettings",
    "load_app_settings",
]
