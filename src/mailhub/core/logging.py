"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from collections.abc import Iterable
from typing import Any

from .config import LoggingSettings

REDACTED = "***"

# Third-party loggers that are chatty at INFO/DEBUG.
_NOISY_LOGGERS = ("httpx", "httpcore", "googleapiclient", "anthropic")


class RedactSecretsFilter(logging.Filter):
    """Replace configured secret values in rendered log messages."""

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets = tuple(sorted({s for s in secrets if s}, key=len, reverse=True))

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for structured JSON logs."""
    return {
        "format": '{{"time": "{asctime}", "level": "{levelname}", '
        '"logger": "{name}", "message": "{message}"}}',
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s [%(threadName)s] %(name)s %(message)s",
    }


def configure_logging(
    settings: LoggingSettings, *, secrets: Iterable[str] = ()
) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()

    dict_config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "redact": {"()": RedactSecretsFilter, "secrets": list(secrets)},
        },
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "filters": ["redact"],
                "level": settings.level,
            },
        },
        "loggers": {
            name: {"level": "WARNING"} for name in _NOISY_LOGGERS
        },
        "root": {
            "handlers": ["console"],
            "level": settings.level,
        },
    }

    logging.config.dictConfig(dict_config)


__all__ = ["REDACTED", "RedactSecretsFilter", "configure_logging"]
