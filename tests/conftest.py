"""Shared fixtures for the MailHub test-suite."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from email.message import EmailMessage
from pathlib import Path

import pytest

from mailhub.core.config import QueueSettings, StorageSettings, load_app_settings
from mailhub.jobs import SqliteJobQueue
from mailhub.security import CredentialVault
from mailhub.storage import SqliteStore

TEST_KEY = bytes(range(32))


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure each test sees a fresh settings instance."""

    load_app_settings.cache_clear()


@pytest.fixture
def storage_settings(tmp_path: Path) -> StorageSettings:
    return StorageSettings(db_path=tmp_path / "mailhub.db", busy_timeout_seconds=5)


@pytest.fixture
def store(storage_settings: StorageSettings) -> Iterator[SqliteStore]:
    with SqliteStore(storage_settings) as instance:
        yield instance


@pytest.fixture
def queue(storage_settings: StorageSettings) -> Iterator[SqliteJobQueue]:
    settings = QueueSettings(backoff_base_seconds=30, backoff_max_seconds=600)
    with SqliteJobQueue(storage_settings, settings) as instance:
        yield instance


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_KEY)


@pytest.fixture
def raw_email() -> Callable[..., bytes]:
    """Return a builder for RFC822 payloads."""

    def build(
        *,
        subject: str = "Hello",
        sender: str = "Alice <alice@example.com>",
        to: str = "bob@example.com",
        message_id: str | None = "<m1@example.com>",
        in_reply_to: str | None = None,
        references: str | None = None,
        date: str = "Mon, 06 Oct 2025 10:00:00 +0000",
        body: str = "Plain body",
        html: str | None = None,
    ) -> bytes:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = sender
        message["To"] = to
        message["Date"] = date
        if message_id:
            message["Message-ID"] = message_id
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
        if references:
            message["References"] = references
        message.set_content(body)
        if html is not None:
            message.add_alternative(html, subtype="html")
        return message.as_bytes()

    return build
