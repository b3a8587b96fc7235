"""Tests for the SQLite-backed store."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mailhub.core.config import StorageSettings
from mailhub.core.models import (
    Account,
    AccountStatus,
    AttachmentMeta,
    ClassificationOutcome,
    EmailAddress,
    FolderType,
    LearnedRule,
    MatchType,
    NormalizedFolder,
    NormalizedMessage,
    PrivacyLevel,
    ProviderType,
    SuggestedAction,
)
from mailhub.intelligence import DEFAULT_CATEGORIES
from mailhub.storage import SqliteStore

BASE = datetime(2025, 10, 6, 9, 0, tzinfo=UTC)
INBOX = NormalizedFolder(
    provider_folder_id="INBOX",
    name="INBOX",
    path="INBOX",
    folder_type=FolderType.INBOX,
    is_system=True,
)


def _message(
    provider_id: str,
    *,
    subject: str = "Project kickoff",
    minutes: int = 0,
    header: str | None = None,
    in_reply_to: str | None = None,
    sender: str = "alice@example.com",
    is_read: bool = False,
    is_starred: bool = False,
) -> NormalizedMessage:
    return NormalizedMessage(
        provider_message_id=provider_id,
        subject=subject,
        sender=EmailAddress(sender, "Alice"),
        to=(EmailAddress("me@example.com"),),
        message_id_header=header or f"<{provider_id}@example.com>",
        in_reply_to=in_reply_to,
        date_received=BASE + timedelta(minutes=minutes),
        body_text="Hello",
        body_preview="Hello",
        attachments=(AttachmentMeta("a.pdf", "application/pdf", 10),),
        is_read=is_read,
        is_starred=is_starred,
    )


def _account(store: SqliteStore) -> Account:
    user = store.create_user("me@example.com", {"body_preview_chars": 200})
    return store.create_account(
        user.id,
        ProviderType.IMAP,
        "me@example.com",
        imap_host="imap.example.com",
        imap_password_enc="ciphertext",
        privacy_level=PrivacyLevel.HEADERS_ONLY,
    )


def test_store_creates_users_and_accounts(store: SqliteStore) -> None:
    account = _account(store)

    loaded = store.get_account(account.id)
    assert loaded is not None
    assert loaded.provider is ProviderType.IMAP
    assert loaded.privacy_level is PrivacyLevel.HEADERS_ONLY
    assert loaded.status is AccountStatus.ACTIVE
    assert loaded.imap_password_enc == "ciphertext"
    assert store.find_user_by_email("me@example.com") == store.get_user(account.user_id)
    assert store.get_user(account.user_id).settings == {"body_preview_chars": 200}

    with pytest.raises(ValueError):
        store.create_account(account.user_id, ProviderType.GMAIL, "x@y.z", bogus=1)


def test_ingest_is_idempotent(store: SqliteStore) -> None:
    account = _account(store)
    folder = store.upsert_folder(account.id, INBOX)

    first = store.ingest_message(account, _message("1"), folder.id)
    again = store.ingest_message(account, _message("1"), folder.id)

    assert first is not None
    assert again is None
    assert store.count_messages(account.id) == 1
    refreshed = store.get_folder(folder.id)
    assert refreshed is not None
    assert refreshed.message_count == 1
    assert refreshed.unread_count == 1


def test_upsert_folder_normalizes_type_and_is_stable(store: SqliteStore) -> None:
    account = _account(store)
    first = store.upsert_folder(account.id, INBOX)
    renamed = store.upsert_folder(
        account.id,
        NormalizedFolder("INBOX", "Inbox", "INBOX", FolderType.INBOX, True),
    )

    assert renamed.id == first.id
    assert renamed.name == "Inbox"
    assert store.find_folder(account.id, FolderType.INBOX) == renamed
    assert store.find_folder(account.id, FolderType.SPAM) is None


@pytest.mark.parametrize("spelling", ["inbox", "INBOX", "Inbox"])
def test_inbox_spellings_resolve_to_one_folder_type(
    store: SqliteStore, spelling: str
) -> None:
    account = _account(store)

    folder = store.upsert_folder(
        account.id,
        NormalizedFolder(spelling, spelling, spelling, FolderType.normalize(spelling)),
    )

    assert folder.folder_type is FolderType.INBOX
    assert store.find_folder(account.id, FolderType.INBOX) == folder


@pytest.mark.parametrize(
    ("provider", "expected"),
    [
        (ProviderType.PROTON, PrivacyLevel.BODY_LOCAL_ONLY),
        (ProviderType.HOVER, PrivacyLevel.FULL_ACCESS),
        (ProviderType.GMAIL, PrivacyLevel.FULL_ACCESS),
    ],
)
def test_privacy_defaults_by_provider(
    store: SqliteStore, provider: ProviderType, expected: PrivacyLevel
) -> None:
    user = store.create_user("me@example.com")

    account = store.create_account(user.id, provider, "me@example.com")

    assert account.privacy_level is expected
    assert store.create_account(
        user.id, provider, "other@example.com", privacy_level=PrivacyLevel.HEADERS_ONLY
    ).privacy_level is PrivacyLevel.HEADERS_ONLY


@pytest.mark.parametrize("order", [(0, 1, 2), (2, 0, 1), (1, 2, 0)])
def test_thread_aggregates_do_not_depend_on_arrival_order(
    store: SqliteStore, order: tuple[int, int, int]
) -> None:
    account = _account(store)
    folder = store.upsert_folder(account.id, INBOX)
    messages = [
        _message("a", minutes=0),
        _message("b", subject="Re: Project kickoff", minutes=30, sender="bob@example.com"),
        _message("c", subject="RE: project kickoff", minutes=60, is_read=True),
    ]

    ids = [store.ingest_message(account, messages[index], folder.id) for index in order]

    stored = [store.get_message(message_id) for message_id in ids if message_id]
    thread_ids = {message.thread_id for message in stored if message}
    assert len(thread_ids) == 1
    thread = store.get_thread(thread_ids.pop())
    assert thread is not None
    assert thread.message_count == 3
    assert thread.unread_count == 2
    assert thread.has_attachments
    assert thread.first_message_date == BASE
    assert thread.last_message_date == BASE + timedelta(minutes=60)
    assert set(thread.participants) == {"alice@example.com", "bob@example.com"}


def test_reply_joins_thread_by_reference_despite_new_subject(store: SqliteStore) -> None:
    account = _account(store)
    folder = store.upsert_folder(account.id, INBOX)
    root_id = store.ingest_message(account, _message("root", header="<root@x>"), folder.id)
    reply_id = store.ingest_message(
        account,
        _message("reply", subject="Totally different", in_reply_to="<root@x>", minutes=5),
        folder.id,
    )
    other_id = store.ingest_message(
        account, _message("other", subject="Unrelated", minutes=6), folder.id
    )

    root = store.get_message(root_id or 0)
    reply = store.get_message(reply_id or 0)
    other = store.get_message(other_id or 0)
    assert root and reply and other
    assert reply.thread_id == root.thread_id
    assert reply.is_reply
    assert other.thread_id != root.thread_id


def test_sync_lease_is_exclusive_until_released_or_expired(store: SqliteStore) -> None:
    account = _account(store)

    assert store.acquire_sync_lease(account.id, "worker-a", now=BASE, ttl_seconds=60)
    assert not store.acquire_sync_lease(account.id, "worker-b", now=BASE, ttl_seconds=60)
    assert store.has_active_lease(account.id, now=BASE)

    store.release_sync_lease(account.id, "worker-b")
    assert store.has_active_lease(account.id, now=BASE)

    later = BASE + timedelta(seconds=61)
    assert not store.has_active_lease(account.id, now=later)
    assert store.acquire_sync_lease(account.id, "worker-b", now=later, ttl_seconds=60)

    store.release_sync_lease(account.id, "worker-b")
    assert store.acquire_sync_lease(account.id, "worker-c", now=later, ttl_seconds=60)


def test_sync_lease_renewal_requires_a_live_lease(store: SqliteStore) -> None:
    account = _account(store)
    assert store.acquire_sync_lease(account.id, "worker-a", now=BASE, ttl_seconds=60)

    renewed_at = BASE + timedelta(seconds=50)
    assert store.renew_sync_lease(account.id, "worker-a", now=renewed_at, ttl_seconds=60)
    assert store.has_active_lease(account.id, now=BASE + timedelta(seconds=100))
    assert not store.renew_sync_lease(
        account.id, "worker-b", now=renewed_at, ttl_seconds=60
    )

    expired = renewed_at + timedelta(seconds=61)
    assert not store.renew_sync_lease(account.id, "worker-a", now=expired, ttl_seconds=60)
    assert store.acquire_sync_lease(account.id, "worker-b", now=expired, ttl_seconds=60)
    assert not store.renew_sync_lease(account.id, "worker-a", now=expired, ttl_seconds=60)


def test_sync_failures_are_counted_and_reset(store: SqliteStore) -> None:
    account = _account(store)

    assert store.record_sync_failure(account.id, "imap:1:5", "boom") == 1
    assert store.record_sync_failure(account.id, "imap:1:6", "boom") == 2
    store.record_sync_success(account.id, "imap:1:9", BASE)

    loaded = store.get_account(account.id)
    assert loaded is not None
    assert loaded.consecutive_failures == 0
    assert loaded.sync_cursor == "imap:1:9"
    assert loaded.last_synced_at == BASE
    assert loaded.last_error is None


def test_account_status_round_trip(store: SqliteStore) -> None:
    account = _account(store)

    store.set_account_status(account.id, AccountStatus.NEEDS_REAUTH, "AuthError: no")
    assert store.get_account(account.id).status is AccountStatus.NEEDS_REAUTH

    store.reactivate_account(account.id)
    reactivated = store.get_account(account.id)
    assert reactivated.status is AccountStatus.ACTIVE
    assert reactivated.last_error is None


def _outcome(message_id: int, category_id: int) -> ClassificationOutcome:
    return ClassificationOutcome(
        message_id=message_id,
        category_id=category_id,
        category_name="Receipts",
        confidence=0.8,
        explanation="Looks like a receipt",
        needs_human_review=False,
        suggested_action=SuggestedAction.ARCHIVE,
        model="stub",
    )


def test_classification_is_not_applied_after_manual_override(store: SqliteStore) -> None:
    account = _account(store)
    folder = store.upsert_folder(account.id, INBOX)
    message_id = store.ingest_message(account, _message("1"), folder.id)
    assert message_id is not None
    store.ensure_categories(account.user_id, DEFAULT_CATEGORIES)
    categories = {item.name: item for item in store.list_categories(account.user_id)}

    assert store.apply_classification(_outcome(message_id, categories["Receipts"].id), BASE)
    assert store.get_message(message_id).ai_category == "Receipts"
    assert store.latest_classification(message_id)["model"] == "stub"

    store.set_manual_category(message_id, categories["Personal"], BASE)
    assert not store.apply_classification(
        _outcome(message_id, categories["Receipts"].id), BASE
    )

    message = store.get_message(message_id)
    assert message is not None
    assert message.manual_category_id == categories["Personal"].id
    assert message.ai_category == "Personal"
    assert message.ai_confidence == 1.0
    assert store.sender_history(
        account.user_id, "alice@example.com", exclude_message_id=0
    ).user_overrides == ("Personal",)
    assert store.list_unclassified_message_ids() == []


def test_default_categories_are_seeded_once(store: SqliteStore) -> None:
    account = _account(store)

    store.ensure_categories(account.user_id, DEFAULT_CATEGORIES)
    store.ensure_categories(account.user_id, DEFAULT_CATEGORIES)

    names = [item.name for item in store.list_categories(account.user_id)]
    assert len(names) == len(DEFAULT_CATEGORIES)
    assert names[0] == "Taxes"
    assert "Quarantine" in names


def test_rules_upsert_by_pattern(store: SqliteStore) -> None:
    account = _account(store)
    rule = LearnedRule(
        id=None,
        user_id=account.user_id,
        match_type=MatchType.SENDER_DOMAIN,
        match_value="example.com",
        confidence_boost=0.2,
    )

    first = store.upsert_rule(rule)
    rule.confidence_boost = 0.4
    second = store.upsert_rule(rule)
    store.record_rule_applied(second.id or 0, BASE)

    rules = store.list_rules(account.user_id, account.id)
    assert first.id == second.id
    assert len(rules) == 1
    assert rules[0].confidence_boost == 0.4
    assert rules[0].times_applied == 1


def test_prune_keeps_starred_and_recent_messages(store: SqliteStore) -> None:
    account = _account(store)
    folder = store.upsert_folder(account.id, INBOX)
    store.ingest_message(account, _message("old", minutes=0), folder.id)
    store.ingest_message(
        account, _message("starred", subject="Keep", minutes=0, is_starred=True), folder.id
    )
    store.ingest_message(account, _message("new", subject="New", minutes=120), folder.id)

    removed = store.prune_messages(account.id, older_than=BASE + timedelta(minutes=60))

    assert removed == 1
    assert store.count_messages(account.id) == 2
    assert store.get_folder(folder.id).message_count == 2


def test_database_file_is_created_with_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "mailhub.db"
    SqliteStore(StorageSettings(db_path=db_path)).close()

    with sqlite3.connect(db_path) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert {"accounts", "messages", "threads", "jobs", "job_schedules"} <= tables


def test_custom_categories_sort_by_priority(store: SqliteStore) -> None:
    account = _account(store)
    store.ensure_categories(account.user_id, DEFAULT_CATEGORIES)
    banking = next(
        item
        for item in store.list_categories(account.user_id)
        if item.name == "Banking - Critical"
    )

    custom = store.create_category(
        account.user_id, "Mortgage", 11, parent_id=banking.id, description="Home loan"
    )

    names = [item.name for item in store.list_categories(account.user_id)]
    assert names[:3] == ["Taxes", "Mortgage", "Legal"]
    assert custom.parent_id == banking.id
    assert not custom.is_system
