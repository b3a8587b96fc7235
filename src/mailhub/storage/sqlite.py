"""SQLite-backed implementation of the persistent store."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.models import (
    Account,
    AccountStatus,
    AttachmentMeta,
    Category,
    ClassificationOutcome,
    EmailAddress,
    Folder,
    FolderType,
    LearnedRule,
    MatchType,
    Message,
    NormalizedFolder,
    NormalizedMessage,
    PrivacyLevel,
    ProviderType,
    RuleAction,
    SenderHistory,
    Thread,
    User,
)
from ..ingestion.threads import NO_SUBJECT_KEY, reference_ids, subject_key

LOGGER = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"

_ACCOUNT_FIELDS = (
    "access_token_enc",
    "refresh_token_enc",
    "token_expires_at",
    "imap_password_enc",
    "imap_host",
    "imap_port",
    "imap_username",
    "sync_cursor",
    "sync_interval_minutes",
    "privacy_level",
    "is_enabled",
)


def open_database(settings: StorageSettings) -> sqlite3.Connection:
    """Open a connection to the configured database and apply migrations."""
    db_path = Path(settings.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(
        db_path,
        timeout=settings.busy_timeout_seconds,
        check_same_thread=False,
    )
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute("PRAGMA journal_mode = WAL")
    for migration in sorted(SCHEMA_DIR.glob("*.sql")):
        LOGGER.debug("Applying migration %s", migration.name)
        with connection:
            connection.executescript(migration.read_text(encoding="utf-8"))
    return connection


class SqliteStore:
    """Persist accounts, mail and classification state using SQLite.

    A single connection is shared by all worker threads and guarded by a
    re-entrant lock; every multi-statement write runs in one transaction.
    """

    def __init__(self, settings: StorageSettings) -> None:
        """Open the database and apply migrations."""
        self._settings = settings
        self._lock = threading.RLock()
        self._connection = open_database(settings)

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteStore:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Users -------------------------------------------------------------------
    def create_user(self, email: str, settings: dict[str, Any] | None = None) -> User:
        with self._lock, self._connection:
            row = self._connection.execute(
                """
                INSERT INTO users (email, settings, created_at)
                VALUES (?, ?, ?)
                RETURNING *
                """,
                (email, json.dumps(settings or {}), serialize_datetime(utcnow())),
            ).fetchone()
        return _row_to_user(row)

    def get_user(self, user_id: int) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE id = ?", (user_id,))
        return _row_to_user(row) if row else None

    def find_user_by_email(self, email: str) -> User | None:
        row = self._fetchone("SELECT * FROM users WHERE email = ?", (email,))
        return _row_to_user(row) if row else None

    # Accounts ----------------------------------------------------------------
    def create_account(
        self,
        user_id: int,
        provider: ProviderType,
        email_address: str,
        **fields: Any,
    ) -> Account:
        """Insert a connected account; ``fields`` holds optional columns."""
        unknown = set(fields) - set(_ACCOUNT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        if fields.get("privacy_level") is None:
            fields["privacy_level"] = PrivacyLevel.default_for(provider)
        columns = ["user_id", "provider", "email_address", "created_at"]
        values: list[Any] = [
            user_id,
            str(provider),
            email_address,
            serialize_datetime(utcnow()),
        ]
        for name, value in fields.items():
            columns.append(name)
            if isinstance(value, datetime):
                value = serialize_datetime(value)
            elif isinstance(value, PrivacyLevel):
                value = str(value)
            values.append(value)
        placeholders = ", ".join("?" for _ in columns)
        with self._lock, self._connection:
            row = self._connection.execute(
                f"INSERT INTO accounts ({', '.join(columns)}) "
                f"VALUES ({placeholders}) RETURNING *",
                values,
            ).fetchone()
        return _row_to_account(row)

    def get_account(self, account_id: int) -> Account | None:
        row = self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return _row_to_account(row) if row else None

    def list_accounts(self, *, enabled_only: bool = True) -> list[Account]:
        query = "SELECT * FROM accounts"
        if enabled_only:
            query += " WHERE is_enabled = 1"
        return [_row_to_account(row) for row in self._fetchall(query + " ORDER BY id")]

    def update_account_tokens(
        self,
        account_id: int,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        expires_at: datetime | None,
    ) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE accounts
                SET access_token_enc = ?,
                    refresh_token_enc = COALESCE(?, refresh_token_enc),
                    token_expires_at = ?
                WHERE id = ?
                """,
                (
                    access_token_enc,
                    refresh_token_enc,
                    serialize_datetime(expires_at),
                    account_id,
                ),
            )

    def set_account_status(
        self, account_id: int, status: AccountStatus, error: str | None = None
    ) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                "UPDATE accounts SET status = ?, last_error = ? WHERE id = ?",
                (str(status), error, account_id),
            )

    def reactivate_account(self, account_id: int) -> None:
        """Clear a fatal status after the user re-authenticates."""
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE accounts
                SET status = 'active', consecutive_failures = 0, last_error = NULL
                WHERE id = ?
                """,
                (account_id,),
            )

    def record_sync_success(
        self, account_id: int, cursor: str | None, synced_at: datetime
    ) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE accounts
                SET sync_cursor = ?, last_synced_at = ?,
                    consecutive_failures = 0, last_error = NULL
                WHERE id = ?
                """,
                (cursor, serialize_datetime(synced_at), account_id),
            )

    def record_sync_failure(
        self, account_id: int, cursor: str | None, error: str
    ) -> int:
        with self._lock, self._connection:
            row = self._connection.execute(
                """
                UPDATE accounts
                SET sync_cursor = ?, last_error = ?,
                    consecutive_failures = consecutive_failures + 1
                WHERE id = ?
                RETURNING consecutive_failures
                """,
                (cursor, error, account_id),
            ).fetchone()
        return int(row["consecutive_failures"]) if row else 0

    # Sync leases -------------------------------------------------------------
    def acquire_sync_lease(
        self, account_id: int, owner: str, *, now: datetime, ttl_seconds: int
    ) -> bool:
        """Atomically take the account's sync lease unless a live one exists."""
        expires = serialize_datetime(now + timedelta(seconds=ttl_seconds))
        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                UPDATE accounts
                SET sync_lease_owner = ?, sync_lease_expires_at = ?
                WHERE id = ?
                  AND (sync_lease_owner IS NULL OR sync_lease_expires_at <= ?)
                """,
                (owner, expires, account_id, serialize_datetime(now)),
            )
        return cursor.rowcount == 1

    def renew_sync_lease(
        self, account_id: int, owner: str, *, now: datetime, ttl_seconds: int
    ) -> bool:
        """Extend a lease still held by ``owner``; ``False`` once it was lost."""
        expires = serialize_datetime(now + timedelta(seconds=ttl_seconds))
        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                UPDATE accounts
                SET sync_lease_expires_at = ?
                WHERE id = ? AND sync_lease_owner = ? AND sync_lease_expires_at > ?
                """,
                (expires, account_id, owner, serialize_datetime(now)),
            )
        return cursor.rowcount == 1

    def release_sync_lease(self, account_id: int, owner: str) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE accounts
                SET sync_lease_owner = NULL, sync_lease_expires_at = NULL
                WHERE id = ? AND sync_lease_owner = ?
                """,
                (account_id, owner),
            )

    def has_active_lease(self, account_id: int, *, now: datetime) -> bool:
        row = self._fetchone(
            """
            SELECT 1 FROM accounts
            WHERE id = ? AND sync_lease_owner IS NOT NULL
              AND sync_lease_expires_at > ?
            """,
            (account_id, serialize_datetime(now)),
        )
        return row is not None

    def start_sync_run(self, account_id: int, started_at: datetime) -> int:
        with self._lock, self._connection:
            cursor = self._connection.execute(
                "INSERT INTO sync_runs (account_id, started_at) VALUES (?, ?)",
                (account_id, serialize_datetime(started_at)),
            )
        return int(cursor.lastrowid or 0)

    def finish_sync_run(
        self,
        run_id: int,
        *,
        status: str,
        new_messages: int,
        completed_at: datetime,
        error: str | None = None,
    ) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE sync_runs
                SET status = ?, new_messages = ?, completed_at = ?, error = ?
                WHERE id = ?
                """,
                (status, new_messages, serialize_datetime(completed_at), error, run_id),
            )

    # Folders -----------------------------------------------------------------
    def upsert_folder(self, account_id: int, folder: NormalizedFolder) -> Folder:
        """Find-or-create a folder, refreshing its name and canonical type."""
        with self._lock, self._connection:
            row = self._connection.execute(
                """
                INSERT INTO folders (
                    account_id, provider_folder_id, name, path, folder_type, is_system
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, provider_folder_id) DO UPDATE SET
                    name = excluded.name,
                    path = excluded.path,
                    folder_type = excluded.folder_type,
                    is_system = excluded.is_system
                RETURNING *
                """,
                (
                    account_id,
                    folder.provider_folder_id,
                    folder.name,
                    folder.path,
                    # Stored as the canonical lowercase enum value.
                    str(FolderType.normalize(folder.folder_type)),
                    int(folder.is_system),
                ),
            ).fetchone()
        return _row_to_folder(row)

    def find_folder(self, account_id: int, folder_type: FolderType) -> Folder | None:
        row = self._fetchone(
            """
            SELECT * FROM folders WHERE account_id = ? AND folder_type = ?
            ORDER BY is_system DESC, id LIMIT 1
            """,
            (account_id, str(FolderType.normalize(folder_type))),
        )
        return _row_to_folder(row) if row else None

    def get_folder(self, folder_id: int) -> Folder | None:
        row = self._fetchone("SELECT * FROM folders WHERE id = ?", (folder_id,))
        return _row_to_folder(row) if row else None

    # Messages and threads ----------------------------------------------------
    def ingest_message(
        self, account: Account, message: NormalizedMessage, folder_id: int
    ) -> int | None:
        """Insert ``message`` idempotently and refresh its thread and folder.

        Returns the new message id, or ``None`` when (account, provider id) is
        already stored.
        """
        with self._lock, self._connection:
            existing = self._connection.execute(
                """
                SELECT id FROM messages
                WHERE account_id = ? AND provider_message_id = ?
                """,
                (account.id, message.provider_message_id),
            ).fetchone()
            if existing is not None:
                LOGGER.debug(
                    "Message %s already stored for account %s",
                    message.provider_message_id,
                    account.id,
                )
                return None

            thread_id = self._resolve_thread(account.user_id, message)
            row = self._connection.execute(
                """
                INSERT INTO messages (
                    account_id, thread_id, folder_id, provider_message_id,
                    message_id_header, in_reply_to, references_header, subject,
                    from_address, from_name, to_addresses, cc_addresses,
                    bcc_addresses, date_sent, date_received, body_text, body_html,
                    body_preview, attachments, has_attachments, size_bytes,
                    is_read, is_starred, is_draft, is_reply, provider_labels,
                    created_at
                ) VALUES (
                    ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                    ?, ?, ?, ?, ?, ?, ?
                )
                ON CONFLICT(account_id, provider_message_id) DO NOTHING
                RETURNING id
                """,
                (
                    account.id,
                    thread_id,
                    folder_id,
                    message.provider_message_id,
                    message.message_id_header,
                    message.in_reply_to,
                    " ".join(message.references) or None,
                    message.subject,
                    message.sender.address if message.sender else None,
                    message.sender.name if message.sender else None,
                    _dump_addresses(message.to),
                    _dump_addresses(message.cc),
                    _dump_addresses(message.bcc),
                    serialize_datetime(message.date_sent),
                    serialize_datetime(message.date_received or utcnow()),
                    message.body_text,
                    message.body_html,
                    message.body_preview,
                    _dump_attachments(message.attachments),
                    int(bool(message.attachments)),
                    message.size_bytes,
                    int(message.is_read),
                    int(message.is_starred),
                    int(message.is_draft),
                    int(message.is_reply),
                    json.dumps(list(message.labels)),
                    serialize_datetime(utcnow()),
                ),
            ).fetchone()
            if row is None:
                return None
            self._refresh_thread(thread_id, message)
            self._connection.execute(
                """
                UPDATE folders
                SET message_count = message_count + 1,
                    unread_count = unread_count + ?
                WHERE id = ?
                """,
                (0 if message.is_read else 1, folder_id),
            )
            return int(row["id"])

    def get_message(self, message_id: int) -> Message | None:
        row = self._fetchone("SELECT * FROM messages WHERE id = ?", (message_id,))
        return _row_to_message(row) if row else None

    def count_messages(self, account_id: int) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS total FROM messages WHERE account_id = ?",
            (account_id,),
        )
        return int(row["total"]) if row else 0

    def list_unclassified_message_ids(
        self, *, account_id: int | None = None, limit: int = 500
    ) -> list[int]:
        query = """
            SELECT id FROM messages
            WHERE classified_at IS NULL AND manual_category_id IS NULL
              AND is_hidden = 0 AND never_show = 0
        """
        params: list[Any] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        return [int(row["id"]) for row in self._fetchall(query, params)]

    def get_thread(self, thread_id: int) -> Thread | None:
        row = self._fetchone("SELECT * FROM threads WHERE id = ?", (thread_id,))
        return _row_to_thread(row) if row else None

    def move_message(self, message_id: int, folder_id: int) -> None:
        with self._lock, self._connection:
            row = self._connection.execute(
                "SELECT folder_id, is_read FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
            if row is None or int(row["folder_id"]) == folder_id:
                return
            unread = 0 if row["is_read"] else 1
            self._connection.execute(
                """
                UPDATE folders
                SET message_count = MAX(message_count - 1, 0),
                    unread_count = MAX(unread_count - ?, 0)
                WHERE id = ?
                """,
                (unread, row["folder_id"]),
            )
            self._connection.execute(
                """
                UPDATE folders
                SET message_count = message_count + 1,
                    unread_count = unread_count + ?
                WHERE id = ?
                """,
                (unread, folder_id),
            )
            self._connection.execute(
                "UPDATE messages SET folder_id = ? WHERE id = ?", (folder_id, message_id)
            )

    def prune_messages(self, account_id: int, *, older_than: datetime) -> int:
        """Delete unstarred, non-draft mail received before ``older_than``."""
        with self._lock, self._connection:
            thread_rows = self._connection.execute(
                """
                SELECT DISTINCT thread_id FROM messages
                WHERE account_id = ? AND date_received < ?
                  AND is_starred = 0 AND is_draft = 0
                """,
                (account_id, serialize_datetime(older_than)),
            ).fetchall()
            cursor = self._connection.execute(
                """
                DELETE FROM messages
                WHERE account_id = ? AND date_received < ?
                  AND is_starred = 0 AND is_draft = 0
                """,
                (account_id, serialize_datetime(older_than)),
            )
            for thread_row in thread_rows:
                self._refresh_thread(int(thread_row["thread_id"]), None)
            self._connection.execute(
                "DELETE FROM threads WHERE message_count = 0"
            )
            self._connection.execute(
                """
                UPDATE folders SET
                    message_count = (
                        SELECT COUNT(*) FROM messages m WHERE m.folder_id = folders.id
                    ),
                    unread_count = (
                        SELECT COUNT(*) FROM messages m
                        WHERE m.folder_id = folders.id AND m.is_read = 0
                    )
                WHERE account_id = ?
                """,
                (account_id,),
            )
        return cursor.rowcount

    # Categories and rules ----------------------------------------------------
    def ensure_categories(
        self, user_id: int, defaults: Sequence[tuple[str, int, str]]
    ) -> None:
        with self._lock, self._connection:
            self._connection.executemany(
                """
                INSERT INTO categories (user_id, name, priority, description, is_system)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(user_id, name) DO NOTHING
                """,
                [
                    (user_id, name, priority, description)
                    for name, priority, description in defaults
                ],
            )

    def list_categories(self, user_id: int) -> list[Category]:
        rows = self._fetchall(
            """
            SELECT * FROM categories
            WHERE user_id = ? OR user_id IS NULL
            ORDER BY priority, id
            """,
            (user_id,),
        )
        return [_row_to_category(row) for row in rows]

    def create_category(
        self,
        user_id: int,
        name: str,
        priority: int,
        *,
        parent_id: int | None = None,
        description: str | None = None,
    ) -> Category:
        with self._lock, self._connection:
            row = self._connection.execute(
                """
                INSERT INTO categories (user_id, parent_id, name, description, priority)
                VALUES (?, ?, ?, ?, ?)
                RETURNING *
                """,
                (user_id, parent_id, name, description, priority),
            ).fetchone()
        return _row_to_category(row)

    def list_rules(self, user_id: int, account_id: int | None) -> list[LearnedRule]:
        rows = self._fetchall(
            """
            SELECT * FROM learned_rules
            WHERE user_id = ? AND (account_id IS NULL OR account_id = ?)
            ORDER BY priority, id
            """,
            (user_id, account_id),
        )
        return [_row_to_rule(row) for row in rows]

    def upsert_rule(self, rule: LearnedRule) -> LearnedRule:
        """Insert or replace the rule for (user, match type, match value)."""
        with self._lock, self._connection:
            row = self._connection.execute(
                """
                INSERT INTO learned_rules (
                    user_id, account_id, match_type, match_value,
                    target_category_id, target_folder_id, action, priority,
                    confidence_boost, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, match_type, match_value) DO UPDATE SET
                    account_id = excluded.account_id,
                    target_category_id = excluded.target_category_id,
                    target_folder_id = excluded.target_folder_id,
                    action = excluded.action,
                    priority = excluded.priority,
                    confidence_boost = excluded.confidence_boost
                RETURNING *
                """,
                (
                    rule.user_id,
                    rule.account_id,
                    str(rule.match_type),
                    rule.match_value,
                    rule.target_category_id,
                    rule.target_folder_id,
                    str(rule.action),
                    rule.priority,
                    rule.confidence_boost,
                    serialize_datetime(utcnow()),
                ),
            ).fetchone()
        return _row_to_rule(row)

    def record_rule_applied(self, rule_id: int, applied_at: datetime) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE learned_rules
                SET times_applied = times_applied + 1, last_applied_at = ?
                WHERE id = ?
                """,
                (serialize_datetime(applied_at), rule_id),
            )

    # Classification ----------------------------------------------------------
    def sender_history(
        self, user_id: int, sender: str, *, exclude_message_id: int
    ) -> SenderHistory:
        count_row = self._fetchone(
            """
            SELECT COUNT(*) AS total FROM messages m
            JOIN accounts a ON a.id = m.account_id
            WHERE a.user_id = ? AND m.from_address = ? AND m.id != ?
            """,
            (user_id, sender, exclude_message_id),
        )
        category_rows = self._fetchall(
            """
            SELECT m.ai_category AS name FROM messages m
            JOIN accounts a ON a.id = m.account_id
            WHERE a.user_id = ? AND m.from_address = ? AND m.id != ?
              AND m.ai_category IS NOT NULL
            GROUP BY m.ai_category
            ORDER BY MAX(m.classified_at) DESC
            LIMIT 5
            """,
            (user_id, sender, exclude_message_id),
        )
        override_rows = self._fetchall(
            """
            SELECT c.name AS name FROM user_overrides o
            JOIN messages m ON m.id = o.message_id
            JOIN categories c ON c.id = o.new_category_id
            WHERE o.user_id = ? AND m.from_address = ?
            ORDER BY o.created_at DESC
            LIMIT 5
            """,
            (user_id, sender),
        )
        return SenderHistory(
            previous_emails=int(count_row["total"]) if count_row else 0,
            previous_categories=tuple(row["name"] for row in category_rows),
            user_overrides=tuple(row["name"] for row in override_rows),
        )

    def apply_classification(
        self, outcome: ClassificationOutcome, classified_at: datetime
    ) -> bool:
        """Write the outcome and its audit row unless the user took over."""
        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                UPDATE messages
                SET ai_category = ?, ai_category_id = ?, ai_confidence = ?,
                    needs_human_review = ?, suggested_action = ?, classified_at = ?
                WHERE id = ? AND manual_category_id IS NULL
                  AND is_hidden = 0 AND never_show = 0
                """,
                (
                    outcome.category_name,
                    outcome.category_id,
                    outcome.confidence,
                    int(outcome.needs_human_review),
                    str(outcome.suggested_action),
                    serialize_datetime(classified_at),
                    outcome.message_id,
                ),
            )
            if cursor.rowcount == 0:
                return False
            self._connection.execute(
                """
                INSERT INTO classifications (
                    message_id, category_id, confidence, explanation, factors,
                    suggested_action, model, rule_id, degraded,
                    used_body_content, body_chars_sent, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.message_id,
                    outcome.category_id,
                    outcome.confidence,
                    outcome.explanation,
                    json.dumps(
                        [
                            {
                                "factor": factor.factor,
                                "signal": factor.signal,
                                "weight": factor.weight,
                            }
                            for factor in outcome.factors
                        ]
                    ),
                    str(outcome.suggested_action),
                    outcome.model,
                    outcome.rule_id,
                    int(outcome.degraded),
                    int(outcome.used_body_content),
                    outcome.body_chars_sent,
                    serialize_datetime(classified_at),
                ),
            )
        return True

    def latest_classification(self, message_id: int) -> dict[str, Any] | None:
        """Return the newest audit row for a message as a plain dict."""
        row = self._fetchone(
            """
            SELECT * FROM classifications WHERE message_id = ?
            ORDER BY id DESC LIMIT 1
            """,
            (message_id,),
        )
        if row is None:
            return None
        record = dict(row)
        record["factors"] = json.loads(record["factors"])
        record["degraded"] = bool(record["degraded"])
        return record

    def set_manual_category(
        self, message_id: int, category: Category, overridden_at: datetime
    ) -> None:
        """Record a user override; it permanently outranks AI classification."""
        with self._lock, self._connection:
            row = self._connection.execute(
                """
                SELECT m.ai_category_id, m.ai_confidence, a.user_id
                FROM messages m JOIN accounts a ON a.id = m.account_id
                WHERE m.id = ?
                """,
                (message_id,),
            ).fetchone()
            if row is None:
                raise KeyError(f"Message {message_id} does not exist")
            self._connection.execute(
                """
                INSERT INTO user_overrides (
                    user_id, message_id, original_category_id,
                    original_confidence, new_category_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    row["user_id"],
                    message_id,
                    row["ai_category_id"],
                    row["ai_confidence"],
                    category.id,
                    serialize_datetime(overridden_at),
                ),
            )
            self._connection.execute(
                """
                UPDATE messages
                SET manual_category_id = ?, ai_category = ?, ai_category_id = ?,
                    ai_confidence = 1.0, needs_human_review = 0
                WHERE id = ?
                """,
                (category.id, category.name, category.id, message_id),
            )

    def set_visibility(
        self, message_id: int, *, hidden: bool | None = None, never_show: bool | None = None
    ) -> None:
        with self._lock, self._connection:
            if hidden is not None:
                self._connection.execute(
                    "UPDATE messages SET is_hidden = ? WHERE id = ?",
                    (int(hidden), message_id),
                )
            if never_show is not None:
                self._connection.execute(
                    "UPDATE messages SET never_show = ? WHERE id = ?",
                    (int(never_show), message_id),
                )

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._connection.execute(query, params).fetchone()

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(query, params).fetchall()

    def _resolve_thread(self, user_id: int, message: NormalizedMessage) -> int:
        """Find the thread by reference linkage, then by subject key."""
        refs = reference_ids(message)
        if refs:
            placeholders = ", ".join("?" for _ in refs)
            row = self._connection.execute(
                f"""
                SELECT m.thread_id FROM messages m
                JOIN accounts a ON a.id = m.account_id
                WHERE a.user_id = ? AND m.message_id_header IN ({placeholders})
                ORDER BY m.id DESC LIMIT 1
                """,
                (user_id, *refs),
            ).fetchone()
            if row is not None:
                return int(row["thread_id"])

        key = subject_key(message.subject)
        if key != NO_SUBJECT_KEY:
            row = self._connection.execute(
                """
                SELECT id FROM threads WHERE user_id = ? AND subject_key = ?
                ORDER BY last_message_date DESC LIMIT 1
                """,
                (user_id, key),
            ).fetchone()
            if row is not None:
                return int(row["id"])

        cursor = self._connection.execute(
            "INSERT INTO threads (user_id, subject_key, subject) VALUES (?, ?, ?)",
            (user_id, key, message.subject),
        )
        return int(cursor.lastrowid or 0)

    def _refresh_thread(self, thread_id: int, message: NormalizedMessage | None) -> None:
        """Recompute aggregate thread columns from its messages."""
        self._connection.execute(
            """
            UPDATE threads SET
                first_message_date = (
                    SELECT MIN(date_received) FROM messages WHERE thread_id = :tid
                ),
                last_message_date = (
                    SELECT MAX(date_received) FROM messages WHERE thread_id = :tid
                ),
                message_count = (
                    SELECT COUNT(*) FROM messages WHERE thread_id = :tid
                ),
                unread_count = (
                    SELECT COUNT(*) FROM messages WHERE thread_id = :tid AND is_read = 0
                ),
                has_attachments = COALESCE((
                    SELECT MAX(has_attachments) FROM messages WHERE thread_id = :tid
                ), 0)
            WHERE id = :tid
            """,
            {"tid": thread_id},
        )
        if message is None or message.sender is None:
            return
        row = self._connection.execute(
            "SELECT participants FROM threads WHERE id = ?", (thread_id,)
        ).fetchone()
        participants: list[str] = json.loads(row["participants"]) if row else []
        if message.sender.address not in participants:
            participants.append(message.sender.address)
            self._connection.execute(
                "UPDATE threads SET participants = ? WHERE id = ?",
                (json.dumps(participants), thread_id),
            )


def _dump_addresses(addresses: Sequence[EmailAddress]) -> str:
    return json.dumps([{"address": item.address, "name": item.name} for item in addresses])


def _load_addresses(raw: str | None) -> tuple[EmailAddress, ...]:
    if not raw:
        return ()
    return tuple(
        EmailAddress(address=item["address"], name=item.get("name"))
        for item in json.loads(raw)
    )


def _dump_attachments(attachments: Sequence[AttachmentMeta]) -> str:
    return json.dumps(
        [
            {
                "filename": item.filename,
                "content_type": item.content_type,
                "size": item.size,
            }
            for item in attachments
        ]
    )


def _load_attachments(raw: str | None) -> tuple[AttachmentMeta, ...]:
    if not raw:
        return ()
    return tuple(
        AttachmentMeta(
            filename=item.get("filename"),
            content_type=item.get("content_type"),
            size=item.get("size"),
        )
        for item in json.loads(raw)
    )


def _row_to_user(row: sqlite3.Row) -> User:
    return User(id=row["id"], email=row["email"], settings=json.loads(row["settings"]))


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        provider=ProviderType(row["provider"]),
        email_address=row["email_address"],
        access_token_enc=row["access_token_enc"],
        refresh_token_enc=row["refresh_token_enc"],
        token_expires_at=parse_datetime(row["token_expires_at"]),
        imap_password_enc=row["imap_password_enc"],
        imap_host=row["imap_host"],
        imap_port=row["imap_port"],
        imap_username=row["imap_username"],
        sync_cursor=row["sync_cursor"],
        sync_interval_minutes=row["sync_interval_minutes"],
        privacy_level=PrivacyLevel(row["privacy_level"]),
        is_enabled=bool(row["is_enabled"]),
        status=AccountStatus(row["status"]),
        last_synced_at=parse_datetime(row["last_synced_at"]),
        consecutive_failures=row["consecutive_failures"],
        last_error=row["last_error"],
    )


def _row_to_folder(row: sqlite3.Row) -> Folder:
    return Folder(
        id=row["id"],
        account_id=row["account_id"],
        provider_folder_id=row["provider_folder_id"],
        name=row["name"],
        path=row["path"],
        folder_type=FolderType.normalize(row["folder_type"]),
        is_system=bool(row["is_system"]),
        message_count=row["message_count"],
        unread_count=row["unread_count"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    sender = (
        EmailAddress(address=row["from_address"], name=row["from_name"])
        if row["from_address"]
        else None
    )
    return Message(
        id=row["id"],
        account_id=row["account_id"],
        thread_id=row["thread_id"],
        folder_id=row["folder_id"],
        provider_message_id=row["provider_message_id"],
        subject=row["subject"],
        sender=sender,
        to=_load_addresses(row["to_addresses"]),
        cc=_load_addresses(row["cc_addresses"]),
        message_id_header=row["message_id_header"],
        in_reply_to=row["in_reply_to"],
        date_received=parse_datetime(row["date_received"]),
        body_text=row["body_text"],
        body_html=row["body_html"],
        body_preview=row["body_preview"],
        attachments=_load_attachments(row["attachments"]),
        labels=tuple(json.loads(row["provider_labels"] or "[]")),
        is_read=bool(row["is_read"]),
        is_reply=bool(row["is_reply"]),
        ai_category=row["ai_category"],
        ai_category_id=row["ai_category_id"],
        ai_confidence=row["ai_confidence"],
        needs_human_review=bool(row["needs_human_review"]),
        classified_at=parse_datetime(row["classified_at"]),
        manual_category_id=row["manual_category_id"],
        is_hidden=bool(row["is_hidden"]),
        never_show=bool(row["never_show"]),
    )


def _row_to_thread(row: sqlite3.Row) -> Thread:
    return Thread(
        id=row["id"],
        user_id=row["user_id"],
        subject_key=row["subject_key"],
        subject=row["subject"],
        first_message_date=parse_datetime(row["first_message_date"]),
        last_message_date=parse_datetime(row["last_message_date"]),
        message_count=row["message_count"],
        unread_count=row["unread_count"],
        has_attachments=bool(row["has_attachments"]),
        participants=tuple(json.loads(row["participants"] or "[]")),
    )


def _row_to_category(row: sqlite3.Row) -> Category:
    return Category(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        priority=row["priority"],
        parent_id=row["parent_id"],
        description=row["description"],
        is_system=bool(row["is_system"]),
    )


def _row_to_rule(row: sqlite3.Row) -> LearnedRule:
    return LearnedRule(
        id=row["id"],
        user_id=row["user_id"],
        match_type=MatchType(row["match_type"]),
        match_value=row["match_value"],
        action=RuleAction(row["action"]),
        priority=row["priority"],
        confidence_boost=row["confidence_boost"],
        account_id=row["account_id"],
        target_category_id=row["target_category_id"],
        target_folder_id=row["target_folder_id"],
        times_applied=row["times_applied"],
        last_applied_at=parse_datetime(row["last_applied_at"]),
    )


__all__ = ["SqliteStore", "open_database"]
