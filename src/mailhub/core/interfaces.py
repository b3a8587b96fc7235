"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

from .models import (
    Account,
    AccountStatus,
    Category,
    ClassificationInput,
    ClassificationOutcome,
    ClassificationResult,
    FetchBatch,
    Folder,
    FolderType,
    Job,
    JobLane,
    LearnedRule,
    Message,
    MessageChunk,
    NormalizedFolder,
    NormalizedMessage,
    OAuthTokens,
    ProviderType,
    SenderHistory,
    Thread,
    User,
)


class ProviderAdapter(Protocol):
    """Capability surface every mail provider variant implements."""

    provider: ProviderType

    def list_folders(self) -> list[NormalizedFolder]:
        """Return the folders visible to the account."""
        raise NotImplementedError

    def fetch_since(self, cursor: str | None, *, since: datetime) -> FetchBatch:
        """Return messages observed after ``cursor``.

        When ``cursor`` is ``None`` (first sync) only messages received after
        ``since`` are returned.
        """
        raise NotImplementedError

    def normalize(self, chunk: MessageChunk) -> NormalizedMessage:
        """Convert a raw chunk into a :class:`NormalizedMessage`."""
        raise NotImplementedError

    def fetch_body(self, provider_message_id: str) -> NormalizedMessage | None:
        """Fetch a single message including its body."""
        raise NotImplementedError

    def refreshed_credentials(self) -> OAuthTokens | None:
        """Return tokens refreshed during this session, if any."""
        raise NotImplementedError

    def close(self) -> None:
        """Release any network resources."""
        raise NotImplementedError


class Store(Protocol):
    """Persistent entity store consumed by the engine."""

    # Users and accounts ------------------------------------------------------
    def get_user(self, user_id: int) -> User | None:
        raise NotImplementedError

    def get_account(self, account_id: int) -> Account | None:
        raise NotImplementedError

    def list_accounts(self, *, enabled_only: bool = True) -> list[Account]:
        raise NotImplementedError

    def update_account_tokens(
        self,
        account_id: int,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Persist refreshed OAuth tokens, already encrypted by the caller."""
        raise NotImplementedError

    def set_account_status(
        self, account_id: int, status: AccountStatus, error: str | None = None
    ) -> None:
        raise NotImplementedError

    def reactivate_account(self, account_id: int) -> None:
        raise NotImplementedError

    def record_sync_success(
        self, account_id: int, cursor: str | None, synced_at: datetime
    ) -> None:
        raise NotImplementedError

    def record_sync_failure(
        self, account_id: int, cursor: str | None, error: str
    ) -> int:
        """Persist the partial cursor and return the consecutive failure count."""
        raise NotImplementedError

    # Sync leases -------------------------------------------------------------
    def acquire_sync_lease(
        self, account_id: int, owner: str, *, now: datetime, ttl_seconds: int
    ) -> bool:
        raise NotImplementedError

    def renew_sync_lease(
        self, account_id: int, owner: str, *, now: datetime, ttl_seconds: int
    ) -> bool:
        raise NotImplementedError

    def release_sync_lease(self, account_id: int, owner: str) -> None:
        raise NotImplementedError

    def has_active_lease(self, account_id: int, *, now: datetime) -> bool:
        raise NotImplementedError

    def start_sync_run(self, account_id: int, started_at: datetime) -> int:
        raise NotImplementedError

    def finish_sync_run(
        self,
        run_id: int,
        *,
        status: str,
        new_messages: int,
        completed_at: datetime,
        error: str | None = None,
    ) -> None:
        raise NotImplementedError

    # Folders, threads, messages ---------------------------------------------
    def upsert_folder(self, account_id: int, folder: NormalizedFolder) -> Folder:
        raise NotImplementedError

    def find_folder(self, account_id: int, folder_type: FolderType) -> Folder | None:
        raise NotImplementedError

    def ingest_message(
        self, account: Account, message: NormalizedMessage, folder_id: int
    ) -> int | None:
        """Insert ``message`` unless already stored; return the new row id."""
        raise NotImplementedError

    def get_message(self, message_id: int) -> Message | None:
        raise NotImplementedError

    def get_thread(self, thread_id: int) -> Thread | None:
        raise NotImplementedError

    def move_message(self, message_id: int, folder_id: int) -> None:
        raise NotImplementedError

    def prune_messages(self, account_id: int, *, older_than: datetime) -> int:
        raise NotImplementedError

    # Classification ----------------------------------------------------------
    def ensure_categories(
        self, user_id: int, defaults: Sequence[tuple[str, int, str]]
    ) -> None:
        raise NotImplementedError

    def list_categories(self, user_id: int) -> list[Category]:
        raise NotImplementedError

    def list_rules(self, user_id: int, account_id: int | None) -> list[LearnedRule]:
        raise NotImplementedError

    def upsert_rule(self, rule: LearnedRule) -> LearnedRule:
        raise NotImplementedError

    def record_rule_applied(self, rule_id: int, applied_at: datetime) -> None:
        raise NotImplementedError

    def sender_history(
        self, user_id: int, sender: str, *, exclude_message_id: int
    ) -> SenderHistory:
        raise NotImplementedError

    def apply_classification(
        self, outcome: ClassificationOutcome, classified_at: datetime
    ) -> bool:
        """Write the outcome unless a user override has taken precedence."""
        raise NotImplementedError

    def set_manual_category(
        self, message_id: int, category: Category, overridden_at: datetime
    ) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class AIClassifier(Protocol):
    """External AI scorer."""

    def classify(
        self, payload: ClassificationInput, categories: Sequence[Category]
    ) -> ClassificationResult:
        """Return a verdict or raise ``ClassificationProviderError``."""
        raise NotImplementedError


class JobQueue(Protocol):
    """Durable two-lane job queue with at-least-once delivery."""

    def enqueue(
        self,
        lane: JobLane,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0.0,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
    ) -> int | None:
        """Queue a job; returns ``None`` when an equivalent job is pending."""
        raise NotImplementedError

    def schedule(
        self, name: str, lane: JobLane, payload: dict[str, Any], cron: str
    ) -> None:
        raise NotImplementedError

    def claim(self, lane: JobLane, worker_id: str) -> Job | None:
        raise NotImplementedError

    def complete(self, job: Job) -> None:
        raise NotImplementedError

    def fail(self, job: Job, error: BaseException, *, retryable: bool) -> None:
        raise NotImplementedError


__all__ = [
    "AIClassifier",
    "JobQueue",
    "ProviderAdapter",
    "Store",
]
