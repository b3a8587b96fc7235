"""Core domain models used across the application."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class ProviderType(StrEnum):
    """Mail providers with a registered adapter."""

    GMAIL = "gmail"
    ZOHO = "zoho"
    PROTON = "proton"
    HOVER = "hover"
    IMAP = "imap"


class PrivacyLevel(StrEnum):
    """How much message content may leave the machine for classification."""

    FULL_ACCESS = "full_access"
    HEADERS_ONLY = "headers_only"
    BODY_LOCAL_ONLY = "body_local_only"

    @property
    def allows_remote_body(self) -> bool:
        return self is PrivacyLevel.FULL_ACCESS

    @property
    def stores_body(self) -> bool:
        return self is not PrivacyLevel.HEADERS_ONLY

    @classmethod
    def default_for(cls, provider: ProviderType) -> PrivacyLevel:
        """Privacy level assigned to newly connected ``provider`` accounts."""
        if provider == ProviderType.PROTON:
            return cls.BODY_LOCAL_ONLY
        return cls.FULL_ACCESS


class FolderType(StrEnum):
    """Canonical lowercase folder roles."""

    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    ARCHIVE = "archive"
    SPAM = "spam"
    OTHER = "other"

    @classmethod
    def normalize(cls, value: str | None) -> FolderType:
        """Map a provider folder name or role onto the canonical enum."""
        if not value:
            return cls.OTHER
        key = value.strip().lstrip("\\").casefold()
        return _FOLDER_ALIASES.get(key, cls.OTHER)


_FOLDER_ALIASES: dict[str, FolderType] = {
    "inbox": FolderType.INBOX,
    "sent": FolderType.SENT,
    "sent mail": FolderType.SENT,
    "sent items": FolderType.SENT,
    "sent messages": FolderType.SENT,
    "drafts": FolderType.DRAFTS,
    "draft": FolderType.DRAFTS,
    "trash": FolderType.TRASH,
    "deleted items": FolderType.TRASH,
    "deleted messages": FolderType.TRASH,
    "bin": FolderType.TRASH,
    "archive": FolderType.ARCHIVE,
    "all mail": FolderType.ARCHIVE,
    "all": FolderType.ARCHIVE,
    "spam": FolderType.SPAM,
    "junk": FolderType.SPAM,
    "junk email": FolderType.SPAM,
    "bulk mail": FolderType.SPAM,
}


class AccountStatus(StrEnum):
    """Lifecycle flag surfaced to the UI for fatal account errors."""

    ACTIVE = "active"
    NEEDS_REAUTH = "needs_reauth"
    CREDENTIALS_INVALID = "credentials_invalid"


class MatchType(StrEnum):
    """Kinds of learned rule patterns."""

    SENDER_EMAIL = "sender_email"
    SENDER_DOMAIN = "sender_domain"
    SUBJECT_EXACT = "subject_exact"
    SUBJECT_CONTAINS = "subject_contains"

    @property
    def is_high_certainty(self) -> bool:
        """Exact matches override the AI category outright."""
        return self is not MatchType.SUBJECT_CONTAINS


class RuleAction(StrEnum):
    ROUTE = "route"
    ARCHIVE = "archive"
    TRASH = "trash"
    QUARANTINE = "quarantine"


class SuggestedAction(StrEnum):
    INBOX = "inbox"
    ARCHIVE = "archive"
    TRASH = "trash"
    QUARANTINE = "quarantine"


class SyncStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class JobLane(StrEnum):
    SYNC = "sync"
    CLASSIFICATION = "classification"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    DEAD = "dead"


@dataclass(slots=True)
class EmailAddress:
    """Mailbox address with an optional display name."""

    address: str
    name: str | None = None

    @property
    def domain(self) -> str:
        return self.address.rpartition("@")[2].lower()


@dataclass(slots=True)
class AttachmentMeta:
    """Metadata describing an email attachment."""

    filename: str | None
    content_type: str | None
    size: int | None


@dataclass(slots=True)
class OAuthTokens:
    """Decrypted OAuth token pair for webmail providers."""

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None


@dataclass(slots=True)
class User:
    id: int
    email: str
    settings: dict[str, Any] = field(default_factory=dict)


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Account:
    """Connected mailbox along with its encrypted credentials and sync state."""

    id: int
    user_id: int
    provider: ProviderType
    email_address: str
    access_token_enc: str | None = field(default=None, repr=False)
    refresh_token_enc: str | None = field(default=None, repr=False)
    token_expires_at: datetime | None = None
    imap_password_enc: str | None = field(default=None, repr=False)
    imap_host: str | None = None
    imap_port: int | None = None
    imap_username: str | None = None
    sync_cursor: str | None = None
    sync_interval_minutes: int = 5
    privacy_level: PrivacyLevel = PrivacyLevel.FULL_ACCESS
    is_enabled: bool = True
    status: AccountStatus = AccountStatus.ACTIVE
    last_synced_at: datetime | None = None
    consecutive_failures: int = 0
    last_error: str | None = None


@dataclass(slots=True)
class NormalizedFolder:
    """Folder as reported by a provider adapter."""

    provider_folder_id: str
    name: str
    path: str
    folder_type: FolderType
    is_system: bool = False


@dataclass(slots=True)
class Folder:
    id: int
    account_id: int
    provider_folder_id: str
    name: str
    path: str
    folder_type: FolderType
    is_system: bool
    message_count: int
    unread_count: int


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class NormalizedMessage:
    """Provider-neutral message produced by an adapter's ``normalize`` step."""

    provider_message_id: str
    subject: str | None
    sender: EmailAddress | None
    to: tuple[EmailAddress, ...] = ()
    cc: tuple[EmailAddress, ...] = ()
    bcc: tuple[EmailAddress, ...] = ()
    message_id_header: str | None = None
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    reply_to: str | None = None
    date_sent: datetime | None = None
    date_received: datetime | None = None
    body_text: str | None = None
    body_html: str | None = None
    body_preview: str | None = None
    attachments: tuple[AttachmentMeta, ...] = ()
    size_bytes: int | None = None
    is_read: bool = False
    is_starred: bool = False
    is_draft: bool = False
    labels: tuple[str, ...] = ()

    @property
    def is_reply(self) -> bool:
        return bool(self.in_reply_to or self.references)


@dataclass(slots=True)
class MessageChunk:
    """Raw provider payload awaiting normalization.

    ``watermark`` is the cursor value that is safe to persist once this chunk
    has been durably ingested. Adapters that cannot express a per-message
    position leave it as ``None``.
    """

    provider_message_id: str
    payload: Any
    folder_id: str | None = None
    watermark: str | None = None
    flags: tuple[str, ...] = ()


@dataclass(slots=True)
class FetchBatch:
    """Lazy sequence of chunks plus the cursor valid after all are ingested."""

    chunks: Iterable[MessageChunk]
    cursor_after: str | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class Message:
    """Stored canonical message row."""

    id: int
    account_id: int
    thread_id: int
    folder_id: int
    provider_message_id: str
    subject: str | None
    sender: EmailAddress | None
    to: tuple[EmailAddress, ...]
    cc: tuple[EmailAddress, ...]
    message_id_header: str | None
    in_reply_to: str | None
    date_received: datetime | None
    body_text: str | None
    body_html: str | None
    body_preview: str | None
    attachments: tuple[AttachmentMeta, ...]
    labels: tuple[str, ...]
    is_read: bool
    is_reply: bool
    ai_category: str | None = None
    ai_category_id: int | None = None
    ai_confidence: float | None = None
    needs_human_review: bool = False
    classified_at: datetime | None = None
    manual_category_id: int | None = None
    is_hidden: bool = False
    never_show: bool = False


@dataclass(slots=True)
class Thread:
    id: int
    user_id: int
    subject_key: str
    subject: str | None
    first_message_date: datetime | None
    last_message_date: datetime | None
    message_count: int
    unread_count: int
    has_attachments: bool
    participants: tuple[str, ...] = ()


@dataclass(slots=True)
class Category:
    """Classification target; lower ``priority`` wins ties."""

    id: int
    user_id: int | None
    name: str
    priority: int
    parent_id: int | None = None
    description: str | None = None
    is_system: bool = False


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class LearnedRule:
    """Deterministic pattern that overrides or biases AI classification."""

    id: int | None
    user_id: int
    match_type: MatchType
    match_value: str
    action: RuleAction = RuleAction.ROUTE
    priority: int = 100
    confidence_boost: float = 0.0
    account_id: int | None = None
    target_category_id: int | None = None
    target_folder_id: int | None = None
    times_applied: int = 0
    last_applied_at: datetime | None = None


@dataclass(slots=True)
class ClassificationFactor:
    factor: str
    signal: str
    weight: float


@dataclass(slots=True)
class CategoryScore:
    category: str
    confidence: float


@dataclass(slots=True)
class SenderHistory:
    previous_emails: int = 0
    previous_categories: tuple[str, ...] = ()
    user_overrides: tuple[str, ...] = ()


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ClassificationInput:
    """Everything the AI scorer is allowed to see about a message."""

    message_id: int
    account_id: int
    provider: ProviderType
    subject: str
    sender: EmailAddress | None
    to: tuple[EmailAddress, ...]
    cc: tuple[EmailAddress, ...]
    date: datetime | None
    body_preview: str | None
    body_preview_chars: int
    existing_labels: tuple[str, ...]
    is_reply: bool
    has_attachments: bool
    attachment_types: tuple[str, ...] = ()
    sender_history: SenderHistory | None = None


@dataclass(slots=True)
class ClassificationResult:
    """AI verdict: a primary category plus optional scored alternates."""

    category: str
    confidence: float
    explanation: str
    factors: tuple[ClassificationFactor, ...] = ()
    suggested_action: SuggestedAction = SuggestedAction.INBOX
    needs_human_review: bool = False
    alternates: tuple[CategoryScore, ...] = ()
    model: str | None = None

    def candidates(self) -> tuple[CategoryScore, ...]:
        return (CategoryScore(self.category, self.confidence), *self.alternates)


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ClassificationOutcome:
    """Final merged assignment written back to the message."""

    message_id: int
    category_id: int
    category_name: str
    confidence: float
    explanation: str
    needs_human_review: bool
    suggested_action: SuggestedAction
    factors: tuple[ClassificationFactor, ...] = ()
    rule_id: int | None = None
    model: str | None = None
    degraded: bool = False
    used_body_content: bool = False
    body_chars_sent: int = 0


@dataclass(slots=True)
class IngestReport:
    """Result of pushing one fetch batch through the ingestion pipeline."""

    ingested_ids: list[int] = field(default_factory=list)
    duplicates: int = 0
    parse_failures: int = 0
    last_watermark: str | None = None
    error: BaseException | None = None

    @property
    def completed(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class SyncOutcome:
    account_id: int
    status: SyncStatus
    new_message_ids: tuple[int, ...] = ()
    cursor: str | None = None
    error: str | None = None


@dataclass(slots=True)
class Job:
    id: int
    lane: JobLane
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    run_at: datetime
    dedupe_key: str | None = None
    last_error: str | None = None


__all__ = [
    "Account",
    "AccountStatus",
    "AttachmentMeta",
    "Category",
    "CategoryScore",
    "ClassificationFactor",
    "ClassificationInput",
    "ClassificationOutcome",
    "ClassificationResult",
    "EmailAddress",
    "FetchBatch",
    "Folder",
    "FolderType",
    "IngestReport",
    "Job",
    "JobLane",
    "JobStatus",
    "LearnedRule",
    "MatchType",
    "Message",
    "MessageChunk",
    "NormalizedFolder",
    "NormalizedMessage",
    "OAuthTokens",
    "PrivacyLevel",
    "ProviderType",
    "RuleAction",
    "SenderHistory",
    "SuggestedAction",
    "SyncOutcome",
    "SyncStatus",
    "Thread",
    "User",
]
