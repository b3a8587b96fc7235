"""Gmail REST API adapter built on ``google-api-python-client``."""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Iterator
from datetime import datetime, timedelta
from typing import Any

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..core.datetime_utils import ensure_utc, from_epoch_millis, utcnow
from ..core.errors import AuthError, PayloadParseError, TransientNetworkError
from ..core.models import (
    FetchBatch,
    FolderType,
    MessageChunk,
    NormalizedFolder,
    NormalizedMessage,
    OAuthTokens,
    ProviderType,
)
from ..ingestion.parser import EmailParser
from .cursor import decode_cursor, encode_cursor

LOGGER = logging.getLogger(__name__)

CURSOR_TAG = "gmail"
INBOX_LABEL = "INBOX"
REFRESH_MARGIN = timedelta(minutes=5)

_SYSTEM_LABELS = {
    "INBOX": FolderType.INBOX,
    "SENT": FolderType.SENT,
    "DRAFT": FolderType.DRAFTS,
    "TRASH": FolderType.TRASH,
    "SPAM": FolderType.SPAM,
}


class GmailAdapter:
    """Incremental Gmail sync using ``users.history`` as the cursor source.

    The cursor is the mailbox ``historyId`` captured before listing, so any
    message that arrives while a batch is being ingested is picked up by the
    next run. History ids are not per message; chunks carry no watermark and
    a failed batch is retried from the previous cursor, relying on
    ingestion dedup.
    """

    provider = ProviderType.GMAIL

    def __init__(
        self,
        credentials: Credentials,
        *,
        service: Any | None = None,
        parser: EmailParser | None = None,
        page_size: int = 100,
        max_messages: int = 200,
    ) -> None:
        self._credentials = credentials
        self._max_messages = max_messages
        self._service = service
        self._parser = parser or EmailParser()
        self._page_size = page_size
        self._initial_token = credentials.token

    # ProviderAdapter API -----------------------------------------------------
    def list_folders(self) -> list[NormalizedFolder]:
        response = self._execute(self._api().users().labels().list(userId="me"))
        folders: list[NormalizedFolder] = []
        for label in response.get("labels", []):
            label_id = str(label.get("id", ""))
            label_type = label.get("type")
            if label_type == "system" and label_id not in _SYSTEM_LABELS:
                continue
            folder_type = _SYSTEM_LABELS.get(label_id, FolderType.OTHER)
            name = str(label.get("name") or label_id)
            folders.append(
                NormalizedFolder(
                    provider_folder_id=label_id,
                    name=name.rsplit("/", 1)[-1],
                    path=name,
                    folder_type=folder_type,
                    is_system=label_type == "system",
                )
            )
        return folders

    def fetch_since(self, cursor: str | None, *, since: datetime) -> FetchBatch:
        parts = decode_cursor(cursor, CURSOR_TAG, arity=1)
        message_ids: list[str] | None = None
        latest_history: str | None = None
        if parts is not None:
            history = self._history_since(parts[0])
            if history is not None:
                message_ids, latest_history = history
        if message_ids is None:
            profile = self._execute(self._api().users().getProfile(userId="me"))
            latest_history = str(profile["historyId"])
            message_ids = self._list_since(since)
        LOGGER.debug("Gmail returned %s candidate message(s)", len(message_ids))
        return FetchBatch(
            chunks=self._iter_chunks(message_ids),
            cursor_after=encode_cursor(CURSOR_TAG, latest_history or ""),
        )

    def normalize(self, chunk: MessageChunk) -> NormalizedMessage:
        payload = chunk.payload
        try:
            raw = base64.urlsafe_b64decode(payload["raw"])
            labels = tuple(str(label) for label in payload.get("labelIds", []))
            received_at = (
                from_epoch_millis(payload["internalDate"])
                if payload.get("internalDate")
                else None
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as exc:
            raise PayloadParseError(
                f"Malformed Gmail payload for message {chunk.provider_message_id}"
            ) from exc
        message = self._parser.parse(
            raw, provider_message_id=chunk.provider_message_id, received_at=received_at
        )
        message.labels = labels
        message.is_read = "UNREAD" not in labels
        message.is_starred = "STARRED" in labels
        message.is_draft = "DRAFT" in labels
        return message

    def fetch_body(self, provider_message_id: str) -> NormalizedMessage | None:
        payload = self._get_raw(provider_message_id)
        if payload is None:
            return None
        return self.normalize(
            MessageChunk(provider_message_id=provider_message_id, payload=payload)
        )

    def refreshed_credentials(self) -> OAuthTokens | None:
        token = self._credentials.token
        if not token or token == self._initial_token:
            return None
        return OAuthTokens(
            access_token=token,
            refresh_token=self._credentials.refresh_token,
            expires_at=ensure_utc(self._credentials.expiry),
        )

    def close(self) -> None:
        if self._service is not None:
            close = getattr(self._service, "close", None)
            if callable(close):
                close()
            self._service = None

    # Internal helpers --------------------------------------------------------
    def _api(self) -> Any:
        self._ensure_fresh_token()
        if self._service is None:
            self._service = build(
                "gmail", "v1", credentials=self._credentials, cache_discovery=False
            )
        return self._service

    def _ensure_fresh_token(self, *, force: bool = False) -> None:
        credentials = self._credentials
        expiry = ensure_utc(credentials.expiry)
        expiring = expiry is not None and expiry - utcnow() < REFRESH_MARGIN
        if not (force or expiring or not credentials.token):
            return
        if not credentials.refresh_token:
            raise AuthError("Gmail access token expired and no refresh token is stored")
        LOGGER.info("Refreshing Gmail access token")
        try:
            credentials.refresh(Request())
        except RefreshError as exc:
            raise AuthError("Gmail refresh token was rejected") from exc
        except TransportError as exc:
            raise TransientNetworkError("Unable to reach Google token endpoint") from exc

    def _execute(self, request: Any, *, allow_missing: bool = False) -> Any:
        """Run an API request, mapping failures onto the error taxonomy."""
        try:
            return request.execute(num_retries=2)
        except HttpError as exc:
            status = int(getattr(exc.resp, "status", 0) or 0)
            if status == 404 and allow_missing:
                return None
            if status in (401, 403):
                raise AuthError(f"Gmail rejected credentials (HTTP {status})") from exc
            raise TransientNetworkError(f"Gmail API error (HTTP {status})") from exc
        except RefreshError as exc:
            raise AuthError("Gmail refresh token was rejected") from exc
        except (httplib2.HttpLib2Error, TransportError, OSError) as exc:
            raise TransientNetworkError("Gmail API unreachable") from exc

    def _history_since(self, history_id: str) -> tuple[list[str], str] | None:
        """Return added INBOX message ids, or ``None`` when the id expired.

        At most ``max_messages`` ids are returned per run. When the history is
        longer, the returned cursor is the id of the last history record taken
        so the next run continues from there.
        """
        history = self._api().users().history()
        message_ids: list[str] = []
        seen: set[str] = set()
        latest = history_id
        page_token: str | None = None
        while True:
            response = self._execute(
                history.list(
                    userId="me",
                    startHistoryId=history_id,
                    historyTypes=["messageAdded"],
                    labelId=INBOX_LABEL,
                    pageToken=page_token,
                ),
                allow_missing=True,
            )
            if response is None:
                LOGGER.warning(
                    "Gmail history %s expired; falling back to lookback listing",
                    history_id,
                )
                return None
            for record in response.get("history", []):
                added = _dedupe(
                    str(item["message"]["id"]) for item in record.get("messagesAdded", [])
                )
                fresh = [message_id for message_id in added if message_id not in seen]
                if message_ids and len(message_ids) + len(fresh) > self._max_messages:
                    LOGGER.info(
                        "Gmail history holds more than %s new message(s); "
                        "continuing from history %s next run",
                        self._max_messages,
                        latest,
                    )
                    return message_ids, latest
                message_ids.extend(fresh)
                seen.update(fresh)
                latest = str(record.get("id", latest))
            latest = str(response.get("historyId", latest))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        return message_ids, latest

    def _list_since(self, since: datetime) -> list[str]:
        messages = self._api().users().messages()
        query = f"after:{since:%Y/%m/%d}"
        message_ids: list[str] = []
        page_token: str | None = None
        while True:
            response = self._execute(
                messages.list(
                    userId="me",
                    labelIds=[INBOX_LABEL],
                    q=query,
                    maxResults=self._page_size,
                    pageToken=page_token,
                )
            )
            message_ids = _dedupe(
                message_ids + [str(item["id"]) for item in response.get("messages", [])]
            )
            page_token = response.get("nextPageToken")
            if len(message_ids) >= self._max_messages:
                if page_token or len(message_ids) > self._max_messages:
                    LOGGER.info(
                        "Gmail lookback capped at the newest %s message(s)",
                        self._max_messages,
                    )
                break
            if not page_token:
                break
        # The list endpoint returns newest first.
        return list(reversed(message_ids[: self._max_messages]))

    def _get_raw(self, message_id: str) -> dict[str, Any] | None:
        return self._execute(
            self._api().users().messages().get(userId="me", id=message_id, format="raw"),
            allow_missing=True,
        )

    def _iter_chunks(self, message_ids: list[str]) -> Iterator[MessageChunk]:
        for message_id in message_ids:
            payload = self._get_raw(message_id)
            if payload is None:
                LOGGER.info("Gmail message %s disappeared before fetch", message_id)
                continue
            yield MessageChunk(
                provider_message_id=message_id,
                payload=payload,
                folder_id=INBOX_LABEL,
            )


def build_credentials(
    tokens: OAuthTokens,
    *,
    client_id: str | None,
    client_secret: str | None,
    token_uri: str,
) -> Credentials:
    """Create google-auth credentials from decrypted account tokens."""
    expiry = ensure_utc(tokens.expires_at)
    return Credentials(
        token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_uri=token_uri,
        client_id=client_id,
        client_secret=client_secret,
        # google-auth compares against naive UTC timestamps.
        expiry=expiry.replace(tzinfo=None) if expiry is not None else None,
    )


def _dedupe(ids: Any) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


__all__ = ["CURSOR_TAG", "GmailAdapter", "build_credentials"]
