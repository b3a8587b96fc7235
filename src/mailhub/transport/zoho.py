"""Zoho Mail REST API adapter."""

from __future__ import annotations

import html
import json
import logging
from collections.abc import Iterator
from datetime import datetime, timedelta
from email.utils import getaddresses
from typing import Any

import httpx

from ..core.config import ZohoSettings
from ..core.datetime_utils import (
    ensure_utc,
    from_epoch_millis,
    to_epoch_millis,
    utcnow,
)
from ..core.errors import AuthError, PayloadParseError, TransientNetworkError
from ..core.models import (
    EmailAddress,
    FetchBatch,
    FolderType,
    MessageChunk,
    NormalizedFolder,
    NormalizedMessage,
    OAuthTokens,
    ProviderType,
)
from ..ingestion.parser import build_preview
from .cursor import decode_cursor, encode_cursor

LOGGER = logging.getLogger(__name__)

CURSOR_TAG = "zoho"
REFRESH_MARGIN = timedelta(minutes=5)
PAGE_SIZE = 100


class ZohoApiError(TransientNetworkError):
    """Unexpected HTTP status from the Zoho Mail API."""


def decode_json(text: str) -> Any:
    """Decode Zoho JSON keeping every integer as its exact decimal string.

    Zoho emits 18-19 digit message and folder ids as bare JSON numbers; they
    must stay opaque strings rather than become numbers.
    """
    return json.loads(text, parse_int=str)


class ZohoAdapter:
    """Sync the Zoho inbox through the REST API.

    The cursor is the ``receivedTime`` (epoch milliseconds) of the newest
    ingested message. Messages are delivered oldest first and each chunk's
    watermark is its own receive time, so a partial batch resumes exactly
    after the last stored message.
    """

    provider = ProviderType.ZOHO

    def __init__(
        self,
        tokens: OAuthTokens,
        settings: ZohoSettings,
        *,
        http_client: httpx.Client | None = None,
        max_messages: int = 200,
        preview_chars: int = 500,
    ) -> None:
        self._tokens = tokens
        self._settings = settings
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=settings.timeout_seconds)
        self._max_messages = max_messages
        self._preview_chars = preview_chars
        self._account_id: str | None = None
        self._inbox_id: str | None = None
        self._refreshed = False

    # ProviderAdapter API -----------------------------------------------------
    def list_folders(self) -> list[NormalizedFolder]:
        data = self._get(f"/accounts/{self._resolve_account_id()}/folders")
        folders: list[NormalizedFolder] = []
        for entry in data or []:
            name = str(entry.get("folderName", ""))
            folder_type = FolderType.normalize(entry.get("folderType") or name)
            if folder_type is FolderType.OTHER:
                folder_type = FolderType.normalize(name)
            folders.append(
                NormalizedFolder(
                    provider_folder_id=str(entry["folderId"]),
                    name=name,
                    path=str(entry.get("path") or name),
                    folder_type=folder_type,
                    is_system=folder_type is not FolderType.OTHER,
                )
            )
        return folders

    def fetch_since(self, cursor: str | None, *, since: datetime) -> FetchBatch:
        parts = decode_cursor(cursor, CURSOR_TAG, arity=1)
        threshold = int(parts[0]) if parts and parts[0].isdigit() else None
        if threshold is None:
            threshold = to_epoch_millis(since)
        inbox_id = self._resolve_inbox_id()
        summaries = self._list_newer_than(inbox_id, threshold)
        summaries.sort(key=lambda item: (int(item["receivedTime"]), str(item["messageId"])))
        if len(summaries) > self._max_messages:
            LOGGER.info(
                "Limiting Zoho sync to %s of %s messages",
                self._max_messages,
                len(summaries),
            )
            summaries = summaries[: self._max_messages]
        newest = int(summaries[-1]["receivedTime"]) if summaries else threshold
        return FetchBatch(
            chunks=self._iter_chunks(inbox_id, summaries),
            cursor_after=encode_cursor(CURSOR_TAG, newest),
        )

    def normalize(self, chunk: MessageChunk) -> NormalizedMessage:
        summary = chunk.payload.get("summary") if isinstance(chunk.payload, dict) else None
        if not isinstance(summary, dict) or not summary.get("messageId"):
            raise PayloadParseError(
                f"Zoho payload for {chunk.provider_message_id} has no message id"
            )
        try:
            received = from_epoch_millis(summary["receivedTime"])
            sent_raw = summary.get("sentDateInGMT")
            sent = from_epoch_millis(sent_raw) if sent_raw else received
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise PayloadParseError(
                f"Zoho payload for {chunk.provider_message_id} has a bad timestamp"
            ) from exc
        content = chunk.payload.get("content")
        senders = _addresses(summary.get("fromAddress"))
        sender = senders[0] if senders else None
        if sender is not None and sender.name is None and summary.get("sender"):
            sender.name = html.unescape(str(summary["sender"]))
        preview = build_preview(None, content, self._preview_chars) if content else None
        return NormalizedMessage(
            provider_message_id=str(summary["messageId"]),
            subject=html.unescape(str(summary.get("subject") or "")) or None,
            sender=sender,
            to=tuple(_addresses(summary.get("toAddress"))),
            cc=tuple(_addresses(summary.get("ccAddress"))),
            date_sent=sent,
            date_received=received,
            body_html=content,
            body_preview=preview or summary.get("summary") or None,
            is_read=str(summary.get("status")) == "1",
            is_starred=str(summary.get("flagid", "")).lower() not in ("", "flag_not_set"),
        )

    def fetch_body(self, provider_message_id: str) -> NormalizedMessage | None:
        inbox_id = self._resolve_inbox_id()
        details = self._get(
            f"/accounts/{self._resolve_account_id()}/folders/{inbox_id}"
            f"/messages/{provider_message_id}/details"
        )
        if not details:
            return None
        content = self._content(inbox_id, provider_message_id)
        return self.normalize(
            MessageChunk(
                provider_message_id=provider_message_id,
                payload={"summary": details, "content": content},
                folder_id=inbox_id,
            )
        )

    def refreshed_credentials(self) -> OAuthTokens | None:
        return self._tokens if self._refreshed else None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # Internal helpers --------------------------------------------------------
    def _resolve_account_id(self) -> str:
        if self._account_id is None:
            data = self._get("/accounts")
            if not data:
                raise ZohoApiError("Zoho returned no mail accounts")
            self._account_id = str(data[0]["accountId"])
        return self._account_id

    def _resolve_inbox_id(self) -> str:
        if self._inbox_id is None:
            inbox = next(
                (
                    folder
                    for folder in self.list_folders()
                    if folder.folder_type is FolderType.INBOX
                    or folder.name.casefold() == "inbox"
                ),
                None,
            )
            if inbox is None:
                raise ZohoApiError("Zoho account has no inbox folder")
            self._inbox_id = inbox.provider_folder_id
        return self._inbox_id

    def _list_newer_than(self, folder_id: str, threshold: int) -> list[dict[str, Any]]:
        """Page through the folder newest first until older mail is reached."""
        collected: list[dict[str, Any]] = []
        start = 1
        while True:
            page = self._get(
                f"/accounts/{self._resolve_account_id()}/messages/view",
                params={
                    "folderId": folder_id,
                    "start": start,
                    "limit": PAGE_SIZE,
                    "sortorder": "false",
                },
            ) or []
            reached_older = False
            for entry in page:
                # Equal timestamps are re-fetched; ingestion dedup drops repeats.
                if int(entry.get("receivedTime", 0)) >= threshold:
                    collected.append(entry)
                else:
                    reached_older = True
            if reached_older or len(page) < PAGE_SIZE:
                return collected
            start += PAGE_SIZE

    def _iter_chunks(
        self, folder_id: str, summaries: list[dict[str, Any]]
    ) -> Iterator[MessageChunk]:
        for summary in summaries:
            message_id = str(summary["messageId"])
            content = self._content(str(summary.get("folderId") or folder_id), message_id)
            yield MessageChunk(
                provider_message_id=message_id,
                payload={"summary": summary, "content": content},
                folder_id=folder_id,
                watermark=encode_cursor(CURSOR_TAG, summary["receivedTime"]),
            )

    def _content(self, folder_id: str, message_id: str) -> str | None:
        """Return the message HTML, or ``None`` when Zoho cannot serve it."""
        try:
            data = self._get(
                f"/accounts/{self._resolve_account_id()}/folders/{folder_id}"
                f"/messages/{message_id}/content"
            )
        except ZohoApiError as exc:
            LOGGER.warning("Zoho content unavailable for %s: %s", message_id, exc)
            return None
        content = data.get("content") if isinstance(data, dict) else None
        return content if isinstance(content, str) and content else None

    def _get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        self._ensure_fresh_token()
        response = self._send("GET", path, params)
        if response.status_code == 401 and not self._refreshed:
            LOGGER.info("Zoho rejected access token; refreshing once")
            self._refresh()
            response = self._send("GET", path, params)
        if response.status_code == 401:
            raise AuthError("Zoho rejected the refreshed access token")
        if response.status_code == 403:
            raise AuthError(f"Zoho denied access to {path}; the grant lacks a scope")
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(
                f"Zoho API unavailable (HTTP {response.status_code}) for {path}"
            )
        if response.status_code >= 400:
            raise ZohoApiError(f"Zoho API error (HTTP {response.status_code}) for {path}")
        try:
            body = decode_json(response.text)
        except json.JSONDecodeError as exc:
            raise ZohoApiError(f"Zoho returned invalid JSON for {path}") from exc
        return body.get("data") if isinstance(body, dict) else None

    def _send(
        self, method: str, path: str, params: dict[str, Any] | None
    ) -> httpx.Response:
        url = self._settings.api_base.rstrip("/") + path
        try:
            return self._client.request(
                method,
                url,
                params=params,
                headers={"Authorization": f"Zoho-oauthtoken {self._tokens.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Zoho API unreachable: {exc}") from exc

    def _ensure_fresh_token(self) -> None:
        expires_at = ensure_utc(self._tokens.expires_at)
        if expires_at is not None and expires_at - utcnow() < REFRESH_MARGIN:
            self._refresh()

    def _refresh(self) -> None:
        settings = self._settings
        if not self._tokens.refresh_token:
            raise AuthError("Zoho access token expired and no refresh token is stored")
        if settings.client_id is None or settings.client_secret is None:
            raise AuthError("Zoho OAuth client is not configured")
        try:
            response = self._client.post(
                settings.token_url,
                params={
                    "grant_type": "refresh_token",
                    "refresh_token": self._tokens.refresh_token,
                    "client_id": settings.client_id,
                    "client_secret": settings.client_secret.get_secret_value(),
                },
            )
        except httpx.HTTPError as exc:
            raise TransientNetworkError("Unable to reach Zoho token endpoint") from exc
        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Zoho token endpoint failed (HTTP {response.status_code})"
            )
        try:
            body = decode_json(response.text)
        except json.JSONDecodeError as exc:
            raise AuthError("Zoho token endpoint returned invalid JSON") from exc
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if response.status_code >= 400 or not access_token:
            raise AuthError("Zoho refused to refresh the access token")
        expires_in = int(body.get("expires_in", 3600))
        self._tokens = OAuthTokens(
            access_token=str(access_token),
            refresh_token=self._tokens.refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )
        self._refreshed = True


def _addresses(value: Any) -> list[EmailAddress]:
    """Parse Zoho address strings, which arrive HTML-escaped."""
    raw = str(value) if value else ""
    if not raw:
        return []
    return [
        EmailAddress(address=address.lower(), name=name or None)
        for name, address in getaddresses([html.unescape(raw)])
        if address and "@" in address
    ]


__all__ = ["CURSOR_TAG", "ZohoAdapter", "ZohoApiError", "decode_json"]
