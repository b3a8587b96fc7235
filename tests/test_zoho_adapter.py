"""Tests for the Zoho Mail REST adapter."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import pytest

from mailhub.core.config import ZohoSettings
from mailhub.core.errors import AuthError, TransientNetworkError
from mailhub.core.models import FolderType, OAuthTokens, ProviderType
from mailhub.ingestion import IngestionPipeline
from mailhub.storage import SqliteStore
from mailhub.transport import ZohoAdapter
from mailhub.transport.zoho import decode_json

ACCOUNT_ID = "123456789012345678"
INBOX_ID = "998877665544332211"
SINCE = datetime(2025, 10, 1, tzinfo=UTC)

ACCOUNTS = '{"data": [{"accountId": 123456789012345678}]}'
FOLDERS = (
    '{"data": ['
    '{"folderId": 998877665544332211, "folderName": "Inbox", "folderType": "Inbox",'
    ' "path": "/Inbox"},'
    '{"folderId": 2, "folderName": "Sent", "folderType": "Sent", "path": "/Sent"},'
    '{"folderId": 3, "folderName": "Receipts", "folderType": "", "path": "/Receipts"}'
    "]}"
)
MESSAGES = (
    '{"data": ['
    '{"messageId": 1712345678901234568, "receivedTime": "1759744900000",'
    ' "sentDateInGMT": "1759744890000", "subject": "Second",'
    ' "fromAddress": "bob@example.com", "sender": "Bob", "status": "1",'
    ' "flagid": "flag_not_set"},'
    '{"messageId": 1712345678901234567, "receivedTime": "1759744800000",'
    ' "sentDateInGMT": "1759744790000", "subject": "Invoice &amp; receipt",'
    ' "fromAddress": "alice@example.com", "sender": "Alice &amp; Co",'
    ' "toAddress": "&lt;me@example.com&gt;", "status": "0", "flagid": "important"},'
    '{"messageId": 1, "receivedTime": "1000", "subject": "Ancient"}'
    "]}"
)


class FakeZoho:
    """Route requests the way the Zoho API would answer them."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.reject_token: str | None = None
        self.token_status = 200
        self.view_status = 200
        self.folders = FOLDERS
        self.content_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST":
            if self.token_status != 200:
                return httpx.Response(self.token_status, text='{"error": "invalid_code"}')
            return httpx.Response(200, text='{"access_token": "fresh", "expires_in": 3600}')
        if request.headers["Authorization"] == f"Zoho-oauthtoken {self.reject_token}":
            return httpx.Response(401, text='{"status": {"code": 401}}')
        if path == "/api/accounts":
            return httpx.Response(200, text=ACCOUNTS)
        if path == f"/api/accounts/{ACCOUNT_ID}/folders":
            return httpx.Response(200, text=self.folders)
        if path == f"/api/accounts/{ACCOUNT_ID}/messages/view":
            if self.view_status != 200:
                return httpx.Response(self.view_status, text="{}")
            assert request.url.params["folderId"] == INBOX_ID
            return httpx.Response(200, text=MESSAGES)
        if path.endswith("/content"):
            if self.content_status != 200:
                return httpx.Response(self.content_status, text="{}")
            message_id = path.split("/")[-2]
            return httpx.Response(
                200, text=f'{{"data": {{"content": "<p>Body {message_id}</p>"}}}}'
            )
        return httpx.Response(404, text="{}")


def _adapter(fake: FakeZoho, *, access_token: str = "token") -> ZohoAdapter:
    settings = ZohoSettings(client_id="client", client_secret="secret")
    return ZohoAdapter(
        OAuthTokens(access_token=access_token, refresh_token="refresh"),
        settings,
        http_client=httpx.Client(transport=httpx.MockTransport(fake)),
    )


def test_decode_json_keeps_large_ids_exact() -> None:
    data = decode_json('{"messageId": 1712345678901234567, "size": 12}')

    assert data == {"messageId": "1712345678901234567", "size": "12"}


def test_list_folders_maps_types() -> None:
    folders = _adapter(FakeZoho()).list_folders()

    assert [(item.provider_folder_id, item.folder_type) for item in folders] == [
        (INBOX_ID, FolderType.INBOX),
        ("2", FolderType.SENT),
        ("3", FolderType.OTHER),
    ]


def test_fetch_since_returns_inbox_messages_oldest_first() -> None:
    adapter = _adapter(FakeZoho())

    batch = adapter.fetch_since(None, since=SINCE)
    chunks = list(batch.chunks)

    assert [chunk.provider_message_id for chunk in chunks] == [
        "1712345678901234567",
        "1712345678901234568",
    ]
    assert [chunk.watermark for chunk in chunks] == [
        "zoho:1759744800000",
        "zoho:1759744900000",
    ]
    assert batch.cursor_after == "zoho:1759744900000"
    assert chunks[0].folder_id == INBOX_ID


def test_normalize_unescapes_fields() -> None:
    adapter = _adapter(FakeZoho())
    chunk = next(iter(adapter.fetch_since(None, since=SINCE).chunks))

    message = adapter.normalize(chunk)

    assert message.provider_message_id == "1712345678901234567"
    assert message.subject == "Invoice & receipt"
    assert message.sender is not None
    assert message.sender.address == "alice@example.com"
    assert message.sender.name == "Alice & Co"
    assert [item.address for item in message.to] == ["me@example.com"]
    assert message.date_received == datetime(2025, 10, 6, 10, 0, tzinfo=UTC)
    assert message.body_html == "<p>Body 1712345678901234567</p>"
    assert message.body_preview == "Body 1712345678901234567"
    assert not message.is_read
    assert message.is_starred


def test_rejected_token_is_refreshed_once() -> None:
    fake = FakeZoho()
    fake.reject_token = "stale"
    adapter = _adapter(fake, access_token="stale")

    folders = adapter.list_folders()
    tokens = adapter.refreshed_credentials()

    assert folders
    assert tokens is not None
    assert tokens.access_token == "fresh"
    assert tokens.refresh_token == "refresh"
    assert sum(1 for request in fake.requests if request.method == "POST") == 1


def test_refused_refresh_raises_auth_error() -> None:
    fake = FakeZoho()
    fake.reject_token = "stale"
    fake.token_status = 400

    with pytest.raises(AuthError):
        _adapter(fake, access_token="stale").list_folders()


def test_server_errors_are_transient() -> None:
    fake = FakeZoho()
    fake.view_status = 503

    with pytest.raises(TransientNetworkError):
        _adapter(fake).fetch_since(None, since=SINCE)


def test_scope_rejection_is_an_auth_error() -> None:
    fake = FakeZoho()
    fake.view_status = 403

    with pytest.raises(AuthError):
        _adapter(fake).fetch_since(None, since=SINCE)


def test_forbidden_content_is_an_auth_error() -> None:
    fake = FakeZoho()
    fake.content_status = 403
    batch = _adapter(fake).fetch_since(None, since=SINCE)

    with pytest.raises(AuthError):
        list(batch.chunks)


@pytest.mark.parametrize("spelling", ["inbox", "INBOX", "Inbox"])
def test_inbox_is_found_whatever_its_case(spelling: str) -> None:
    fake = FakeZoho()
    fake.folders = FOLDERS.replace(
        '"folderName": "Inbox", "folderType": "Inbox"',
        f'"folderName": "{spelling}", "folderType": "{spelling}"',
    )
    adapter = _adapter(fake)

    folders = adapter.list_folders()
    chunks = list(adapter.fetch_since(None, since=SINCE).chunks)

    assert folders[0].folder_type is FolderType.INBOX
    assert {chunk.folder_id for chunk in chunks} == {INBOX_ID}


def test_large_ids_survive_ingestion(store: SqliteStore) -> None:
    adapter = _adapter(FakeZoho())
    user = store.create_user("me@example.com")
    account = store.create_account(user.id, ProviderType.ZOHO, "me@example.com")
    folders = {}
    for normalized in adapter.list_folders():
        folder = store.upsert_folder(account.id, normalized)
        folders[folder.provider_folder_id] = folder
    pipeline = IngestionPipeline(store)

    report = pipeline.ingest(
        account, adapter.fetch_since(None, since=SINCE).chunks, adapter, folders
    )
    again = pipeline.ingest(
        account, adapter.fetch_since(None, since=SINCE).chunks, adapter, folders
    )

    stored = [store.get_message(message_id) for message_id in report.ingested_ids]
    assert [message.provider_message_id for message in stored] == [
        "1712345678901234567",
        "1712345678901234568",
    ]
    assert {store.get_folder(message.folder_id).provider_folder_id for message in stored} == {
        INBOX_ID
    }
    assert again.ingested_ids == []
    assert again.duplicates == 2
