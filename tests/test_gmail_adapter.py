"""Tests for the Gmail REST adapter."""

from __future__ import annotations

import base64
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from mailhub.core.datetime_utils import to_epoch_millis, utcnow
from mailhub.core.errors import AuthError, PayloadParseError
from mailhub.core.models import FolderType, MessageChunk, OAuthTokens
from mailhub.transport import GmailAdapter
from mailhub.transport.gmail import build_credentials

SINCE = datetime(2025, 10, 1, tzinfo=UTC)
RECEIVED = datetime(2025, 10, 6, 10, 5, tzinfo=UTC)


def _credentials(*, expires_in: timedelta = timedelta(hours=1), refresh: str | None = "r"):
    return build_credentials(
        OAuthTokens(
            access_token="access",
            refresh_token=refresh,
            expires_at=utcnow() + expires_in,
        ),
        client_id="client",
        client_secret="secret",
        token_uri="https://oauth2.googleapis.com/token",
    )


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b"{}")


def _request(result=None, error: Exception | None = None) -> MagicMock:
    request = MagicMock()
    if error is not None:
        request.execute.side_effect = error
    else:
        request.execute.return_value = result
    return request


def _service(raw_email: Callable[..., bytes]) -> MagicMock:
    service = MagicMock()
    users = service.users.return_value

    def get(userId, id, format):  # pylint: disable=redefined-builtin
        assert userId == "me" and format == "raw"
        payload = raw_email(subject=f"Message {id}", message_id=f"<{id}@example.com>")
        return _request(
            {
                "id": id,
                "raw": base64.urlsafe_b64encode(payload).decode("ascii"),
                "internalDate": str(to_epoch_millis(RECEIVED)),
                "labelIds": ["INBOX", "UNREAD"],
            }
        )

    users.messages.return_value.get.side_effect = get
    users.getProfile.return_value = _request({"historyId": "900"})
    users.messages.return_value.list.return_value = _request(
        {"messages": [{"id": "m2"}, {"id": "m1"}]}
    )
    return service


def test_first_sync_lists_inbox_oldest_first(raw_email: Callable[..., bytes]) -> None:
    service = _service(raw_email)
    adapter = GmailAdapter(_credentials(), service=service)

    batch = adapter.fetch_since(None, since=SINCE)
    chunks = list(batch.chunks)

    assert [chunk.provider_message_id for chunk in chunks] == ["m1", "m2"]
    assert all(chunk.folder_id == "INBOX" for chunk in chunks)
    assert batch.cursor_after == "gmail:900"
    list_kwargs = service.users.return_value.messages.return_value.list.call_args.kwargs
    assert list_kwargs["q"] == "after:2025/10/01"
    assert list_kwargs["labelIds"] == ["INBOX"]


def test_incremental_sync_reads_history(raw_email: Callable[..., bytes]) -> None:
    service = _service(raw_email)
    history = service.users.return_value.history.return_value
    history.list.return_value = _request(
        {
            "history": [
                {"messagesAdded": [{"message": {"id": "m3"}}]},
                {"messagesAdded": [{"message": {"id": "m3"}}, {"message": {"id": "m4"}}]},
            ],
            "historyId": "910",
        }
    )
    adapter = GmailAdapter(_credentials(), service=service)

    batch = adapter.fetch_since("gmail:900", since=SINCE)

    assert [chunk.provider_message_id for chunk in batch.chunks] == ["m3", "m4"]
    assert batch.cursor_after == "gmail:910"
    assert history.list.call_args.kwargs["startHistoryId"] == "900"
    service.users.return_value.getProfile.assert_not_called()


def test_expired_history_falls_back_to_lookback(raw_email: Callable[..., bytes]) -> None:
    service = _service(raw_email)
    service.users.return_value.history.return_value.list.return_value = _request(
        error=_http_error(404)
    )
    adapter = GmailAdapter(_credentials(), service=service)

    batch = adapter.fetch_since("gmail:1", since=SINCE)

    assert [chunk.provider_message_id for chunk in batch.chunks] == ["m1", "m2"]
    assert batch.cursor_after == "gmail:900"


def test_rejected_credentials_raise_auth_error(raw_email: Callable[..., bytes]) -> None:
    service = _service(raw_email)
    service.users.return_value.labels.return_value.list.return_value = _request(
        error=_http_error(401)
    )
    adapter = GmailAdapter(_credentials(), service=service)

    with pytest.raises(AuthError):
        adapter.list_folders()


def test_expired_token_without_refresh_token_raises_auth_error(
    raw_email: Callable[..., bytes],
) -> None:
    adapter = GmailAdapter(
        _credentials(expires_in=timedelta(minutes=-1), refresh=None),
        service=_service(raw_email),
    )

    with pytest.raises(AuthError):
        adapter.fetch_since(None, since=SINCE)


def test_list_folders_keeps_user_labels_and_mail_system_labels(
    raw_email: Callable[..., bytes],
) -> None:
    service = _service(raw_email)
    service.users.return_value.labels.return_value.list.return_value = _request(
        {
            "labels": [
                {"id": "INBOX", "name": "INBOX", "type": "system"},
                {"id": "CHAT", "name": "CHAT", "type": "system"},
                {"id": "Label_1", "name": "Work/Clients", "type": "user"},
            ]
        }
    )
    adapter = GmailAdapter(_credentials(), service=service)

    folders = adapter.list_folders()

    assert [(item.provider_folder_id, item.folder_type) for item in folders] == [
        ("INBOX", FolderType.INBOX),
        ("Label_1", FolderType.OTHER),
    ]
    assert folders[1].name == "Clients"
    assert folders[1].path == "Work/Clients"


def test_normalize_reads_labels_and_internal_date(raw_email: Callable[..., bytes]) -> None:
    adapter = GmailAdapter(_credentials(), service=MagicMock())
    chunk = MessageChunk(
        provider_message_id="m1",
        payload={
            "raw": base64.urlsafe_b64encode(raw_email()).decode("ascii"),
            "internalDate": str(to_epoch_millis(RECEIVED)),
            "labelIds": ["INBOX", "STARRED"],
        },
    )

    message = adapter.normalize(chunk)

    assert message.date_received == RECEIVED
    assert message.labels == ("INBOX", "STARRED")
    assert message.is_read
    assert message.is_starred

    with pytest.raises(PayloadParseError):
        adapter.normalize(MessageChunk(provider_message_id="m2", payload={}))


def test_refreshed_credentials_reports_only_new_tokens() -> None:
    credentials = _credentials()
    adapter = GmailAdapter(credentials, service=MagicMock())

    assert adapter.refreshed_credentials() is None

    credentials.token = "rotated"
    tokens = adapter.refreshed_credentials()

    assert tokens is not None
    assert tokens.access_token == "rotated"
    assert tokens.refresh_token == "r"


def test_lookback_listing_keeps_newest_messages_up_to_cap(
    raw_email: Callable[..., bytes],
) -> None:
    service = _service(raw_email)
    listing = service.users.return_value.messages.return_value.list
    listing.side_effect = [
        _request({"messages": [{"id": "m5"}, {"id": "m4"}, {"id": "m3"}], "nextPageToken": "p2"}),
        _request({"messages": [{"id": "m2"}, {"id": "m1"}]}),
    ]
    adapter = GmailAdapter(_credentials(), service=service, max_messages=2)

    batch = adapter.fetch_since(None, since=SINCE)

    assert [chunk.provider_message_id for chunk in batch.chunks] == ["m4", "m5"]
    assert batch.cursor_after == "gmail:900"
    assert listing.call_count == 1


@pytest.mark.parametrize(
    ("cap", "expected", "cursor"),
    [
        (2, ["m3"], "gmail:901"),
        (3, ["m3", "m4", "m5"], "gmail:902"),
        (10, ["m3", "m4", "m5", "m6"], "gmail:910"),
    ],
)
def test_history_is_cut_at_a_record_boundary(
    raw_email: Callable[..., bytes], cap: int, expected: list[str], cursor: str
) -> None:
    service = _service(raw_email)
    service.users.return_value.history.return_value.list.return_value = _request(
        {
            "history": [
                {"id": "901", "messagesAdded": [{"message": {"id": "m3"}}]},
                {
                    "id": "902",
                    "messagesAdded": [{"message": {"id": "m4"}}, {"message": {"id": "m5"}}],
                },
                {"id": "903", "messagesAdded": [{"message": {"id": "m6"}}]},
            ],
            "historyId": "910",
        }
    )
    adapter = GmailAdapter(_credentials(), service=service, max_messages=cap)

    batch = adapter.fetch_since("gmail:900", since=SINCE)

    assert [chunk.provider_message_id for chunk in batch.chunks] == expected
    assert batch.cursor_after == cursor
