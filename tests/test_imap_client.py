"""Tests for the IMAP transport adapter."""

# pylint: disable=protected-access

from __future__ import annotations

import imaplib
from collections.abc import Callable
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from mailhub.core.errors import AuthError, TransientNetworkError
from mailhub.core.models import FolderType, MessageChunk
from mailhub.transport import BridgeImapClient, ImapClient, ImapEndpoint
from mailhub.transport.imap_client import ImapError

SINCE = datetime(2025, 10, 1, tzinfo=UTC)


def _endpoint() -> ImapEndpoint:
    return ImapEndpoint(
        host="imap.test",
        port=993,
        username="user@example.com",
        password="app-password",
    )


def _connection(uids: list[int], *, uid_next: int = 105) -> MagicMock:
    connection = MagicMock()
    connection.status.return_value = (
        "OK",
        [f'"INBOX" (UIDVALIDITY 7 UIDNEXT {uid_next})'.encode()],
    )
    connection.select.return_value = ("OK", [b"3"])

    def uid(command, *args):
        if command == "SEARCH":
            return "OK", [" ".join(str(item) for item in uids).encode()]
        if command == "FETCH":
            uid_arg = args[0]
            header = f"{uid_arg} (UID {uid_arg} FLAGS (\\Seen) RFC822 {{7}}"
            return "OK", [(header.encode(), f"raw-{uid_arg}".encode()), b")"]
        raise AssertionError("Unexpected IMAP command")

    connection.uid.side_effect = uid
    return connection


def test_fetch_since_resumes_from_cursor() -> None:
    client = ImapClient(_endpoint())
    connection = _connection([101, 102])
    client._connection = connection  # type: ignore[attr-defined]

    batch = client.fetch_since("imap:7:101", since=SINCE)
    chunks = list(batch.chunks)

    assert [chunk.provider_message_id for chunk in chunks] == ["INBOX:7:101", "INBOX:7:102"]
    assert chunks[0].payload == b"raw-101"
    assert chunks[0].flags == ("\\Seen",)
    assert chunks[0].folder_id == "INBOX"
    assert [chunk.watermark for chunk in chunks] == ["imap:7:102", "imap:7:103"]
    assert batch.cursor_after == "imap:7:105"
    connection.uid.assert_any_call("SEARCH", None, "UID", "101:*")
    connection.uid.assert_any_call("FETCH", "101", "(FLAGS RFC822)")
    connection.uid.assert_any_call("FETCH", "102", "(FLAGS RFC822)")


def test_first_sync_searches_by_date() -> None:
    client = ImapClient(_endpoint())
    connection = _connection([])
    client._connection = connection  # type: ignore[attr-defined]

    batch = client.fetch_since(None, since=SINCE)

    assert list(batch.chunks) == []
    assert batch.cursor_after == "imap:7:105"
    connection.uid.assert_any_call("SEARCH", None, "SINCE", "01-Oct-2025")


def test_changed_uidvalidity_falls_back_to_date_search() -> None:
    client = ImapClient(_endpoint())
    connection = _connection([103])
    client._connection = connection  # type: ignore[attr-defined]

    list(client.fetch_since("imap:6:50", since=SINCE).chunks)

    connection.uid.assert_any_call("SEARCH", None, "SINCE", "01-Oct-2025")


def test_star_range_result_below_cursor_is_ignored() -> None:
    client = ImapClient(_endpoint())
    connection = _connection([104], uid_next=105)
    client._connection = connection  # type: ignore[attr-defined]

    batch = client.fetch_since("imap:7:105", since=SINCE)

    assert list(batch.chunks) == []
    assert batch.cursor_after == "imap:7:105"


def test_batch_is_capped_and_cursor_stops_at_last_selected_uid() -> None:
    client = ImapClient(_endpoint(), max_messages=2)
    connection = _connection([101, 102, 103, 104])
    client._connection = connection  # type: ignore[attr-defined]

    batch = client.fetch_since("imap:7:101", since=SINCE)

    assert len(list(batch.chunks)) == 2
    assert batch.cursor_after == "imap:7:103"


def test_normalize_applies_flags(raw_email: Callable[..., bytes]) -> None:
    client = ImapClient(_endpoint())
    chunk = MessageChunk(
        provider_message_id="INBOX:7:101",
        payload=raw_email(),
        flags=("\\Seen", "\\Flagged"),
    )

    message = client.normalize(chunk)

    assert message.is_read
    assert message.is_starred
    assert not message.is_draft
    assert message.subject == "Hello"


def test_list_folders_maps_special_use_flags() -> None:
    client = ImapClient(_endpoint())
    connection = MagicMock()
    connection.list.return_value = (
        "OK",
        [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasNoChildren \\Sent) "/" "Sent Items"',
            b'(\\HasNoChildren \\Junk) "/" "Bulk"',
            b'(\\Noselect \\HasChildren) "/" "[Gmail]"',
            b'(\\HasNoChildren) "/" "Projects/Acme"',
        ],
    )
    client._connection = connection  # type: ignore[attr-defined]

    folders = client.list_folders()

    assert [(item.path, item.folder_type) for item in folders] == [
        ("INBOX", FolderType.INBOX),
        ("Sent Items", FolderType.SENT),
        ("Bulk", FolderType.SPAM),
        ("Projects/Acme", FolderType.OTHER),
    ]
    assert folders[3].name == "Acme"


def test_rejected_login_raises_auth_error(monkeypatch: pytest.MonkeyPatch) -> None:
    client = ImapClient(_endpoint())
    connection = MagicMock()
    connection.login.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
    monkeypatch.setattr(client, "_open", lambda: connection)

    with pytest.raises(AuthError):
        client.connect()


def test_dropped_connection_during_fetch_is_transient() -> None:
    client = ImapClient(_endpoint())
    connection = MagicMock()
    connection.status.side_effect = imaplib.IMAP4.abort("socket closed")
    client._connection = connection  # type: ignore[attr-defined]

    with pytest.raises(TransientNetworkError):
        client.fetch_since(None, since=SINCE)


def test_session_that_fails_to_open_raises_imap_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client = ImapClient(_endpoint())
    monkeypatch.setattr(client, "connect", lambda: None)

    with pytest.raises(ImapError, match="not connected"):
        client.list_folders()


def test_bridge_client_never_uses_tls() -> None:
    client = BridgeImapClient(_endpoint())

    assert client._endpoint.use_ssl is False  # type: ignore[attr-defined]
    assert client.provider == "proton"
