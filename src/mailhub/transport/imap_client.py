"""IMAP transport adapters for generic, vendor and bridged mailboxes."""

from __future__ import annotations

import imaplib
import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import TracebackType

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

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

CURSOR_TAG = "imap"

_STATUS_FIELD = re.compile(rb"(UIDVALIDITY|UIDNEXT)\s+(\d+)")
_LIST_LINE = re.compile(rb'^\((?P<flags>[^)]*)\)\s+(?P<delim>"[^"]*"|NIL)\s+(?P<name>.+)$')
_FLAGS = re.compile(rb"FLAGS \(([^)]*)\)")

# RFC 6154 special-use attributes.
_SPECIAL_USE = {
    "\\sent": FolderType.SENT,
    "\\drafts": FolderType.DRAFTS,
    "\\trash": FolderType.TRASH,
    "\\junk": FolderType.SPAM,
    "\\archive": FolderType.ARCHIVE,
    "\\all": FolderType.ARCHIVE,
}


class ImapError(TransientNetworkError):
    """Wrap low level IMAP errors with additional context."""


@dataclass(slots=True)
class ImapEndpoint:
    """Connection details for one IMAP account."""

    host: str
    port: int
    username: str
    password: str = field(repr=False)
    use_ssl: bool = True
    timeout_seconds: float = 30.0


@contextmanager
def _imap_errors(action: str) -> Iterator[None]:
    """Translate ``imaplib`` and socket failures into the engine taxonomy."""
    try:
        yield
    except imaplib.IMAP4.abort as exc:
        raise TransientNetworkError(f"IMAP connection dropped while {action}") from exc
    except imaplib.IMAP4.error as exc:
        raise ImapError(f"IMAP error while {action}: {exc}") from exc
    except (OSError, TimeoutError) as exc:
        raise TransientNetworkError(f"Network failure while {action}") from exc


class ImapClient:
    """Adapter for providers reachable over direct TLS IMAP."""

    provider = ProviderType.IMAP

    def __init__(
        self,
        endpoint: ImapEndpoint,
        *,
        mailbox: str = "INBOX",
        max_messages: int = 200,
        parser: EmailParser | None = None,
    ) -> None:
        """Initialise the client with connection details and mailbox."""
        self._endpoint = endpoint
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self._parser = parser or EmailParser()
        self._max_messages = max_messages
        self.mailbox = mailbox

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapClient:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Connection --------------------------------------------------------------
    @retry(
        retry=retry_if_exception_type(TransientNetworkError),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        reraise=True,
    )
    def connect(self) -> None:
        """Establish the IMAP session, retrying transient connect failures."""
        if self._connection is not None:
            return
        connection = self._open()
        LOGGER.debug("Authenticating as %s", self._endpoint.username)
        try:
            connection.login(self._endpoint.username, self._endpoint.password)
        except imaplib.IMAP4.abort as exc:
            raise TransientNetworkError("IMAP connection dropped during login") from exc
        except imaplib.IMAP4.error as exc:
            raise AuthError(
                f"IMAP login rejected for {self._endpoint.username}"
            ) from exc
        except (OSError, TimeoutError) as exc:
            raise TransientNetworkError("Network failure during IMAP login") from exc
        self._connection = connection

    def _open(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        endpoint = self._endpoint
        with _imap_errors(f"connecting to {endpoint.host}:{endpoint.port}"):
            if endpoint.use_ssl:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL", endpoint.host, endpoint.port
                )
                return imaplib.IMAP4_SSL(
                    endpoint.host, endpoint.port, timeout=endpoint.timeout_seconds
                )
            LOGGER.debug(
                "Connecting to IMAP host %s:%s without SSL", endpoint.host, endpoint.port
            )
            return imaplib.IMAP4(
                endpoint.host, endpoint.port, timeout=endpoint.timeout_seconds
            )

    # ProviderAdapter API -----------------------------------------------------
    def list_folders(self) -> list[NormalizedFolder]:
        """Return mailboxes reported by ``LIST`` with canonical folder types."""
        connection = self._require_connection()
        with _imap_errors("listing folders"):
            status, data = connection.list()
        if status != "OK":
            raise ImapError("Failed to list IMAP folders")
        folders: list[NormalizedFolder] = []
        for line in data:
            if not isinstance(line, bytes):
                continue
            folder = _parse_list_line(line)
            if folder is not None:
                folders.append(folder)
        return folders

    def fetch_since(self, cursor: str | None, *, since: datetime) -> FetchBatch:
        """Return messages whose UID is beyond the cursor, ascending."""
        connection = self._require_connection()
        validity, uid_next = self._mailbox_status(connection)
        start_uid = self._resume_point(cursor, validity, uid_next)

        with _imap_errors(f"selecting {self.mailbox}"):
            status, _ = connection.select(self._quoted_mailbox(), readonly=True)
        if status != "OK":
            raise ImapError(f"Unable to select mailbox '{self.mailbox}'")

        if start_uid is None:
            criteria = ("SINCE", since.strftime("%d-%b-%Y"))
            LOGGER.info(
                "First sync of %s for %s: searching since %s",
                self.mailbox,
                self._endpoint.username,
                criteria[1],
            )
        else:
            criteria = ("UID", f"{start_uid}:*")
            LOGGER.debug("Searching %s from UID %s", self.mailbox, start_uid)
        with _imap_errors("searching for messages"):
            status, data = connection.uid("SEARCH", None, *criteria)  # type: ignore[arg-type]
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")

        uids = sorted(int(raw) for raw in (data[0].split() if data and data[0] else []))
        if start_uid is not None:
            # "n:*" always matches the highest UID even when it is below n.
            uids = [uid for uid in uids if uid >= start_uid]
        truncated = len(uids) > self._max_messages
        selected = uids[: self._max_messages]
        if truncated:
            LOGGER.info(
                "Limiting %s sync to %s of %s messages",
                self.mailbox,
                len(selected),
                len(uids),
            )
            next_uid = selected[-1] + 1
        else:
            next_uid = max([uid_next, *(uid + 1 for uid in selected)])
        cursor_after = encode_cursor(CURSOR_TAG, validity, next_uid)
        return FetchBatch(
            chunks=self._iter_chunks(connection, validity, selected),
            cursor_after=cursor_after,
        )

    def normalize(self, chunk: MessageChunk) -> NormalizedMessage:
        message = self._parser.parse(
            chunk.payload, provider_message_id=chunk.provider_message_id
        )
        flags = {flag.casefold() for flag in chunk.flags}
        message.is_read = "\\seen" in flags
        message.is_starred = "\\flagged" in flags
        message.is_draft = "\\draft" in flags
        return message

    def fetch_body(self, provider_message_id: str) -> NormalizedMessage | None:
        connection = self._require_connection()
        uid = _uid_from_message_id(provider_message_id)
        with _imap_errors(f"selecting {self.mailbox}"):
            connection.select(self._quoted_mailbox(), readonly=True)
        chunk = self._fetch_chunk(connection, provider_message_id, uid, watermark=None)
        return None if chunk is None else self.normalize(chunk)

    def refreshed_credentials(self) -> OAuthTokens | None:
        return None

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        try:
            LOGGER.debug("Logging out of IMAP session")
            self._connection.logout()
        except (imaplib.IMAP4.error, OSError):  # pragma: no cover - server state
            LOGGER.debug("IMAP logout raised; suppressing during shutdown")
        finally:
            self._connection = None

    # Internal helpers --------------------------------------------------------
    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            self.connect()
        connection = self._connection
        if connection is None:
            raise ImapError("IMAP session is not connected")
        return connection

    def _quoted_mailbox(self) -> str:
        return f'"{self.mailbox}"'

    def _mailbox_status(
        self, connection: imaplib.IMAP4 | imaplib.IMAP4_SSL
    ) -> tuple[int, int]:
        with _imap_errors(f"reading status of {self.mailbox}"):
            status, data = connection.status(
                self._quoted_mailbox(), "(UIDVALIDITY UIDNEXT)"
            )
        if status != "OK" or not data or not isinstance(data[0], bytes):
            raise ImapError(f"Unable to read status of mailbox '{self.mailbox}'")
        fields = {key.decode(): int(value) for key, value in _STATUS_FIELD.findall(data[0])}
        if "UIDVALIDITY" not in fields or "UIDNEXT" not in fields:
            raise ImapError(f"Mailbox '{self.mailbox}' did not report UID state")
        return fields["UIDVALIDITY"], fields["UIDNEXT"]

    def _resume_point(self, cursor: str | None, validity: int, uid_next: int) -> int | None:
        parts = decode_cursor(cursor, CURSOR_TAG, arity=2)
        if parts is None:
            return None
        try:
            stored_validity, stored_next = int(parts[0]), int(parts[1])
        except ValueError:
            LOGGER.warning("Discarding non-numeric IMAP cursor %r", cursor)
            return None
        if stored_validity != validity:
            LOGGER.warning(
                "UIDVALIDITY of %s changed (%s -> %s); resetting to lookback sync",
                self.mailbox,
                stored_validity,
                validity,
            )
            return None
        if stored_next > uid_next:
            LOGGER.warning(
                "Cursor UID %s is ahead of UIDNEXT %s for %s; resetting",
                stored_next,
                uid_next,
                self.mailbox,
            )
            return None
        return stored_next

    def _iter_chunks(
        self,
        connection: imaplib.IMAP4 | imaplib.IMAP4_SSL,
        validity: int,
        uids: list[int],
    ) -> Iterator[MessageChunk]:
        for uid in uids:
            chunk = self._fetch_chunk(
                connection,
                f"{self.mailbox}:{validity}:{uid}",
                uid,
                watermark=encode_cursor(CURSOR_TAG, validity, uid + 1),
            )
            if chunk is not None:
                yield chunk

    def _fetch_chunk(
        self,
        connection: imaplib.IMAP4 | imaplib.IMAP4_SSL,
        provider_message_id: str,
        uid: int,
        *,
        watermark: str | None,
    ) -> MessageChunk | None:
        LOGGER.debug("Fetching RFC822 payload for UID %s", uid)
        with _imap_errors(f"fetching UID {uid}"):
            status, fetch_data = connection.uid("FETCH", str(uid), "(FLAGS RFC822)")
        if status != "OK":
            raise ImapError(f"Failed to fetch message UID {uid}")
        extracted = _extract_rfc822(fetch_data)
        if extracted is None:
            LOGGER.warning("No RFC822 payload returned for UID %s", uid)
            return None
        payload, flags = extracted
        return MessageChunk(
            provider_message_id=provider_message_id,
            payload=payload,
            folder_id=self.mailbox,
            watermark=watermark,
            flags=flags,
        )


class BridgeImapClient(ImapClient):
    """Plaintext IMAP to a local companion bridge (Proton Mail Bridge).

    The bridge decrypts mail locally and listens on loopback, so the
    connection is unencrypted and the credentials are bridge-local.
    """

    provider = ProviderType.PROTON

    def __init__(
        self,
        endpoint: ImapEndpoint,
        *,
        mailbox: str = "INBOX",
        max_messages: int = 200,
        parser: EmailParser | None = None,
    ) -> None:
        super().__init__(
            replace(endpoint, use_ssl=False),
            mailbox=mailbox,
            max_messages=max_messages,
            parser=parser,
        )


def _parse_list_line(line: bytes) -> NormalizedFolder | None:
    match = _LIST_LINE.match(line.strip())
    if match is None:
        LOGGER.debug("Ignoring unparseable LIST response %r", line)
        return None
    flags = {flag.casefold() for flag in match.group("flags").decode().split()}
    if "\\noselect" in flags:
        return None
    raw_name = match.group("name").decode("utf-8", errors="replace").strip()
    path = raw_name[1:-1] if raw_name.startswith('"') and raw_name.endswith('"') else raw_name
    delimiter = match.group("delim").decode().strip('"')
    name = path.rsplit(delimiter, 1)[-1] if delimiter and delimiter != "NIL" else path

    folder_type = next(
        (kind for flag, kind in _SPECIAL_USE.items() if flag in flags), None
    )
    if folder_type is None:
        folder_type = FolderType.normalize(name)
    return NormalizedFolder(
        provider_folder_id=path,
        name=name,
        path=path,
        folder_type=folder_type,
        is_system=folder_type is not FolderType.OTHER,
    )


def _uid_from_message_id(provider_message_id: str) -> int:
    try:
        return int(provider_message_id.rsplit(":", 1)[-1])
    except ValueError as exc:
        raise PayloadParseError(
            f"Not an IMAP message id: {provider_message_id!r}"
        ) from exc


def _extract_rfc822(
    fetch_data: list[tuple[bytes, bytes] | bytes],
) -> tuple[bytes, tuple[str, ...]] | None:
    """Extract the RFC822 payload and flags from ``imaplib`` response chunks."""
    flags: tuple[str, ...] = ()
    payload: bytes | None = None
    for entry in fetch_data:
        header = entry[0] if isinstance(entry, tuple) else entry
        if isinstance(header, bytes):
            match = _FLAGS.search(header)
            if match:
                flags = tuple(match.group(1).decode().split())
        if isinstance(entry, tuple) and len(entry) == 2 and payload is None:
            payload = entry[1]
    if payload is None:
        return None
    return payload, flags


__all__ = [
    "BridgeImapClient",
    "CURSOR_TAG",
    "ImapClient",
    "ImapEndpoint",
    "ImapError",
]
