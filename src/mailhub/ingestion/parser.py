"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.errors import MessageError
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc
from ..core.errors import PayloadParseError
from ..core.models import AttachmentMeta, EmailAddress, NormalizedMessage

PREVIEW_CHARS = 500

_WHITESPACE = re.compile(r"\s+")
_TAGS = re.compile(r"<(script|style)\b.*?</\1>|<[^>]+>", re.IGNORECASE | re.DOTALL)


class EmailParser:
    """Convert raw email payloads into normalized messages."""

    def __init__(self, *, preview_chars: int = PREVIEW_CHARS) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)
        self._preview_chars = preview_chars

    def parse(
        self,
        payload: bytes,
        *,
        provider_message_id: str,
        received_at: datetime | None = None,
    ) -> NormalizedMessage:
        """Parse raw RFC822 bytes into a :class:`NormalizedMessage`."""
        if not isinstance(payload, (bytes, bytearray)) or not payload.strip():
            raise PayloadParseError(
                f"Empty or non-binary payload for message {provider_message_id}"
            )
        try:
            message = self._parser.parsebytes(bytes(payload))
            subject = _header(message, "Subject")
            sent_at = _try_parse_datetime(_header(message, "Date"))
            senders = list(_extract_addresses(message.get_all("From", [])))
            body_text, body_html = _extract_bodies(message)
            attachments = tuple(_collect_attachments(message))
            references = tuple(_header(message, "References", "").split())
            result = NormalizedMessage(
                provider_message_id=provider_message_id,
                subject=subject,
                sender=senders[0] if senders else None,
                to=tuple(_extract_addresses(message.get_all("To", []))),
                cc=tuple(_extract_addresses(message.get_all("Cc", []))),
                bcc=tuple(_extract_addresses(message.get_all("Bcc", []))),
                message_id_header=_header(message, "Message-ID"),
                in_reply_to=_first_token(_header(message, "In-Reply-To")),
                references=references,
                reply_to=_header(message, "Reply-To"),
                date_sent=sent_at,
                date_received=ensure_utc(received_at) or sent_at,
                body_text=body_text,
                body_html=body_html,
                body_preview=build_preview(body_text, body_html, self._preview_chars),
                attachments=attachments,
                size_bytes=len(payload),
            )
        except (MessageError, LookupError, TypeError, ValueError) as exc:
            raise PayloadParseError(
                f"Unable to parse message {provider_message_id}: {exc}"
            ) from exc
        return result


def build_preview(text: str | None, html: str | None, limit: int) -> str | None:
    """Return a whitespace-collapsed preview of at most ``limit`` characters."""
    source = text if text else strip_html(html) if html else None
    if not source:
        return None
    collapsed = _WHITESPACE.sub(" ", source).strip()
    return collapsed[:limit] or None


def strip_html(payload: str) -> str:
    """Remove markup, keeping text content separated by spaces."""
    return _TAGS.sub(" ", payload)


def _header(message: EmailMessage, name: str, default: str | None = None) -> str | None:
    value = message.get(name)
    if value is None:
        return default
    return str(value).strip() or default


def _first_token(value: str | None) -> str | None:
    if not value:
        return None
    return value.split()[0]


def _extract_addresses(headers: Iterable[str]) -> Iterable[EmailAddress]:
    for name, email_address in getaddresses([str(header) for header in headers]):
        if email_address and "@" in email_address:
            yield EmailAddress(address=email_address.lower(), name=name or None)


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    return _collapse_chunks(plain_chunks, "\n\n"), _collapse_chunks(html_chunks, "\n")


def _collect_attachments(message: EmailMessage) -> Iterable[AttachmentMeta]:
    for part in message.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        yield AttachmentMeta(
            filename=part.get_filename(),
            content_type=part.get_content_type(),
            size=len(payload) if payload else None,
        )


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(header_value))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser", "build_preview", "strip_html"]
