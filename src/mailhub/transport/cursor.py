"""Provider-tagged sync cursors.

The orchestrator stores cursors as opaque strings. Each adapter prefixes its
cursors with a tag so a value written by one provider is never interpreted by
another: a mismatched tag is discarded and the adapter falls back to a
lookback sync.
"""

from __future__ import annotations

import logging

LOGGER = logging.getLogger(__name__)

SEPARATOR = ":"


def encode_cursor(tag: str, *parts: str | int) -> str:
    """Build a cursor string such as ``imap:1700000000:42``."""
    return SEPARATOR.join([tag, *(str(part) for part in parts)])


def decode_cursor(cursor: str | None, tag: str, arity: int) -> list[str] | None:
    """Return the cursor's fields, or ``None`` when absent or foreign."""
    if not cursor:
        return None
    head, _, rest = cursor.partition(SEPARATOR)
    if head != tag or not rest:
        LOGGER.warning("Discarding cursor %r not issued by %s adapter", cursor, tag)
        return None
    parts = rest.split(SEPARATOR)
    if len(parts) != arity or not all(parts):
        LOGGER.warning("Discarding malformed %s cursor %r", tag, cursor)
        return None
    return parts


__all__ = ["decode_cursor", "encode_cursor"]
