"""Thread keying helpers."""

from __future__ import annotations

import re

from ..core.models import NormalizedMessage

NO_SUBJECT_KEY = "(no subject)"

# "Re:", "Fwd:", "FW:", "AW:", "SV:" and counted forms such as "Re[2]:".
_REPLY_PREFIX = re.compile(r"^\s*(?:re|fwd?|aw|sv)\s*(?:\[\d+\])?\s*:\s*", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def subject_key(subject: str | None) -> str:
    """Return the normalized subject used to group messages into threads."""
    if not subject:
        return NO_SUBJECT_KEY
    stripped = subject
    while True:
        shortened = _REPLY_PREFIX.sub("", stripped, count=1)
        if shortened == stripped:
            break
        stripped = shortened
    key = _WHITESPACE.sub(" ", stripped).strip().casefold()
    return key or NO_SUBJECT_KEY


def reference_ids(message: NormalizedMessage) -> list[str]:
    """Return Message-IDs this message points at, nearest parent first."""
    ordered: list[str] = []
    if message.in_reply_to:
        ordered.append(message.in_reply_to)
    ordered.extend(reversed(message.references))
    seen: set[str] = set()
    unique: list[str] = []
    for ref in ordered:
        if ref not in seen:
            seen.add(ref)
            unique.append(ref)
    return unique


__all__ = ["NO_SUBJECT_KEY", "reference_ids", "subject_key"]
