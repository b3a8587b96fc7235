"""Prompt templates for LLM-driven classification."""

from __future__ import annotations

from collections.abc import Sequence
from textwrap import dedent

from ..core.models import Category, ClassificationInput, EmailAddress


def _format_address(address: EmailAddress | None) -> str:
    if address is None:
        return "(unknown sender)"
    if address.name:
        return f"{address.name} <{address.address}>"
    return address.address


def _format_list(addresses: Sequence[EmailAddress]) -> str:
    return ", ".join(_format_address(item) for item in addresses) or "(none)"


def build_classification_prompt(
    payload: ClassificationInput, categories: Sequence[Category]
) -> str:
    """Compose a JSON-only prompt asking the model to pick one category."""
    category_lines = "\n".join(
        f"- {category.name}: {category.description or 'no description'}"
        for category in categories
    )
    history = payload.sender_history
    if history is not None and history.previous_emails:
        history_line = (
            f"{history.previous_emails} earlier message(s); "
            f"previous categories: {', '.join(history.previous_categories) or 'none'}; "
            f"user corrections: {', '.join(history.user_overrides) or 'none'}"
        )
    else:
        history_line = "first message from this sender"
    attachments = ", ".join(payload.attachment_types) or "none"
    labels = ", ".join(payload.existing_labels) or "none"
    body = payload.body_preview or "(body withheld)"
    date = payload.date.isoformat() if payload.date else "(unknown)"

    header = dedent(
        """
        You are an email triage assistant. Classify the message into exactly one
        of the categories below. Respond strictly with JSON using this schema:
        {
          "category": string,        # one of the category names listed below
          "confidence": number,      # 0.0 - 1.0
          "alternates": [{"category": string, "confidence": number}, ...],
          "explanation": string,     # one sentence
          "factors": [{"factor": string, "signal": string, "weight": number}, ...],
          "suggested_action": "inbox" | "archive" | "trash" | "quarantine",
          "needs_human_review": boolean
        }

        Do not include any additional keys or prose outside the JSON object.
        """
    ).strip()

    details = "\n".join(
        [
            "Categories:",
            category_lines,
            "",
            f"Subject: {payload.subject or '(no subject)'}",
            f"From: {_format_address(payload.sender)}",
            f"To: {_format_list(payload.to)}",
            f"Cc: {_format_list(payload.cc)}",
            f"Date: {date}",
            f"Is reply: {'yes' if payload.is_reply else 'no'}",
            f"Attachments: {attachments}",
            f"Provider labels: {labels}",
            f"Sender history: {history_line}",
            "",
            "Body preview:",
            body,
        ]
    )
    return f"{header}\n\n{details}"


__all__ = ["build_classification_prompt"]
