"""System categories seeded for every user."""

from __future__ import annotations

# (name, priority, description); lower priority wins ties.
DEFAULT_CATEGORIES: tuple[tuple[str, int, str], ...] = (
    ("Taxes", 10, "Tax-related documents and correspondence"),
    ("Legal", 12, "Legal documents and correspondence"),
    ("Banking - Critical", 15, "Important banking alerts and transactions"),
    ("Personal", 20, "Personal emails from contacts"),
    ("Vendors", 40, "Vendor communications and invoices"),
    ("Receipts", 50, "Purchase receipts and confirmations"),
    ("Newsletters", 70, "Subscribed newsletters"),
    ("Banking - Marketing", 80, "Bank promotions and marketing"),
    ("Sales", 85, "Sales pitches and cold outreach"),
    ("AI-Trash", 90, "AI-detected low-value messages"),
    ("Spam", 95, "Obvious spam"),
    ("Quarantine", 100, "Uncertain classifications awaiting review"),
)

__all__ = ["DEFAULT_CATEGORIES"]
