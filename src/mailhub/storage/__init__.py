"""Persistence layer backed by SQLite."""

from .sqlite import SqliteStore, open_database

__all__ = ["SqliteStore", "open_database"]
