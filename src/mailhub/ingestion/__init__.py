"""Ingestion pipeline components."""

from .parser import EmailParser, build_preview, strip_html
from .pipeline import IngestionPipeline
from .threads import NO_SUBJECT_KEY, reference_ids, subject_key

__all__ = [
    "EmailParser",
    "IngestionPipeline",
    "NO_SUBJECT_KEY",
    "build_preview",
    "reference_ids",
    "strip_html",
    "subject_key",
]
