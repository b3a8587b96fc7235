"""Push fetched provider chunks into the canonical store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime

from ..core.datetime_utils import ensure_utc
from ..core.errors import PayloadParseError
from ..core.interfaces import ProviderAdapter, Store
from ..core.models import (
    Account,
    Folder,
    FolderType,
    IngestReport,
    MessageChunk,
    NormalizedFolder,
)

LOGGER = logging.getLogger(__name__)


class IngestionPipeline:
    """Normalize, dedupe, thread and persist messages one chunk at a time.

    Chunks are processed in the order the adapter yields them. After each
    durable insert the chunk's watermark becomes the safe resume point, so a
    failure part-way through a batch never loses the messages already stored.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    def ingest(
        self,
        account: Account,
        chunks: Iterable[MessageChunk],
        adapter: ProviderAdapter,
        folders: Mapping[str, Folder],
        *,
        not_before: datetime | None = None,
        heartbeat: Callable[[], None] | None = None,
    ) -> IngestReport:
        """Ingest ``chunks`` and report what was stored.

        Unparseable payloads are logged and skipped. Any other error stops the
        batch and is returned on the report rather than raised, so the caller
        can still persist the partial cursor. ``heartbeat`` runs before every
        chunk; raising from it stops the batch the same way.
        """
        report = IngestReport()
        threshold = ensure_utc(not_before)
        try:
            for chunk in chunks:
                if heartbeat is not None:
                    heartbeat()
                try:
                    message = adapter.normalize(chunk)
                except PayloadParseError as exc:
                    LOGGER.warning(
                        "Skipping unparseable message %s for account %s: %s",
                        chunk.provider_message_id,
                        account.id,
                        exc,
                    )
                    report.parse_failures += 1
                    self._advance(report, chunk)
                    continue

                received = ensure_utc(message.date_received)
                if threshold is not None and received is not None and received < threshold:
                    LOGGER.debug(
                        "Message %s predates the lookback window; skipping",
                        chunk.provider_message_id,
                    )
                    self._advance(report, chunk)
                    continue

                if not account.privacy_level.stores_body:
                    message.body_text = None
                    message.body_html = None
                    message.body_preview = None
                folder = self._folder_for(account, chunk, folders)
                message_id = self._store.ingest_message(account, message, folder.id)
                if message_id is None:
                    report.duplicates += 1
                else:
                    report.ingested_ids.append(message_id)
                self._advance(report, chunk)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Ingestion stopped for account %s after %s message(s): %s",
                account.id,
                len(report.ingested_ids),
                exc,
            )
            report.error = exc

        LOGGER.info(
            "Ingested %s new message(s) for account %s "
            "(duplicates=%s, parse_failures=%s)",
            len(report.ingested_ids),
            account.id,
            report.duplicates,
            report.parse_failures,
        )
        return report

    @staticmethod
    def _advance(report: IngestReport, chunk: MessageChunk) -> None:
        if chunk.watermark is not None:
            report.last_watermark = chunk.watermark

    def _folder_for(
        self,
        account: Account,
        chunk: MessageChunk,
        folders: Mapping[str, Folder],
    ) -> Folder:
        if chunk.folder_id is not None and chunk.folder_id in folders:
            return folders[chunk.folder_id]
        inbox = next(
            (item for item in folders.values() if item.folder_type is FolderType.INBOX),
            None,
        )
        if inbox is None:
            inbox = self._store.find_folder(account.id, FolderType.INBOX)
        if inbox is None:
            inbox = self._store.upsert_folder(
                account.id,
                NormalizedFolder(
                    provider_folder_id="INBOX",
                    name="Inbox",
                    path="INBOX",
                    folder_type=FolderType.INBOX,
                    is_system=True,
                ),
            )
        return inbox


__all__ = ["IngestionPipeline"]
