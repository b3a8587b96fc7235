"""Per-account synchronization orchestration."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from ..core.config import SyncSettings
from ..core.datetime_utils import utcnow
from ..core.errors import (
    AccountNotFoundError,
    AuthError,
    ConfigurationError,
    DecryptionError,
    SyncLeaseLostError,
)
from ..core.interfaces import JobQueue, ProviderAdapter, Store
from ..core.models import (
    Account,
    AccountStatus,
    Folder,
    IngestReport,
    JobLane,
    SyncOutcome,
    SyncStatus,
)
from ..ingestion.pipeline import IngestionPipeline
from ..security.vault import CredentialVault
from ..transport.factory import AdapterRegistry

LOGGER = logging.getLogger(__name__)


def sync_job(account_id: int) -> tuple[dict[str, object], str]:
    """Return the payload and dedupe key for an account's sync job."""
    return {"kind": "sync", "account_id": account_id}, f"sync:{account_id}"


def classify_job(message_id: int) -> tuple[dict[str, object], str]:
    """Return the payload and dedupe key for a message's classification job."""
    return {"kind": "classify", "message_id": message_id}, f"classify:{message_id}"


class SyncOrchestrator:
    """Decide which accounts are due and run one sync per account at a time.

    Mutual exclusion per account is enforced by a lease stored with the
    account row, so it holds across worker threads and processes.
    """

    def __init__(
        self,
        store: Store,
        queue: JobQueue,
        vault: CredentialVault,
        adapters: AdapterRegistry,
        pipeline: IngestionPipeline,
        settings: SyncSettings,
        *,
        owner: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        # pylint: disable=too-many-arguments
        self._store = store
        self._queue = queue
        self._vault = vault
        self._adapters = adapters
        self._pipeline = pipeline
        self._settings = settings
        self._owner = owner or f"sync-{uuid.uuid4().hex[:12]}"
        self._clock = clock

    def is_due(self, account: Account, now: datetime) -> bool:
        """Return ``True`` when the account's sync interval has elapsed."""
        if not account.is_enabled or account.status is not AccountStatus.ACTIVE:
            return False
        if account.last_synced_at is None:
            return True
        interval = timedelta(minutes=account.sync_interval_minutes)
        return now - account.last_synced_at >= interval

    def due_accounts(self, now: datetime) -> list[Account]:
        return [
            account
            for account in self._store.list_accounts(enabled_only=True)
            if self.is_due(account, now)
        ]

    def tick(self, now: datetime | None = None) -> list[int]:
        """Enqueue a sync job for every due account; return their ids."""
        current = now or self._clock()
        scheduled: list[int] = []
        for account in self.due_accounts(current):
            if self._store.has_active_lease(account.id, now=current):
                LOGGER.debug("Account %s is already syncing; not scheduling", account.id)
                continue
            if self.request_sync(account.id) is not None:
                scheduled.append(account.id)
        if scheduled:
            LOGGER.info("Scheduled sync for %s account(s)", len(scheduled))
        return scheduled

    def request_sync(self, account_id: int) -> int | None:
        """Queue a sync for one account unless one is already pending."""
        payload, dedupe_key = sync_job(account_id)
        return self._queue.enqueue(JobLane.SYNC, payload, dedupe_key=dedupe_key)

    def sync_account(self, account_id: int) -> SyncOutcome:
        """Run one sync for ``account_id`` under its lease.

        Returns a ``SKIPPED`` outcome when another worker holds the lease.
        Failures are recorded on the account and re-raised so the job queue
        can retry or dead-letter them.
        """
        account = self._store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} does not exist")
        if not account.is_enabled or account.status is not AccountStatus.ACTIVE:
            LOGGER.info(
                "Skipping sync for account %s (enabled=%s, status=%s)",
                account.id,
                account.is_enabled,
                account.status,
            )
            return SyncOutcome(account_id=account.id, status=SyncStatus.SKIPPED)

        started = self._clock()
        lease_owner = f"{self._owner}:{uuid.uuid4().hex[:8]}"
        if not self._store.acquire_sync_lease(
            account.id,
            lease_owner,
            now=started,
            ttl_seconds=self._settings.lease_seconds,
        ):
            LOGGER.info("Account %s is locked by another sync; skipping", account.id)
            return SyncOutcome(account_id=account.id, status=SyncStatus.SKIPPED)

        try:
            return self._run_locked(account, started, lease_owner)
        finally:
            self._store.release_sync_lease(account.id, lease_owner)

    def reactivate_account(self, account_id: int) -> None:
        """Resume syncing after the user fixed the account's credentials."""
        self._store.reactivate_account(account_id)
        LOGGER.info("Account %s reactivated", account_id)

    def _run_locked(
        self, account: Account, started: datetime, lease_owner: str
    ) -> SyncOutcome:
        run_id = self._store.start_sync_run(account.id, started)
        LOGGER.info(
            "Starting %s sync for account %s (cursor=%s)",
            account.provider,
            account.id,
            account.sync_cursor,
        )
        report: IngestReport | None = None
        try:
            report, cursor_after = self._fetch_and_ingest(account, started, lease_owner)
            if report.error is not None:
                raise report.error
            self._renew_lease(account.id, lease_owner)
        except SyncLeaseLostError as exc:
            ingested = report.ingested_ids if report is not None else []
            self._enqueue_classification(ingested)
            self._store.finish_sync_run(
                run_id,
                status=str(SyncStatus.FAILED),
                new_messages=len(ingested),
                completed_at=self._clock(),
                error=str(exc),
            )
            LOGGER.warning("Abandoning sync for account %s: %s", account.id, exc)
            raise
        except Exception as exc:
            ingested = report.ingested_ids if report is not None else []
            self._enqueue_classification(ingested)
            cursor = (
                report.last_watermark if report is not None else None
            ) or account.sync_cursor
            self._record_failure(account, run_id, cursor, exc, len(ingested))
            raise

        cursor = cursor_after or report.last_watermark or account.sync_cursor
        finished = self._clock()
        self._store.record_sync_success(account.id, cursor, finished)
        self._store.finish_sync_run(
            run_id,
            status=str(SyncStatus.COMPLETED),
            new_messages=len(report.ingested_ids),
            completed_at=finished,
        )
        self._enqueue_classification(report.ingested_ids)
        if self._settings.prune_outside_window:
            pruned = self._store.prune_messages(
                account.id, older_than=finished - self._lookback()
            )
            if pruned:
                LOGGER.info("Pruned %s message(s) for account %s", pruned, account.id)
        LOGGER.info(
            "Sync completed for account %s: %s new message(s)",
            account.id,
            len(report.ingested_ids),
        )
        return SyncOutcome(
            account_id=account.id,
            status=SyncStatus.COMPLETED,
            new_message_ids=tuple(report.ingested_ids),
            cursor=cursor,
        )

    def _fetch_and_ingest(
        self, account: Account, started: datetime, lease_owner: str
    ) -> tuple[IngestReport, str | None]:
        adapter = self._adapters.build(account)
        try:
            folders: dict[str, Folder] = {}
            for normalized in adapter.list_folders():
                folder = self._store.upsert_folder(account.id, normalized)
                folders[folder.provider_folder_id] = folder
            since = started - self._lookback()
            batch = adapter.fetch_since(account.sync_cursor, since=since)
            report = self._pipeline.ingest(
                account,
                batch.chunks,
                adapter,
                folders,
                not_before=since if account.sync_cursor is None else None,
                heartbeat=lambda: self._renew_lease(account.id, lease_owner),
            )
            return report, batch.cursor_after
        finally:
            try:
                self._persist_refreshed_tokens(account, adapter)
            finally:
                adapter.close()

    def _renew_lease(self, account_id: int, lease_owner: str) -> None:
        if not self._store.renew_sync_lease(
            account_id,
            lease_owner,
            now=self._clock(),
            ttl_seconds=self._settings.lease_seconds,
        ):
            raise SyncLeaseLostError(
                f"Sync lease for account {account_id} expired or was taken over"
            )

    def _persist_refreshed_tokens(self, account: Account, adapter: ProviderAdapter) -> None:
        tokens = adapter.refreshed_credentials()
        if tokens is None:
            return
        self._store.update_account_tokens(
            account.id,
            access_token_enc=self._vault.encrypt(tokens.access_token),
            refresh_token_enc=(
                self._vault.encrypt(tokens.refresh_token)
                if tokens.refresh_token
                else None
            ),
            expires_at=tokens.expires_at,
        )
        LOGGER.info("Stored refreshed OAuth tokens for account %s", account.id)

    def _enqueue_classification(self, message_ids: list[int]) -> None:
        for message_id in message_ids:
            payload, dedupe_key = classify_job(message_id)
            self._queue.enqueue(
                JobLane.CLASSIFICATION, payload, dedupe_key=dedupe_key
            )

    def _record_failure(
        self,
        account: Account,
        run_id: int,
        cursor: str | None,
        exc: BaseException,
        ingested: int,
    ) -> None:
        message = f"{type(exc).__name__}: {exc}"
        failures = self._store.record_sync_failure(account.id, cursor, message)
        if isinstance(exc, AuthError):
            self._store.set_account_status(
                account.id, AccountStatus.NEEDS_REAUTH, message
            )
        elif isinstance(exc, (DecryptionError, ConfigurationError)):
            self._store.set_account_status(
                account.id, AccountStatus.CREDENTIALS_INVALID, message
            )
        self._store.finish_sync_run(
            run_id,
            status=str(SyncStatus.FAILED),
            new_messages=ingested,
            completed_at=self._clock(),
            error=message,
        )
        if failures >= self._settings.failure_alert_threshold:
            LOGGER.error(
                "Account %s has failed %s consecutive syncs: %s",
                account.id,
                failures,
                message,
            )
        else:
            LOGGER.warning(
                "Sync failed for account %s (%s ingested before failure): %s",
                account.id,
                ingested,
                message,
            )

    def _lookback(self) -> timedelta:
        return timedelta(days=self._settings.lookback_days)


__all__ = ["SyncOrchestrator", "classify_job", "sync_job"]
