"""Durable SQLite-backed job queue with retries and cron schedules."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from types import TracebackType
from typing import Any

from ..core.config import QueueSettings, StorageSettings
from ..core.datetime_utils import serialize_datetime, utcnow
from ..core.models import Job, JobLane, JobStatus
from ..storage.sqlite import open_database
from .cron import CronExpression

LOGGER = logging.getLogger(__name__)


class SqliteJobQueue:
    """Two-lane queue with at-least-once delivery.

    Jobs survive restarts: anything left ``running`` by a crashed worker is
    returned to the queue by :meth:`recover_stale`. A ``dedupe_key`` allows at
    most one queued or running job per key.
    """

    def __init__(
        self,
        settings: StorageSettings,
        queue_settings: QueueSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = queue_settings
        self._clock = clock
        self._lock = threading.RLock()
        self._connection = open_database(settings)

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteJobQueue:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def enqueue(
        self,
        lane: JobLane,
        payload: dict[str, Any],
        *,
        delay_seconds: float = 0.0,
        max_attempts: int | None = None,
        dedupe_key: str | None = None,
    ) -> int | None:
        """Queue a job; returns ``None`` when ``dedupe_key`` is already pending."""
        now = self._clock()
        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                INSERT OR IGNORE INTO jobs (
                    lane, payload, status, attempts, max_attempts, run_at,
                    dedupe_key, created_at
                ) VALUES (?, ?, 'queued', 0, ?, ?, ?, ?)
                """,
                (
                    str(lane),
                    json.dumps(payload, sort_keys=True),
                    max_attempts or self._settings.max_attempts,
                    serialize_datetime(now + timedelta(seconds=delay_seconds)),
                    dedupe_key,
                    serialize_datetime(now),
                ),
            )
        if cursor.rowcount == 0:
            LOGGER.debug("Job %s already pending; not enqueued again", dedupe_key)
            return None
        return int(cursor.lastrowid or 0)

    def claim(self, lane: JobLane, worker_id: str) -> Job | None:
        """Atomically move the oldest runnable job in ``lane`` to running."""
        now = serialize_datetime(self._clock())
        with self._lock, self._connection:
            row = self._connection.execute(
                """
                UPDATE jobs
                SET status = 'running', attempts = attempts + 1,
                    locked_by = ?, claimed_at = ?
                WHERE status = 'queued' AND id = (
                    SELECT id FROM jobs
                    WHERE lane = ? AND status = 'queued' AND run_at <= ?
                    ORDER BY run_at, id
                    LIMIT 1
                )
                RETURNING *
                """,
                (worker_id, now, str(lane), now),
            ).fetchone()
        return _row_to_job(row) if row else None

    def complete(self, job: Job) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE jobs
                SET status = 'completed', locked_by = NULL, finished_at = ?
                WHERE id = ?
                """,
                (serialize_datetime(self._clock()), job.id),
            )
            self._trim(job.lane, JobStatus.COMPLETED, self._settings.keep_completed)

    def fail(self, job: Job, error: BaseException, *, retryable: bool) -> None:
        """Requeue with exponential backoff, or dead-letter the job."""
        message = f"{type(error).__name__}: {error}"
        now = self._clock()
        if retryable and job.attempts < job.max_attempts:
            delay = self.backoff_seconds(job.attempts)
            LOGGER.warning(
                "Job %s (%s) failed on attempt %s/%s; retrying in %.0fs: %s",
                job.id,
                job.lane,
                job.attempts,
                job.max_attempts,
                delay,
                message,
            )
            with self._lock, self._connection:
                self._connection.execute(
                    """
                    UPDATE jobs
                    SET status = 'queued', locked_by = NULL, run_at = ?, last_error = ?
                    WHERE id = ?
                    """,
                    (
                        serialize_datetime(now + timedelta(seconds=delay)),
                        message,
                        job.id,
                    ),
                )
            return

        LOGGER.error(
            "Job %s (%s) moved to dead-letter after %s attempt(s): %s",
            job.id,
            job.lane,
            job.attempts,
            message,
        )
        with self._lock, self._connection:
            self._connection.execute(
                """
                UPDATE jobs
                SET status = 'dead', locked_by = NULL, last_error = ?, finished_at = ?
                WHERE id = ?
                """,
                (message, serialize_datetime(now), job.id),
            )
            self._trim(job.lane, JobStatus.DEAD, self._settings.keep_dead)

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before retry number ``attempts`` (1-based), capped."""
        exponent = max(attempts - 1, 0)
        return min(
            self._settings.backoff_base_seconds * (2**exponent),
            self._settings.backoff_max_seconds,
        )

    def _trim(self, lane: JobLane, status: JobStatus, keep: int) -> None:
        """Delete all but the newest ``keep`` finished jobs; caller holds the lock."""
        self._connection.execute(
            """
            DELETE FROM jobs
            WHERE lane = ? AND status = ? AND id NOT IN (
                SELECT id FROM jobs
                WHERE lane = ? AND status = ?
                ORDER BY id DESC
                LIMIT ?
            )
            """,
            (str(lane), str(status), str(lane), str(status), keep),
        )

    def recover_stale(self, *, older_than_seconds: float | None = None) -> int:
        """Requeue running jobs claimed too long ago to still be alive.

        Jobs claimed within ``older_than_seconds`` (``stale_after_seconds`` by
        default) are left alone; they may belong to another live worker.
        """
        age = (
            self._settings.stale_after_seconds
            if older_than_seconds is None
            else older_than_seconds
        )
        cutoff = serialize_datetime(self._clock() - timedelta(seconds=age))
        with self._lock, self._connection:
            cursor = self._connection.execute(
                """
                UPDATE jobs SET status = 'queued', locked_by = NULL, claimed_at = NULL
                WHERE status = 'running' AND (claimed_at IS NULL OR claimed_at <= ?)
                """,
                (cutoff,),
            )
        if cursor.rowcount:
            LOGGER.warning("Requeued %s job(s) abandoned by a previous run", cursor.rowcount)
        return cursor.rowcount

    def get_job(self, job_id: int) -> Job | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def counts(self) -> dict[tuple[str, str], int]:
        """Return job counts keyed by (lane, status)."""
        with self._lock:
            rows = self._connection.execute(
                "SELECT lane, status, COUNT(*) AS total FROM jobs GROUP BY lane, status"
            ).fetchall()
        return {(row["lane"], row["status"]): int(row["total"]) for row in rows}

    # Schedules ---------------------------------------------------------------
    def schedule(
        self, name: str, lane: JobLane, payload: dict[str, Any], cron: str
    ) -> None:
        """Register a recurring job; re-registering keeps its next fire time."""
        expression = CronExpression.parse(cron)
        next_run = serialize_datetime(expression.next_after(self._clock()))
        with self._lock, self._connection:
            self._connection.execute(
                """
                INSERT INTO job_schedules (name, lane, payload, cron, next_run_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    lane = excluded.lane,
                    payload = excluded.payload,
                    next_run_at = CASE
                        WHEN job_schedules.cron = excluded.cron
                        THEN job_schedules.next_run_at
                        ELSE excluded.next_run_at
                    END,
                    cron = excluded.cron
                """,
                (name, str(lane), json.dumps(payload, sort_keys=True), cron, next_run),
            )

    def fire_due_schedules(self, now: datetime | None = None) -> list[int]:
        """Enqueue every schedule whose fire time has passed.

        Missed fire times collapse into a single job.
        """
        current = now or self._clock()
        with self._lock:
            rows = self._connection.execute(
                "SELECT * FROM job_schedules WHERE next_run_at <= ?",
                (serialize_datetime(current),),
            ).fetchall()
        enqueued: list[int] = []
        for row in rows:
            job_id = self.enqueue(
                JobLane(row["lane"]),
                json.loads(row["payload"]),
                dedupe_key=f"schedule:{row['name']}",
            )
            if job_id is not None:
                enqueued.append(job_id)
            following = CronExpression.parse(row["cron"]).next_after(current)
            with self._lock, self._connection:
                self._connection.execute(
                    "UPDATE job_schedules SET next_run_at = ? WHERE name = ?",
                    (serialize_datetime(following), row["name"]),
                )
        return enqueued

    def close(self) -> None:
        with self._lock:
            self._connection.close()


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        lane=JobLane(row["lane"]),
        payload=json.loads(row["payload"]),
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        run_at=datetime.fromisoformat(row["run_at"]),
        dedupe_key=row["dedupe_key"],
        last_error=row["last_error"],
    )


__all__ = ["SqliteJobQueue"]
