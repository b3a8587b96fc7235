"""Thread-based worker pool draining the sync and classification lanes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from ..core.config import QueueSettings
from ..core.errors import is_retryable
from ..core.models import Job, JobLane
from .queue import SqliteJobQueue
from .ratelimit import TokenBucket

LOGGER = logging.getLogger(__name__)

JobHandler = Callable[[Job], None]


class WorkerPool:
    """Run queued jobs on a fixed number of threads per lane.

    Sync jobs additionally draw from a token bucket. A separate scheduler
    thread turns due cron schedules into jobs.
    """

    def __init__(
        self,
        queue: SqliteJobQueue,
        handler: JobHandler,
        settings: QueueSettings,
        *,
        rate_limiter: TokenBucket | None = None,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._settings = settings
        self._rate_limiter = rate_limiter or TokenBucket(
            settings.sync_rate_limit, settings.sync_rate_period_seconds
        )
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stopping.is_set()

    def start(self) -> None:
        """Recover abandoned jobs and spawn lane and scheduler threads."""
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stopping.clear()
        self._queue.recover_stale()
        lanes = (
            (JobLane.SYNC, self._settings.sync_concurrency),
            (JobLane.CLASSIFICATION, self._settings.classification_concurrency),
        )
        for lane, concurrency in lanes:
            for index in range(concurrency):
                worker_id = f"{lane}-{index}"
                self._threads.append(
                    threading.Thread(
                        target=self._work,
                        args=(lane, worker_id),
                        name=worker_id,
                        daemon=True,
                    )
                )
        self._threads.append(
            threading.Thread(target=self._schedule_loop, name="scheduler", daemon=True)
        )
        for thread in self._threads:
            thread.start()
        LOGGER.info(
            "Worker pool started (sync=%s, classification=%s)",
            self._settings.sync_concurrency,
            self._settings.classification_concurrency,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Stop claiming new jobs and wait for in-flight ones to finish."""
        self._stopping.set()
        deadline = timeout if timeout is not None else self._settings.shutdown_timeout_seconds
        for thread in self._threads:
            thread.join(deadline)
            if thread.is_alive():
                LOGGER.warning("Worker %s did not finish before shutdown", thread.name)
        self._threads.clear()
        LOGGER.info("Worker pool stopped")

    def request_stop(self) -> None:
        """Signal-safe: ask workers to stop without joining them."""
        self._stopping.set()

    def wait(self) -> None:
        """Block until a stop has been requested."""
        self._stopping.wait()

    def run_once(self, lane: JobLane, worker_id: str) -> bool:
        """Claim and execute at most one job; return ``True`` if one ran."""
        took_token = False
        if lane is JobLane.SYNC:
            if not self._rate_limiter.try_acquire():
                return False
            took_token = True
        job = self._queue.claim(lane, worker_id)
        if job is None:
            if took_token:
                self._rate_limiter.refund()
            return False
        if took_token and job.payload.get("kind") != "sync":
            self._rate_limiter.refund()
        self._execute(job)
        return True

    def _execute(self, job: Job) -> None:
        try:
            self._handler(job)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Job %s (%s) failed: %s", job.id, job.lane, exc, exc_info=True)
            self._queue.fail(job, exc, retryable=is_retryable(exc))
        else:
            self._queue.complete(job)

    def _work(self, lane: JobLane, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                processed = self.run_once(lane, worker_id)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error(
                    "Worker %s hit an unexpected error: %s", worker_id, exc, exc_info=True
                )
                processed = False
            if not processed:
                self._stopping.wait(self._settings.poll_interval_seconds)

    def _schedule_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                fired = self._queue.fire_due_schedules()
                if fired:
                    LOGGER.debug("Scheduler enqueued job(s) %s", fired)
                self._queue.recover_stale()
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error("Scheduler failed to fire schedules: %s", exc, exc_info=True)
            self._stopping.wait(self._settings.poll_interval_seconds)


__all__ = ["JobHandler", "WorkerPool"]
