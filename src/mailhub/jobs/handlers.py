"""Dispatch queued jobs to the sync orchestrator and classification engine."""

from __future__ import annotations

import logging

from ..core.config import QueueSettings
from ..core.errors import ConfigurationError
from ..core.interfaces import JobQueue
from ..core.models import Job, JobLane
from ..intelligence.engine import ClassificationEngine
from ..sync.orchestrator import SyncOrchestrator

LOGGER = logging.getLogger(__name__)

TICK_SCHEDULE = "sync-tick"
TICK_PAYLOAD = {"kind": "tick"}


def register_schedules(queue: JobQueue, settings: QueueSettings) -> None:
    """Install the recurring due-account tick."""
    queue.schedule(TICK_SCHEDULE, JobLane.SYNC, dict(TICK_PAYLOAD), settings.tick_cron)


class JobHandlers:
    """Callable routing a job to its handler by ``payload["kind"]``."""

    def __init__(self, orchestrator: SyncOrchestrator, engine: ClassificationEngine) -> None:
        self._orchestrator = orchestrator
        self._engine = engine

    def __call__(self, job: Job) -> None:
        kind = job.payload.get("kind")
        LOGGER.debug("Running job %s (%s, attempt %s)", job.id, kind, job.attempts)
        if kind == "tick":
            self._orchestrator.tick()
        elif kind == "sync":
            self._orchestrator.sync_account(int(job.payload["account_id"]))
        elif kind == "classify":
            self._engine.classify_message(
                int(job.payload["message_id"]),
                force=bool(job.payload.get("force", False)),
            )
        else:
            raise ConfigurationError(f"Job {job.id} has unknown kind '{kind}'")


__all__ = ["JobHandlers", "TICK_PAYLOAD", "TICK_SCHEDULE", "register_schedules"]
