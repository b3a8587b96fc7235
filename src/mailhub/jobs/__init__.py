"""Durable job queue, cron schedules and the worker pool."""

from .cron import CronError, CronExpression
from .handlers import JobHandlers, register_schedules
from .queue import SqliteJobQueue
from .ratelimit import TokenBucket
from .worker import WorkerPool

__all__ = [
    "CronError",
    "CronExpression",
    "JobHandlers",
    "SqliteJobQueue",
    "TokenBucket",
    "WorkerPool",
    "register_schedules",
]
