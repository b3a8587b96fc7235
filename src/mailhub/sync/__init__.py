"""Account synchronization."""

from .orchestrator import SyncOrchestrator, classify_job, sync_job

__all__ = ["SyncOrchestrator", "classify_job", "sync_job"]
