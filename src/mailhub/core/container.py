"""Simple service container for dependency management."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from .config import AppSettings

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


class ServiceContainer:
    """Minimal dependency container with lazy singleton semantics."""

    def __init__(self) -> None:
        """Initialise container storage."""
        self._factories: dict[str, Callable[[ServiceContainer], Any]] = {}
        self._instances: dict[str, Any] = {}

    def register(self, key: str, factory: Callable[[ServiceContainer], T]) -> None:
        """Register a factory under a given key."""
        self._factories[key] = factory

    def resolve(self, key: str) -> Any:
        """Resolve a dependency by key, invoking its factory once."""
        if key in self._instances:
            return self._instances[key]
        if key not in self._factories:
            msg = f"Service '{key}' is not registered"
            raise KeyError(msg)
        instance = self._factories[key](self)
        self._instances[key] = instance
        return instance

    def close(self) -> None:
        """Close resolved services that hold connections, newest first."""
        for key in reversed(list(self._instances)):
            close = getattr(self._instances[key], "close", None)
            if callable(close):
                LOGGER.debug("Closing service %s", key)
                close()
        self.clear()

    def clear(self) -> None:
        """Clear cached singleton instances."""
        self._instances.clear()


def build_container(settings: AppSettings) -> ServiceContainer:
    """Wire the engine's services from ``settings``."""
    # pylint: disable=import-outside-toplevel
    from ..ingestion.pipeline import IngestionPipeline
    from ..intelligence.engine import ClassificationEngine
    from ..intelligence.llm import build_llm_client
    from ..intelligence.scorer import LLMClassifier
    from ..jobs.handlers import JobHandlers
    from ..jobs.queue import SqliteJobQueue
    from ..jobs.worker import WorkerPool
    from ..security.vault import CredentialVault
    from ..storage.sqlite import SqliteStore
    from ..sync.orchestrator import SyncOrchestrator
    from ..transport.factory import build_default_registry

    container = ServiceContainer()
    container.register("settings", lambda _: settings)
    container.register("vault", lambda _: CredentialVault.from_settings(settings.vault))
    container.register("store", lambda _: SqliteStore(settings.storage))
    container.register(
        "queue", lambda _: SqliteJobQueue(settings.storage, settings.queue)
    )
    container.register(
        "adapters", lambda c: build_default_registry(c.resolve("vault"), settings)
    )
    container.register("pipeline", lambda c: IngestionPipeline(c.resolve("store")))
    container.register(
        "orchestrator",
        lambda c: SyncOrchestrator(
            c.resolve("store"),
            c.resolve("queue"),
            c.resolve("vault"),
            c.resolve("adapters"),
            c.resolve("pipeline"),
            settings.sync,
        ),
    )
    container.register("llm", lambda _: build_llm_client(settings.llm))
    container.register("classifier", lambda c: LLMClassifier(c.resolve("llm")))
    container.register(
        "engine",
        lambda c: ClassificationEngine(
            c.resolve("store"), c.resolve("classifier"), settings.classification
        ),
    )
    container.register(
        "handlers",
        lambda c: JobHandlers(c.resolve("orchestrator"), c.resolve("engine")),
    )
    container.register(
        "worker_pool",
        lambda c: WorkerPool(c.resolve("queue"), c.resolve("handlers"), settings.queue),
    )
    return container


__all__ = ["ServiceContainer", "build_container"]
