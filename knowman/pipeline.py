"""
Application root: one instance of every pipeline component, wired together.

Nothing in knowman is a module-level singleton. A Pipeline owns the store,
the broker, the queue set, the provider resolver, the orchestrator and the
worker pool; tests build their own Pipeline against a temporary directory.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from .broker import Broker, SQLiteBroker
from .config import KnowmanConfig, load_config
from .events import PipelineEvents, default_events
from .orchestrator import Orchestrator
from .providers.base import ProviderRegistry
from .providers.resolver import ProviderResolver
from .queues import QueueSet, default_queue_descriptors
from .store import PipelineStore
from .types import JobRecord, KnowledgeItem
from .workers import WorkerPool

logger = logging.getLogger(__name__)


class Pipeline:
    """
    Asynchronous enrichment pipeline.

    Example:
        with Pipeline() as pipeline:
            item, jobs = pipeline.capture("Hello. World.", "Greeting", "alice")
            pipeline.drain()
    """

    def __init__(
        self,
        data_dir: Optional[str | Path] = None,
        *,
        config: Optional[KnowmanConfig] = None,
        events: Optional[PipelineEvents] = None,
        registry: Optional[ProviderRegistry] = None,
        resolver: Optional[ProviderResolver] = None,
        broker: Optional[Broker] = None,
        ops_log: bool = True,
    ) -> None:
        """
        Open (or create) a pipeline in a data directory.

        Args:
            data_dir: Data directory. Uses KNOWMAN_DATA_DIR or ~/.knowman if
                not specified. Ignored when config is given.
            config: Pre-loaded configuration (skips environment/file loading)
            events: Event hooks; defaults to the logging listener
            registry: Backend registry for the resolver
            resolver: Injected provider resolver (tests)
            broker: Injected broker (skips the SQLite broker)
            ops_log: Attach the rotating operations log in the data directory
        """
        self.config = config or load_config(Path(data_dir) if data_dir else None)
        self.config.data_dir.mkdir(parents=True, exist_ok=True)

        for problem in (*self.config.load_errors, *self.config.ai.load_errors):
            logger.warning("Configuration problem: %s", problem)

        self._ops_log_handler = None
        if ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self.config.data_dir)

        self.events = events or default_events()
        self.store = PipelineStore(self.config.db_path)
        self.broker = broker or SQLiteBroker(self.config.broker_path)
        self.queues = QueueSet(
            self.broker, default_queue_descriptors(self.config.workers), self.events,
        )
        self.resolver = resolver or ProviderResolver(self.config.ai, registry, self.events)
        self.orchestrator = Orchestrator(self.store, self.queues)
        self.workers = WorkerPool(
            self.store, self.queues, self.resolver, self.events,
            job_timeout=self.config.processing_timeout_seconds,
            max_content_length=self.config.max_content_length,
        )

    def capture(
        self,
        content: str,
        title: str,
        user_id: str,
        *,
        url: Optional[str] = None,
        html: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> tuple[KnowledgeItem, list[JobRecord]]:
        """Store new content and enqueue its enrichment jobs."""
        return self.orchestrator.capture(
            content, title, user_id, url=url, html=html, metadata=metadata,
        )

    def test_provider(self, for_embeddings: bool = False) -> dict[str, Any]:
        """Health and identity of the main (or embedding) backend."""
        return self.resolver.test_provider(for_embeddings)

    def start(self) -> None:
        """Start background worker threads."""
        self.workers.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.workers.stop(timeout)

    def drain(self, max_wait: float = 60.0) -> int:
        """Process queued work on this thread until the queues are empty."""
        return self.workers.drain(max_wait)

    def close(self) -> None:
        """Stop workers and close the store and broker."""
        if self.workers.running:
            self.workers.stop(timeout=self.config.processing_timeout_seconds)
        self.broker.close()
        self.store.close()

        # Remove ops log handler to avoid handler accumulation
        if self._ops_log_handler is not None:
            logging.getLogger("knowman").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False
