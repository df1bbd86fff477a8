"""
Shared pytest fixtures for knowman tests.

Everything runs against temporary SQLite files and the offline backend;
no network, no API keys.
"""

import dataclasses
import threading
import time
from types import SimpleNamespace

import pytest

from knowman.broker import SQLiteBroker
from knowman.config import AIConfig, KnowmanConfig
from knowman.errors import ProviderError
from knowman.events import PipelineEvents
from knowman.orchestrator import Orchestrator
from knowman.providers.base import EmbeddingResult
from knowman.providers.offline import OfflineProvider
from knowman.queues import BackoffPolicy, QueueSet, default_queue_descriptors
from knowman.store import PipelineStore
from knowman.workers import WorkerPool


_AI_ENV_VARS = (
    "AI_PROVIDER", "EMBEDDING_PROVIDER", "OPENAI_API_KEY", "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY", "LLAMACPP_BASE_URL", "PROCESSING_WORKERS",
    "PROCESSING_TIMEOUT", "MAX_CONTENT_LENGTH", "KNOWMAN_VERBOSE",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Keep the developer's environment and ~/.knowman out of tests."""
    for name in _AI_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KNOWMAN_DATA_DIR", str(tmp_path / "knowman-home"))


class FlakyProvider(OfflineProvider):
    """Offline backend whose summarize() fails a set number of times first."""

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.summarize_calls = 0

    def summarize(self, content, *, title=None, max_length=500):
        self.summarize_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ProviderError("rate limited", provider="flaky")
        return super().summarize(content, title=title, max_length=max_length)


class SlowProvider(OfflineProvider):
    """Offline backend whose summarize() blocks until released."""

    def __init__(self, delay: float = 1.0):
        self.delay = delay
        self.release = threading.Event()

    def summarize(self, content, *, title=None, max_length=500):
        self.release.wait(self.delay)
        return super().summarize(content, title=title, max_length=max_length)


class FixedVectorProvider(OfflineProvider):
    """Returns a vector of a chosen length regardless of input."""

    def __init__(self, length, declared=384):
        self.length = length
        self.embedding_dimension = declared

    def generate_embeddings(self, content, *, title=None):
        return EmbeddingResult(vector=[1] * self.length, model="fixed")


class StubResolver:
    """Fixed main/embedding backends, no configuration involved."""

    def __init__(self, main=None, embedding=None):
        self.main = main or OfflineProvider()
        self.embedding = embedding or self.main
        self.fallback_reasons = {}


def fast_queue_descriptors():
    """Default queues with 1ms retry delays so tests don't sleep."""
    return {
        name: dataclasses.replace(
            d, backoff=BackoffPolicy(d.backoff.attempts, 1), concurrency=1,
        )
        for name, d in default_queue_descriptors(1).items()
    }


class RecordingListener:
    """Event listener that remembers (event, payload) pairs."""

    def __init__(self):
        self.events = []

    def __call__(self, event, payload):
        self.events.append((event, dict(payload)))

    def names(self):
        return [e for e, _ in self.events]

    def of(self, event):
        return [p for e, p in self.events if e == event]


@pytest.fixture
def store(tmp_path):
    """Fresh PipelineStore in a temporary directory."""
    s = PipelineStore(tmp_path / "knowman.db")
    yield s
    s.close()


@pytest.fixture
def broker(tmp_path):
    """Fresh SQLiteBroker in a temporary directory."""
    b = SQLiteBroker(tmp_path / "queue.db")
    yield b
    b.close()


@pytest.fixture
def offline_config(tmp_path):
    return KnowmanConfig(data_dir=tmp_path / "data", ai=AIConfig(provider="offline"))


@pytest.fixture
def pipeline(offline_config):
    """Full Pipeline on the offline backend, without the ops log file."""
    from knowman.pipeline import Pipeline

    p = Pipeline(config=offline_config, ops_log=False)
    yield p
    p.close()


def make_harness(tmp_path, main=None, embedding=None, job_timeout=5.0):
    """
    Wire store, broker, queues, orchestrator and workers by hand.

    Retry delays are shortened to 1ms and backends injected directly.
    """
    events = PipelineEvents()
    listener = RecordingListener()
    events.on("*", listener)
    store = PipelineStore(tmp_path / "knowman.db")
    broker = SQLiteBroker(tmp_path / "queue.db")
    queues = QueueSet(broker, fast_queue_descriptors(), events)
    resolver = StubResolver(main, embedding)
    workers = WorkerPool(
        store, queues, resolver, events,
        job_timeout=job_timeout, poll_timeout=0.05, stall_check_interval=60.0,
    )
    return SimpleNamespace(
        store=store,
        broker=broker,
        queues=queues,
        resolver=resolver,
        events=events,
        listener=listener,
        orchestrator=Orchestrator(store, queues),
        workers=workers,
    )


@pytest.fixture
def harness(tmp_path):
    """Hand-wired pipeline on the offline backend."""
    h = make_harness(tmp_path)
    yield h
    h.broker.close()
    h.store.close()


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll predicate until true or timeout; returns the last result."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
