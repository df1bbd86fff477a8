"""
knowman: asynchronous enrichment pipeline for captured knowledge.

Captured content (web pages, pasted text) becomes a knowledge item that
background workers enrich with extracted article text, a summary, tags
and an embedding. Each stage runs as a durable job with its own queue,
priority and retry policy, and calls one of several interchangeable AI
backends (OpenAI, Anthropic, Gemini, llama.cpp, or a deterministic
offline backend used whenever no other is configured).

Quick Start:
    from knowman import Pipeline

    with Pipeline() as pipeline:  # uses ~/.knowman/
        item, jobs = pipeline.capture("Hello. World.", "Greeting", "alice")
        pipeline.drain()

CLI Usage:
    knowman capture "Some text." --title "Notes" --process
    knowman work
    knowman status

Environment Variables:
    KNOWMAN_DATA_DIR     - Override default data directory
    AI_PROVIDER          - openai | anthropic | gemini | llamacpp | offline
    EMBEDDING_PROVIDER   - Backend for embeddings (defaults to AI_PROVIDER)
    PROCESSING_WORKERS   - Worker threads per queue (tagging gets twice this)
    PROCESSING_TIMEOUT   - Per-job timeout in milliseconds
"""

from .config import AIConfig, KnowmanConfig, load_config
from .errors import (
    KnowmanError,
    ProviderError,
    PermanentJobError,
    JobNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from .pipeline import Pipeline
from .types import JobRecord, JobStatus, JobType, KnowledgeItem, ItemStatus

__version__ = "0.1.0"
__all__ = [
    "Pipeline",
    "KnowmanConfig",
    "AIConfig",
    "load_config",
    "KnowledgeItem",
    "JobRecord",
    "JobStatus",
    "JobType",
    "ItemStatus",
    "KnowmanError",
    "ProviderError",
    "PermanentJobError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "ValidationError",
]
