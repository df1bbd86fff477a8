"""
Data types for the enrichment pipeline.

Knowledge items are the captured content; job records track one stage's
execution against one item. Both are plain dataclasses so they can be
passed between the store, the broker and the workers without ORM baggage.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> str:
    """Current UTC timestamp in ISO format with microseconds.

    All timestamps in knowman are UTC. Microseconds are kept so that
    started/completed stamps of fast jobs still order correctly.
    """
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime."""
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    """Opaque unique identifier for items and jobs."""
    return uuid.uuid4().hex


class JobType(str, Enum):
    """Pipeline stages. The value doubles as the queue name."""
    EXTRACTION = "extraction"
    SUMMARIZATION = "summarization"
    TAGGING = "tagging"
    EMBEDDING = "embedding"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Legal job transitions. failed -> pending is only reachable through an
# explicit retry; pending -> failed only through cancel.
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({
        JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
}

CANCELLED_MESSAGE = "Cancelled by user"


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether a job may move from current to target status."""
    return target in JOB_TRANSITIONS[JobStatus(current)]


class ItemStatus(str, Enum):
    CAPTURED = "captured"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ARCHIVED = "archived"
    DELETED = "deleted"


# Forward-only ordering for the pipeline-managed part of the lifecycle.
# archived/deleted are set externally and never touched by stages.
ITEM_STATUS_RANK = {
    ItemStatus.CAPTURED: 0,
    ItemStatus.PROCESSING: 1,
    ItemStatus.PROCESSED: 2,
}


def statuses_before(target: ItemStatus) -> list[str]:
    """Pipeline statuses that may advance to target (strictly earlier)."""
    rank = ITEM_STATUS_RANK[target]
    return [s.value for s, r in ITEM_STATUS_RANK.items() if r < rank]


class MergeStrategy(str, Enum):
    """How a stage's output is written onto the item.

    REPLACE overwrites the stage's fields, so re-running a stage is
    idempotent. UNION_SET merges list fields with what is already stored,
    preserving first-seen order (tags are additive enrichment).
    """
    REPLACE = "replace"
    UNION_SET = "union_set"


def union_preserving_order(*groups) -> list[str]:
    """Concatenate string groups, dropping duplicates after first sight."""
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for value in group or ():
            if value not in seen:
                seen.add(value)
                merged.append(value)
    return merged


@dataclass
class KnowledgeItem:
    """
    A captured piece of content, enriched in place by pipeline stages.

    Attributes:
        id: Opaque unique identifier
        user_id: Owning user
        title: Display title (may be replaced by extraction)
        content: Best-known text content
        source_type: "webpage" when captured from a URL, else "document"
        summary: Set by the summarization stage
        tags: Ordered, de-duplicated tag names
        embedding: Vector from the embedding stage
        status: Coarse lifecycle status (see ItemStatus)
    """
    id: str
    user_id: str
    title: str
    content: str
    source_type: str = "document"
    source_url: Optional[str] = None
    raw_content: Optional[str] = None
    summary: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    embedding: Optional[list[float]] = None
    importance_score: float = 0.5
    readability_score: float = 0.5
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = ItemStatus.CAPTURED.value
    captured_at: str = ""
    processed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "content": self.content,
            "source_type": self.source_type,
            "source_url": self.source_url,
            "summary": self.summary,
            "tags": list(self.tags),
            "embedding_size": len(self.embedding) if self.embedding else 0,
            "importance_score": self.importance_score,
            "readability_score": self.readability_score,
            "metadata": dict(self.metadata),
            "status": self.status,
            "captured_at": self.captured_at,
            "processed_at": self.processed_at,
        }


@dataclass
class JobRecord:
    """
    Durable unit of work: one stage executed against one knowledge item.

    The input payload is self-contained (content, title, html...) so a
    stage never depends on reading state another stage may be rewriting.
    """
    id: str
    knowledge_item_id: str
    user_id: str
    type: str
    status: str = JobStatus.PENDING.value
    priority: int = 0
    attempts: int = 0
    input: dict[str, Any] = field(default_factory=dict)
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_STATUSES

    def to_dict(self, include_input: bool = False) -> dict[str, Any]:
        d = {
            "id": self.id,
            "knowledge_item_id": self.knowledge_item_id,
            "user_id": self.user_id,
            "type": self.type,
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if include_input:
            d["input"] = self.input
        return d


@dataclass
class StageUpdate:
    """
    Fields a stage writes onto its knowledge item.

    fields holds plain column values (title, content, summary, embedding...);
    tags is handled separately because it is merged rather than replaced.
    advance_to moves the item status forward if it is currently earlier.
    """
    fields: dict[str, Any] = field(default_factory=dict)
    tags: Optional[list[str]] = None
    merge: MergeStrategy = MergeStrategy.REPLACE
    advance_to: Optional[ItemStatus] = None


@dataclass
class StageResult:
    """Result of running one stage handler. Caller applies it to the store."""
    job_type: str
    update: StageUpdate
    output: dict[str, Any] = field(default_factory=dict)
