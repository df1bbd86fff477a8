"""
Capture and processing management.

capture() creates a knowledge item and one job per applicable stage.
Every job carries a self-contained snapshot of the content it needs;
stages run independently, so extraction is not a prerequisite for the
others (they work from the captured content).

The management operations (retry, cancel, list, status, cleanup) are what
an HTTP layer or the CLI calls.
"""

import logging
from typing import Any, Optional

from .errors import InvalidTransitionError, ItemNotFoundError, JobNotFoundError, ValidationError
from .queues import QueueSet
from .store import PipelineStore
from .types import (
    ItemStatus,
    JobRecord,
    JobStatus,
    JobType,
    KnowledgeItem,
    new_id,
)

logger = logging.getLogger(__name__)

INITIAL_CONTENT_LIMIT = 10000
RECENT_JOBS_LIMIT = 10
DEFAULT_CLEANUP_DAYS = 30


class Orchestrator:
    """Decides which stages apply to an item and manages their jobs."""

    def __init__(self, store: PipelineStore, queues: QueueSet):
        self.store = store
        self.queues = queues

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

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
        """
        Store new content and start enrichment.

        Raises:
            ValidationError: content, title or user_id is empty

        Returns:
            (the new item, the jobs created for it)
        """
        for name, value in (("content", content), ("title", title), ("user_id", user_id)):
            if not value or not str(value).strip():
                raise ValidationError(f"{name} must not be empty")

        logger.info("Capturing content: %s for user %s", title, user_id)
        item = KnowledgeItem(
            id=new_id(),
            user_id=user_id,
            title=title,
            content=content[:INITIAL_CONTENT_LIMIT],
            source_type="webpage" if url else "document",
            source_url=url,
            raw_content=html,
            metadata=dict(metadata or {}),
            # With HTML the item waits for extraction
            status=(ItemStatus.CAPTURED if html else ItemStatus.PROCESSING).value,
        )
        self.store.create_item(item)
        jobs = self.enqueue_stages_for(item, content=content, html=html, url=url)
        logger.info("Created knowledge item %s with %d processing jobs", item.id, len(jobs))
        return item, jobs

    def enqueue_stages_for(
        self,
        item: KnowledgeItem,
        *,
        content: Optional[str] = None,
        html: Optional[str] = None,
        url: Optional[str] = None,
    ) -> list[JobRecord]:
        """Create and enqueue the stage jobs for an item.

        Extraction only when HTML is present; summarization, tagging and
        embedding always. The AI stages get content when given (the full captured text),
        otherwise the item's stored content.
        """
        text = item.content if content is None else content
        stages: list[tuple[JobType, dict[str, Any]]] = []
        if html:
            stages.append((JobType.EXTRACTION, {
                "html": html, "url": url or item.source_url, "title": item.title,
            }))
        stages.append((JobType.SUMMARIZATION, {"content": text, "title": item.title}))
        stages.append((JobType.TAGGING, {
            "content": text, "title": item.title,
            "existing_tags": list(item.tags),
        }))
        stages.append((JobType.EMBEDDING, {"content": text, "title": item.title}))

        jobs = []
        for job_type, payload in stages:
            descriptor = self.queues.descriptor(job_type.value)
            job = self.store.create_job(JobRecord(
                id=new_id(),
                knowledge_item_id=item.id,
                user_id=item.user_id,
                type=job_type.value,
                priority=descriptor.priority,
                input=payload,
            ))
            self.queues.enqueue(job_type.value, job.id, self._delivery_payload(job))
            jobs.append(job)
        return jobs

    @staticmethod
    def _delivery_payload(job: JobRecord) -> dict[str, Any]:
        return {**job.input, "knowledge_item_id": job.knowledge_item_id, "user_id": job.user_id}

    # -------------------------------------------------------------------------
    # Job management
    # -------------------------------------------------------------------------

    def get_job(self, job_id: str, user_id: Optional[str] = None) -> JobRecord:
        """
        Raises:
            JobNotFoundError: No such job (for this user)
        """
        job = self.store.get_job(job_id, user_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def retry(self, job_id: str, user_id: Optional[str] = None) -> JobRecord:
        """
        Re-run a failed job: back to pending with attempts reset to 0.

        Raises:
            JobNotFoundError: No such job
            InvalidTransitionError: Job is not failed
        """
        job = self.get_job(job_id, user_id)
        if not self.store.reset_for_retry(job.id):
            raise InvalidTransitionError(
                f"Only failed jobs can be retried (job {job.id} is {self.get_job(job.id).status})"
            )
        job = self.get_job(job.id)
        self.queues.enqueue(job.type, job.id, self._delivery_payload(job), job.priority)
        logger.info("Retried job %s (%s)", job.id, job.type)
        return job

    def cancel(self, job_id: str, user_id: Optional[str] = None) -> JobRecord:
        """
        Cancel a pending job. Running jobs are never interrupted.

        Raises:
            JobNotFoundError: No such job
            InvalidTransitionError: Job is not pending
        """
        job = self.get_job(job_id, user_id)
        if not self.store.cancel_job(job.id):
            raise InvalidTransitionError(
                f"Only pending jobs can be cancelled (job {job.id} is {self.get_job(job.id).status})"
            )
        # Best effort; a worker that already holds the delivery will drop it
        self.queues.remove(job.type, job.id)
        logger.info("Cancelled job %s (%s)", job.id, job.type)
        return self.get_job(job.id)

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        type: Optional[str] = None,
        knowledge_item_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Filtered, paged job listing: {jobs, total, limit, offset, has_more}."""
        if status is not None and status not in {s.value for s in JobStatus}:
            raise ValidationError(f"Unknown job status: {status!r}")
        if type is not None and type not in {t.value for t in JobType}:
            raise ValidationError(f"Unknown job type: {type!r}")
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be >= 1 and offset >= 0")
        jobs, total = self.store.list_jobs(
            status=status, type=type, knowledge_item_id=knowledge_item_id,
            user_id=user_id, limit=limit, offset=offset,
        )
        return {
            "jobs": jobs,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < total,
        }

    def queue_counts(self) -> dict[str, dict[str, int]]:
        return self.queues.counts()

    def status_overview(self, user_id: Optional[str] = None) -> dict[str, Any]:
        """Job counts by status/type, recent jobs, and broker queue counts."""
        status_counts = self.store.job_status_counts(user_id)
        recent, _ = self.store.list_jobs(user_id=user_id, limit=RECENT_JOBS_LIMIT)
        queue_stats = [{"name": name, **counts} for name, counts in self.queue_counts().items()]

        def total_for(status: Optional[str]) -> int:
            return sum(c["count"] for c in status_counts if status in (None, c["status"]))

        return {
            "status_counts": status_counts,
            "recent_jobs": recent,
            "queue_stats": queue_stats,
            "summary": {
                "total": total_for(None),
                "pending": total_for(JobStatus.PENDING.value),
                "processing": total_for(JobStatus.PROCESSING.value),
                "completed": total_for(JobStatus.COMPLETED.value),
                "failed": total_for(JobStatus.FAILED.value),
            },
        }

    def cleanup(self, older_than_days: int = DEFAULT_CLEANUP_DAYS,
                user_id: Optional[str] = None) -> int:
        """Delete terminal job records finished more than N days ago."""
        if older_than_days < 0:
            raise ValidationError("older_than_days must be >= 0")
        deleted = self.store.delete_terminal_jobs(older_than_days, user_id)
        logger.info("Cleaned up %d old processing jobs", deleted)
        return deleted

    def capture_status(self, item_id: str, user_id: Optional[str] = None) -> dict[str, Any]:
        """
        An item together with its jobs, newest first.

        Raises:
            ItemNotFoundError: No such item (for this user)
        """
        item = self.store.get_item(item_id, user_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return {
            "knowledge_item": item,
            "processing_jobs": self.store.jobs_for_item(item_id, user_id),
        }
