"""
Named stage queues and their retry policies.

One queue per pipeline stage. Priority orders dispatch inside a queue
only; the worker pool serves every queue independently, so there is no
preemption across stages.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .broker import KEEP_COMPLETED, KEEP_FAILED, Broker
from .events import ADDED, PipelineEvents
from .types import JobType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry budget and delay schedule.

    attempts counts executions, not retries: attempts=3 means the first
    run plus up to two retries.
    """
    attempts: int
    base_delay_ms: int
    kind: str = "exponential"  # or "fixed"

    def delay_ms(self, failed_attempt: int) -> int:
        """Delay before the next run after the k-th failed attempt (k >= 1)."""
        if self.kind == "fixed":
            return self.base_delay_ms
        return self.base_delay_ms * 2 ** (max(failed_attempt, 1) - 1)


@dataclass(frozen=True)
class QueueDescriptor:
    name: str
    priority: int
    backoff: BackoffPolicy
    concurrency: int
    keep_completed: int = KEEP_COMPLETED
    keep_failed: int = KEEP_FAILED


def default_queue_descriptors(workers: int = 2) -> dict[str, QueueDescriptor]:
    """The four stage queues; tagging is cheap and gets double concurrency."""
    n = max(1, workers)
    descriptors = [
        QueueDescriptor(JobType.EXTRACTION.value, 10, BackoffPolicy(2, 500), n),
        QueueDescriptor(JobType.SUMMARIZATION.value, 5, BackoffPolicy(3, 1000), n),
        QueueDescriptor(JobType.TAGGING.value, 3, BackoffPolicy(2, 500), n * 2),
        QueueDescriptor(JobType.EMBEDDING.value, 1, BackoffPolicy(3, 2000), n),
    ]
    return {d.name: d for d in descriptors}


class QueueSet:
    """Stage queues on top of a broker."""

    def __init__(
        self,
        broker: Broker,
        descriptors: Optional[dict[str, QueueDescriptor]] = None,
        events: Optional[PipelineEvents] = None,
    ):
        self.broker = broker
        self.descriptors = descriptors or default_queue_descriptors()
        self._events = events

    def __iter__(self):
        return iter(self.descriptors.values())

    def descriptor(self, queue: str) -> QueueDescriptor:
        try:
            return self.descriptors[queue]
        except KeyError:
            raise ValueError(f"Unknown queue: {queue!r}") from None

    def enqueue(
        self,
        queue: str,
        job_id: str,
        payload: dict[str, Any],
        priority: Optional[int] = None,
    ) -> int:
        """
        Enqueue a job at the queue's priority (or an explicit one).

        Returns:
            The priority used
        """
        descriptor = self.descriptor(queue)
        if priority is None:
            priority = descriptor.priority
        self.broker.enqueue(queue, job_id, payload, priority)
        if self._events is not None:
            self._events.emit(ADDED, queue=queue, job_id=job_id, priority=priority)
        return priority

    def remove(self, queue: str, job_id: str) -> bool:
        return self.broker.remove(queue, job_id)

    def counts(self) -> dict[str, dict[str, int]]:
        """Per-queue counts: waiting, active, completed, failed, delayed."""
        return {name: self.broker.counts(name) for name in self.descriptors}
