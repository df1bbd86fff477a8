"""
Worker pool: per-queue execution slots.

Each slot loops: dequeue a delivery, claim its job record, run the stage
handler under the per-job timeout, then either apply the result and
complete the job, or hand the failure to the broker's retry policy.

A handler that overruns the timeout keeps running in its daemon thread
but its result is discarded; the attempt counts as a transient failure.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

from .broker import Delivery
from .errors import PermanentJobError, StageTimeoutError
from .events import ACTIVE, COMPLETED, FAILED, RETRYING, STALLED, PipelineEvents
from .handlers import MAX_CONTENT_LENGTH, run_stage
from .queues import QueueSet
from .store import PipelineStore
from .types import StageResult

logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT = 30.0  # seconds
POLL_TIMEOUT = 1.0
STALL_CHECK_INTERVAL = 30.0


def run_with_timeout(fn: Callable[[], Any], timeout: Optional[float], name: str = "stage") -> Any:
    """
    Call fn in a daemon thread and wait at most timeout seconds.

    Raises:
        StageTimeoutError: fn did not finish in time (its eventual result
            is dropped)
    """
    if not timeout or timeout <= 0:
        return fn()

    outcome: dict[str, Any] = {}
    done = threading.Event()

    def target():
        try:
            outcome["result"] = fn()
        except BaseException as e:
            outcome["error"] = e
        finally:
            done.set()

    threading.Thread(target=target, name=f"knowman-{name}", daemon=True).start()
    if not done.wait(timeout):
        raise StageTimeoutError(f"{name} timed out after {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


class WorkerPool:
    """
    Threads serving the stage queues.

    Concurrency per queue comes from its QueueDescriptor. The pool is
    started and stopped by the application root; process_one() and drain()
    run jobs on the calling thread instead.
    """

    def __init__(
        self,
        store: PipelineStore,
        queues: QueueSet,
        resolver,
        events: Optional[PipelineEvents] = None,
        *,
        job_timeout: float = DEFAULT_JOB_TIMEOUT,
        max_content_length: int = MAX_CONTENT_LENGTH,
        poll_timeout: float = POLL_TIMEOUT,
        stall_check_interval: float = STALL_CHECK_INTERVAL,
    ):
        self.store = store
        self.queues = queues
        self.resolver = resolver
        self.events = events or PipelineEvents()
        self.job_timeout = job_timeout
        self.max_content_length = max_content_length
        self.poll_timeout = poll_timeout
        self.stall_check_interval = stall_check_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Start `concurrency` slot threads per queue plus the stall monitor."""
        if self.running:
            return
        self._stop.clear()
        self.recover_stalled()
        for descriptor in self.queues:
            for i in range(descriptor.concurrency):
                thread = threading.Thread(
                    target=self._slot_loop,
                    args=(descriptor.name,),
                    name=f"knowman-{descriptor.name}-{i}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        monitor = threading.Thread(
            target=self._monitor_loop, name="knowman-stall-monitor", daemon=True
        )
        monitor.start()
        self._threads.append(monitor)
        logger.info(
            "Worker pool started: %s",
            ", ".join(f"{d.name}x{d.concurrency}" for d in self.queues),
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal slots to finish their current job and exit."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]
        if self._threads:
            logger.warning("%d worker threads still busy after stop", len(self._threads))
        else:
            logger.info("Worker pool stopped")

    def _slot_loop(self, queue: str) -> None:
        while not self._stop.is_set():
            try:
                self.process_one(queue, timeout=self.poll_timeout)
            except Exception:
                # Broker/store trouble; keep the slot alive and back off
                logger.exception("Worker slot for %s hit an unexpected error", queue)
                self._stop.wait(self.poll_timeout)

    def _monitor_loop(self) -> None:
        while not self._stop.wait(self.stall_check_interval):
            try:
                self.recover_stalled()
            except Exception:
                logger.exception("Stall recovery failed")

    def recover_stalled(self) -> dict[str, int]:
        recovered = self.queues.broker.recover_stalled()
        for queue, count in recovered.items():
            self.events.emit(STALLED, queue=queue, count=count)
        return recovered

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def process_one(self, queue: str, timeout: float = 0.0) -> bool:
        """
        Dequeue and execute at most one job from a queue.

        Returns:
            True if a delivery was handled
        """
        delivery = self.queues.broker.dequeue(queue, timeout)
        if delivery is None:
            return False
        self._execute(delivery)
        return True

    def _execute(self, delivery: Delivery) -> None:
        descriptor = self.queues.descriptor(delivery.queue)
        broker = self.queues.broker

        job = self.store.mark_processing(delivery.job_id)
        if job is None:
            # Cancelled, completed or cleaned up while queued
            logger.info(
                "Dropping delivery %s/%s: job is no longer runnable",
                delivery.queue, delivery.job_id,
            )
            broker.discard(delivery, "job no longer runnable", keep=descriptor.keep_failed)
            return

        self.events.emit(
            ACTIVE, queue=delivery.queue, job_id=job.id,
            item_id=job.knowledge_item_id, attempts=job.attempts,
        )
        payload = delivery.payload or job.input

        def stage() -> StageResult:
            return run_stage(
                job.type, payload, self.resolver,
                max_content_length=self.max_content_length,
            )

        try:
            result = run_with_timeout(stage, self.job_timeout, name=job.type)
            added_tags = self.store.apply_update(job.knowledge_item_id, result.update)
        except PermanentJobError as e:
            error = str(e)
            self.store.mark_failed(job.id, error)
            broker.discard(delivery, error, keep=descriptor.keep_failed)
            self.events.emit(
                FAILED, queue=delivery.queue, job_id=job.id,
                item_id=job.knowledge_item_id, attempts=job.attempts,
                error=error, permanent=True,
            )
            return
        except Exception as e:
            error = str(e) or type(e).__name__
            outcome = broker.fail(
                delivery, error, descriptor.backoff, keep=descriptor.keep_failed
            )
            if outcome.retrying:
                self.events.emit(
                    RETRYING, queue=delivery.queue, job_id=job.id,
                    item_id=job.knowledge_item_id, attempts=job.attempts,
                    delay_ms=outcome.delay_ms, error=error,
                )
            else:
                self.store.mark_failed(job.id, error)
                self.events.emit(
                    FAILED, queue=delivery.queue, job_id=job.id,
                    item_id=job.knowledge_item_id, attempts=job.attempts,
                    error=error, permanent=False,
                )
            return

        output = dict(result.output)
        if added_tags:
            output["added_tags"] = added_tags
        if not self.store.mark_completed(job.id, output):
            logger.warning("Job %s vanished before it could be completed", job.id)
        broker.ack(delivery, keep=descriptor.keep_completed)
        self.events.emit(
            COMPLETED, queue=delivery.queue, job_id=job.id,
            item_id=job.knowledge_item_id, attempts=job.attempts,
        )

    def drain(self, max_wait: float = 60.0) -> int:
        """
        Run queued work on the calling thread until every queue is empty.

        Queues are visited highest priority first; delayed retries are
        waited for, up to max_wait seconds in total.

        Returns:
            Number of deliveries handled
        """
        deadline = time.monotonic() + max_wait
        handled = 0
        ordered = sorted(self.queues, key=lambda d: d.priority, reverse=True)
        while time.monotonic() < deadline:
            progressed = False
            for descriptor in ordered:
                while self.process_one(descriptor.name):
                    handled += 1
                    progressed = True
            if progressed:
                continue
            counts = self.queues.counts()
            if not any(c["waiting"] or c["delayed"] for c in counts.values()):
                break
            time.sleep(0.05)
        return handled
