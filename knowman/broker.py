"""
Durable job broker using SQLite.

Each named queue holds deliveries keyed by job id. Dequeue is atomic:
the best waiting delivery (highest priority, then oldest arrival) moves
to 'active' with a claim timestamp inside a single IMMEDIATE transaction,
so concurrent workers never receive the same delivery.

Failed deliveries go back to 'waiting' with an availability time in the
future (the retry delay) until the queue's attempt budget is spent, then
to 'failed'. Completed and failed entries are kept only up to a retention
count per queue, oldest pruned first. Claims older than
STALE_CLAIM_SECONDS belong to a crashed worker and are returned to
'waiting' by recover_stalled().
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Protocol

from .types import utc_now

if TYPE_CHECKING:
    from .queues import BackoffPolicy

logger = logging.getLogger(__name__)

# Claims older than this are considered stale (worker crashed)
STALE_CLAIM_SECONDS = 600  # 10 minutes

# Upper bound on one wait inside dequeue(); other processes can enqueue
# without notifying our condition variable
POLL_INTERVAL = 0.25

KEEP_COMPLETED = 100
KEEP_FAILED = 1000


@dataclass
class Delivery:
    """One hand-off of a job to a worker."""
    queue: str
    job_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    attempts: int = 1  # including this one
    claimed_at: str = ""


@dataclass
class FailOutcome:
    retrying: bool
    delay_ms: int = 0
    attempts: int = 0


class Broker(Protocol):
    """Queueing contract the worker pool and queue set rely on."""

    def enqueue(self, queue: str, job_id: str, payload: dict[str, Any],
                priority: int = 0, delay_ms: int = 0) -> None: ...

    def dequeue(self, queue: str, timeout: float = 0.0) -> Optional[Delivery]: ...

    def ack(self, delivery: Delivery, keep: int = KEEP_COMPLETED) -> None: ...

    def fail(self, delivery: Delivery, error: str, policy: "BackoffPolicy",
             keep: int = KEEP_FAILED) -> FailOutcome: ...

    def discard(self, delivery: Delivery, error: str, keep: int = KEEP_FAILED) -> None: ...

    def remove(self, queue: str, job_id: str) -> bool: ...

    def counts(self, queue: str) -> dict[str, int]: ...

    def recover_stalled(self) -> dict[str, int]: ...

    def close(self) -> None: ...


class SQLiteBroker:
    """
    SQLite-backed implementation of the Broker contract.

    In-process waiters are woken through a condition variable when work
    is enqueued; work enqueued by another process is picked up by polling.
    """

    def __init__(self, db_path: Path, stale_claim_seconds: float = STALE_CLAIM_SECONDS):
        """
        Args:
            db_path: Path to SQLite database file
            stale_claim_seconds: Age after which an active claim is stalled
        """
        self._db_path = db_path
        self._stale_claim_seconds = stale_claim_seconds
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._available = threading.Condition()
        self._closed = False
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so we can use BEGIN IMMEDIATE for atomic dequeue
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, isolation_level=None,
        )
        # WAL so the CLI can inspect counts while workers run
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS broker_jobs (
                queue TEXT NOT NULL,
                job_id TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                priority INTEGER NOT NULL DEFAULT 0,
                seq INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'waiting',
                attempts INTEGER NOT NULL DEFAULT 0,
                available_at TEXT NOT NULL,
                claimed_at TEXT,
                finished_at TEXT,
                last_error TEXT,
                PRIMARY KEY (queue, job_id)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_broker_dispatch
            ON broker_jobs(queue, status, priority DESC, seq ASC)
        """)

    def _notify(self) -> None:
        with self._available:
            self._available.notify_all()

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        queue: str,
        job_id: str,
        payload: dict[str, Any],
        priority: int = 0,
        delay_ms: int = 0,
    ) -> None:
        """
        Add a job to a queue.

        If the same (queue, job_id) already exists it is replaced: reset to
        waiting with a fresh attempt budget and a new arrival position.
        """
        now = datetime.now(timezone.utc)
        available_at = (now + timedelta(milliseconds=delay_ms)).isoformat()
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO broker_jobs
                (queue, job_id, payload, priority, seq, status, attempts,
                 available_at, claimed_at, finished_at, last_error)
                VALUES (?, ?, ?, ?,
                        (SELECT COALESCE(MAX(seq), 0) + 1 FROM broker_jobs),
                        'waiting', 0, ?, NULL, NULL, NULL)
            """, (queue, job_id, json.dumps(payload, ensure_ascii=False),
                  priority, available_at))
        self._notify()

    def remove(self, queue: str, job_id: str) -> bool:
        """Remove a job that is not currently being worked on."""
        with self._lock:
            cursor = self._conn.execute("""
                DELETE FROM broker_jobs
                WHERE queue = ? AND job_id = ? AND status != 'active'
            """, (queue, job_id))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def _claim(self, queue: str) -> Optional[Delivery]:
        now = utc_now()
        with self._lock:
            if self._conn is None:
                return None
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute("""
                    SELECT job_id, payload, priority, attempts
                    FROM broker_jobs
                    WHERE queue = ? AND status = 'waiting'
                      AND julianday(available_at) <= julianday(?)
                    ORDER BY priority DESC, seq ASC
                    LIMIT 1
                """, (queue, now)).fetchone()
                if row is None:
                    self._conn.commit()
                    return None
                self._conn.execute("""
                    UPDATE broker_jobs
                    SET status = 'active', attempts = attempts + 1, claimed_at = ?
                    WHERE queue = ? AND job_id = ?
                """, (now, queue, row[0]))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        try:
            payload = json.loads(row[1]) if row[1] else {}
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unreadable payload for %s/%s", queue, row[0])
            payload = {}
        return Delivery(
            queue=queue,
            job_id=row[0],
            payload=payload,
            priority=row[2],
            attempts=row[3] + 1,
            claimed_at=now,
        )

    def dequeue(self, queue: str, timeout: float = 0.0) -> Optional[Delivery]:
        """
        Claim the next ready delivery from a queue.

        Args:
            queue: Queue name
            timeout: Seconds to wait for work; 0 returns immediately

        Returns:
            A Delivery, or None if nothing became ready within the timeout
        """
        deadline = time.monotonic() + timeout
        while not self._closed:
            delivery = self._claim(queue)
            if delivery is not None:
                return delivery
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            with self._available:
                self._available.wait(min(remaining, POLL_INTERVAL))
        return None

    def _finish(self, delivery: Delivery, status: str, error: Optional[str], keep: int) -> None:
        now = utc_now()
        with self._lock:
            self._conn.execute("""
                UPDATE broker_jobs
                SET status = ?, finished_at = ?, claimed_at = NULL, last_error = ?
                WHERE queue = ? AND job_id = ?
            """, (status, now, error, delivery.queue, delivery.job_id))
            self._prune(delivery.queue, status, keep)

    def _prune(self, queue: str, status: str, keep: int) -> None:
        """Keep only the newest `keep` entries of a terminal status. Caller holds the lock."""
        cursor = self._conn.execute("""
            DELETE FROM broker_jobs
            WHERE queue = ? AND status = ? AND job_id NOT IN (
                SELECT job_id FROM broker_jobs
                WHERE queue = ? AND status = ?
                ORDER BY finished_at DESC, seq DESC
                LIMIT ?
            )
        """, (queue, status, queue, status, max(keep, 0)))
        if cursor.rowcount:
            logger.debug("Pruned %d %s entries from %s", cursor.rowcount, status, queue)

    def ack(self, delivery: Delivery, keep: int = KEEP_COMPLETED) -> None:
        """Mark a delivery completed."""
        self._finish(delivery, "completed", None, keep)

    def discard(self, delivery: Delivery, error: str, keep: int = KEEP_FAILED) -> None:
        """Fail a delivery without retrying (permanent error)."""
        self._finish(delivery, "failed", error, keep)

    def fail(
        self,
        delivery: Delivery,
        error: str,
        policy: "BackoffPolicy",
        keep: int = KEEP_FAILED,
    ) -> FailOutcome:
        """
        Record a failed execution.

        The delivery goes back to waiting after policy.delay_ms(attempts)
        while attempts < policy.attempts; otherwise it fails for good.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT attempts FROM broker_jobs WHERE queue = ? AND job_id = ?",
                (delivery.queue, delivery.job_id),
            ).fetchone()
        attempts = row[0] if row else delivery.attempts

        if attempts >= policy.attempts:
            self._finish(delivery, "failed", error, keep)
            return FailOutcome(retrying=False, attempts=attempts)

        delay = policy.delay_ms(attempts)
        now = datetime.now(timezone.utc)
        retry_at = (now + timedelta(milliseconds=delay)).isoformat()
        with self._lock:
            self._conn.execute("""
                UPDATE broker_jobs
                SET status = 'waiting', claimed_at = NULL,
                    last_error = ?, available_at = ?
                WHERE queue = ? AND job_id = ?
            """, (error, retry_at, delivery.queue, delivery.job_id))
        self._notify()
        return FailOutcome(retrying=True, delay_ms=delay, attempts=attempts)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def recover_stalled(self) -> dict[str, int]:
        """Return stale active claims to waiting.

        Returns:
            Queue name -> number of recovered deliveries
        """
        now = utc_now()
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                rows = self._conn.execute("""
                    SELECT queue, COUNT(*) FROM broker_jobs
                    WHERE status = 'active'
                      AND claimed_at IS NOT NULL
                      AND julianday(?) - julianday(claimed_at) > ? / 86400.0
                    GROUP BY queue
                """, (now, self._stale_claim_seconds)).fetchall()
                if rows:
                    self._conn.execute("""
                        UPDATE broker_jobs
                        SET status = 'waiting', claimed_at = NULL, available_at = ?
                        WHERE status = 'active'
                          AND claimed_at IS NOT NULL
                          AND julianday(?) - julianday(claimed_at) > ? / 86400.0
                    """, (now, now, self._stale_claim_seconds))
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        recovered = {queue: count for queue, count in rows}
        if recovered:
            logger.info("Recovered stale claims from crashed workers: %s", recovered)
            self._notify()
        return recovered

    def counts(self, queue: str) -> dict[str, int]:
        """Entry counts by state: waiting, active, completed, failed, delayed."""
        now = utc_now()
        with self._lock:
            rows = self._conn.execute("""
                SELECT
                    CASE
                        WHEN status = 'waiting'
                             AND julianday(available_at) > julianday(?) THEN 'delayed'
                        ELSE status
                    END AS state,
                    COUNT(*)
                FROM broker_jobs
                WHERE queue = ?
                GROUP BY state
            """, (now, queue)).fetchall()
        result = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        result.update({state: count for state, count in rows})
        return result

    def close(self) -> None:
        """Close the database connection and wake any waiters."""
        self._closed = True
        self._notify()
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
