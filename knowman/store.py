"""
Knowledge item, job record and tag store using SQLite.

The store is the source of truth for:
- Knowledge items and the fields pipeline stages write onto them
- Job records and their state machine
- Per-user tag usage counters

Job state changes are single conditional UPDATE statements (status in the
WHERE clause), so two actors racing on the same job cannot both win; the
loser sees rowcount 0. Stage updates touch only the stage's own columns,
and the tag union is a read-modify-write inside BEGIN IMMEDIATE.
"""

import json
import logging
import sqlite3
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from .errors import ItemNotFoundError
from .types import (
    CANCELLED_MESSAGE,
    ItemStatus,
    JobRecord,
    JobStatus,
    KnowledgeItem,
    MergeStrategy,
    StageUpdate,
    parse_utc_timestamp,
    statuses_before,
    union_preserving_order,
    utc_now,
)

logger = logging.getLogger(__name__)

# Item columns a stage may write, mapped to their storage column
_STAGE_COLUMNS = {
    "title": "title",
    "content": "content",
    "raw_content": "raw_content",
    "summary": "summary",
    "embedding": "embedding_json",
    "importance_score": "importance_score",
    "readability_score": "readability_score",
}
_JSON_COLUMNS = frozenset({"embedding_json"})

_ITEM_COLUMNS = """
    id, user_id, title, content, source_type, source_url, raw_content,
    summary, tags_json, embedding_json, importance_score, readability_score,
    metadata_json, status, captured_at, processed_at
"""

_JOB_COLUMNS = """
    id, knowledge_item_id, user_id, type, status, priority, attempts,
    input_json, output_json, error, created_at, updated_at, started_at,
    completed_at
"""


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Ignoring unreadable JSON column value: %.60r", raw)
        return default


class PipelineStore:
    """
    SQLite-backed store for knowledge items, job records and tags.

    One connection shared across worker threads; writes are serialized by
    a lock and the database runs in WAL mode so a CLI process can read
    while workers write.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives manual transaction control for BEGIN IMMEDIATE
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS knowledge_items (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                source_type TEXT NOT NULL DEFAULT 'document',
                source_url TEXT,
                raw_content TEXT,
                summary TEXT,
                tags_json TEXT NOT NULL DEFAULT '[]',
                embedding_json TEXT,
                importance_score REAL NOT NULL DEFAULT 0.5,
                readability_score REAL NOT NULL DEFAULT 0.5,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'captured',
                captured_at TEXT NOT NULL,
                processed_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_user
            ON knowledge_items(user_id, captured_at)
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                usage_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, name)
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS processing_jobs (
                id TEXT PRIMARY KEY,
                knowledge_item_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                priority INTEGER NOT NULL DEFAULT 0,
                attempts INTEGER NOT NULL DEFAULT 0,
                input_json TEXT NOT NULL DEFAULT '{}',
                output_json TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_item
            ON processing_jobs(knowledge_item_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON processing_jobs(status, type)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_created
            ON processing_jobs(user_id, created_at)
        """)

    # -------------------------------------------------------------------------
    # Knowledge items
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> KnowledgeItem:
        return KnowledgeItem(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            content=row["content"],
            source_type=row["source_type"],
            source_url=row["source_url"],
            raw_content=row["raw_content"],
            summary=row["summary"],
            tags=_loads(row["tags_json"], []),
            embedding=_loads(row["embedding_json"], None),
            importance_score=row["importance_score"],
            readability_score=row["readability_score"],
            metadata=_loads(row["metadata_json"], {}),
            status=row["status"],
            captured_at=row["captured_at"],
            processed_at=row["processed_at"],
        )

    def create_item(self, item: KnowledgeItem) -> KnowledgeItem:
        """Insert a new knowledge item. captured_at is stamped if empty."""
        now = utc_now()
        if not item.captured_at:
            item.captured_at = now
        with self._lock:
            self._conn.execute(f"""
                INSERT INTO knowledge_items ({_ITEM_COLUMNS}, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                item.id, item.user_id, item.title, item.content,
                item.source_type, item.source_url, item.raw_content,
                item.summary, json.dumps(item.tags, ensure_ascii=False),
                json.dumps(item.embedding) if item.embedding is not None else None,
                item.importance_score, item.readability_score,
                json.dumps(item.metadata, ensure_ascii=False),
                item.status, item.captured_at, item.processed_at, now,
            ))
        return item

    def get_item(self, item_id: str, user_id: Optional[str] = None) -> Optional[KnowledgeItem]:
        """Get a knowledge item by id, optionally scoped to its owner."""
        sql = f"SELECT {_ITEM_COLUMNS} FROM knowledge_items WHERE id = ?"
        params: list[Any] = [item_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return self._row_to_item(row) if row else None

    def list_items(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
    ) -> list[KnowledgeItem]:
        """Most recently captured items first."""
        where, params = [], []
        if user_id is not None:
            where.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            where.append("status = ?")
            params.append(status)
        sql = f"SELECT {_ITEM_COLUMNS} FROM knowledge_items"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY captured_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_item(r) for r in rows]

    def apply_update(self, item_id: str, update: StageUpdate) -> list[str]:
        """
        Write one stage's output onto an item.

        Only the columns named in the update are touched. Tags are merged
        with the stored list (UNION_SET) or replace it (REPLACE); usage
        counters are incremented for tags the item did not have before.
        Status moves forward to update.advance_to if currently earlier.

        Returns:
            Tags newly added to the item

        Raises:
            ItemNotFoundError: The item no longer exists
        """
        now = utc_now()
        assignments: list[str] = ["updated_at = ?"]
        params: list[Any] = [now]

        for name, value in update.fields.items():
            column = _STAGE_COLUMNS.get(name)
            if column is None:
                raise ValueError(f"Stage may not write item field {name!r}")
            assignments.append(f"{column} = ?")
            params.append(json.dumps(value) if column in _JSON_COLUMNS else value)

        if update.advance_to is not None:
            earlier = statuses_before(update.advance_to)
            marks = ", ".join("?" for _ in earlier)
            # Both CASEs see the pre-update status
            assignments.append(
                f"status = CASE WHEN status IN ({marks}) THEN ? ELSE status END"
            )
            params.extend(earlier)
            params.append(update.advance_to.value)
            if update.advance_to == ItemStatus.PROCESSED:
                assignments.append(
                    f"processed_at = CASE WHEN status IN ({marks}) THEN ? ELSE processed_at END"
                )
                params.extend(earlier)
                params.append(now)

        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT user_id, tags_json FROM knowledge_items WHERE id = ?",
                    (item_id,),
                ).fetchone()
                if row is None:
                    raise ItemNotFoundError(item_id)

                added: list[str] = []
                if update.tags is not None:
                    existing = _loads(row["tags_json"], [])
                    if update.merge == MergeStrategy.UNION_SET:
                        merged = union_preserving_order(existing, update.tags)
                    else:
                        merged = union_preserving_order(update.tags)
                    added = [t for t in merged if t not in existing]
                    assignments.append("tags_json = ?")
                    params.append(json.dumps(merged, ensure_ascii=False))
                    self._increment_tag_usage(row["user_id"], added, now)

                self._conn.execute(
                    f"UPDATE knowledge_items SET {', '.join(assignments)} WHERE id = ?",
                    (*params, item_id),
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return added

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def _increment_tag_usage(self, user_id: str, names: list[str], now: str) -> None:
        """Create-on-first-use and bump counters. Caller holds the transaction."""
        if not names:
            return
        self._conn.executemany("""
            INSERT INTO tags (user_id, name, usage_count, created_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(user_id, name) DO UPDATE SET usage_count = usage_count + 1
        """, [(user_id, name, now) for name in names])

    def tag_usage(self, user_id: str) -> dict[str, int]:
        """Tag name -> usage count for a user, most used first."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT name, usage_count FROM tags
                WHERE user_id = ?
                ORDER BY usage_count DESC, name ASC
            """, (user_id,)).fetchall()
        return {row["name"]: row["usage_count"] for row in rows}

    # -------------------------------------------------------------------------
    # Job records
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> JobRecord:
        return JobRecord(
            id=row["id"],
            knowledge_item_id=row["knowledge_item_id"],
            user_id=row["user_id"],
            type=row["type"],
            status=row["status"],
            priority=row["priority"],
            attempts=row["attempts"],
            input=_loads(row["input_json"], {}),
            output=_loads(row["output_json"], None),
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    def create_job(self, job: JobRecord) -> JobRecord:
        """Insert a new pending job record."""
        now = utc_now()
        job.created_at = job.created_at or now
        job.updated_at = now
        with self._lock:
            self._conn.execute(f"""
                INSERT INTO processing_jobs ({_JOB_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job.id, job.knowledge_item_id, job.user_id, job.type,
                job.status, job.priority, job.attempts,
                json.dumps(job.input, ensure_ascii=False),
                json.dumps(job.output) if job.output is not None else None,
                job.error, job.created_at, job.updated_at,
                job.started_at, job.completed_at,
            ))
        return job

    def get_job(self, job_id: str, user_id: Optional[str] = None) -> Optional[JobRecord]:
        sql = f"SELECT {_JOB_COLUMNS} FROM processing_jobs WHERE id = ?"
        params: list[Any] = [job_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return self._row_to_job(row) if row else None

    def _transition(self, sql: str, params: tuple) -> bool:
        with self._lock:
            cursor = self._conn.execute(sql, params)
        return cursor.rowcount > 0

    def mark_processing(self, job_id: str) -> Optional[JobRecord]:
        """
        Claim a job for execution: attempts += 1, started_at stamped.

        Returns:
            The updated record, or None if the job is no longer runnable
            (cancelled, completed or deleted meanwhile)
        """
        now = utc_now()
        claimed = self._transition("""
            UPDATE processing_jobs
            SET status = 'processing', attempts = attempts + 1,
                started_at = ?, completed_at = NULL, updated_at = ?
            WHERE id = ? AND status IN ('pending', 'processing')
        """, (now, now, job_id))
        return self.get_job(job_id) if claimed else None

    def mark_completed(self, job_id: str, output: dict[str, Any]) -> bool:
        now = utc_now()
        return self._transition("""
            UPDATE processing_jobs
            SET status = 'completed', output_json = ?, error = NULL,
                completed_at = ?, updated_at = ?
            WHERE id = ? AND status = 'processing'
        """, (json.dumps(output, ensure_ascii=False), now, now, job_id))

    def mark_failed(self, job_id: str, error: str) -> bool:
        now = utc_now()
        return self._transition("""
            UPDATE processing_jobs
            SET status = 'failed', error = ?, completed_at = ?, updated_at = ?
            WHERE id = ? AND status = 'processing'
        """, (error, now, now, job_id))

    def cancel_job(self, job_id: str) -> bool:
        """pending -> failed with the cancellation message."""
        now = utc_now()
        return self._transition("""
            UPDATE processing_jobs
            SET status = 'failed', error = ?, completed_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
        """, (CANCELLED_MESSAGE, now, now, job_id))

    def reset_for_retry(self, job_id: str) -> bool:
        """failed -> pending with attempts, error and timestamps cleared."""
        return self._transition("""
            UPDATE processing_jobs
            SET status = 'pending', attempts = 0, error = NULL, output_json = NULL,
                started_at = NULL, completed_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'failed'
        """, (utc_now(), job_id))

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        type: Optional[str] = None,
        knowledge_item_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobRecord], int]:
        """
        Filtered page of job records, newest first.

        Returns:
            (jobs on this page, total matching)
        """
        where, params = [], []
        for column, value in (
            ("status", status),
            ("type", type),
            ("knowledge_item_id", knowledge_item_id),
            ("user_id", user_id),
        ):
            if value is not None:
                where.append(f"{column} = ?")
                params.append(value)
        clause = (" WHERE " + " AND ".join(where)) if where else ""

        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) FROM processing_jobs{clause}", params
            ).fetchone()[0]
            rows = self._conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM processing_jobs{clause} "
                f"ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_job(r) for r in rows], total

    def jobs_for_item(self, item_id: str, user_id: Optional[str] = None) -> list[JobRecord]:
        jobs, _ = self.list_jobs(knowledge_item_id=item_id, user_id=user_id, limit=-1)
        return jobs

    def job_status_counts(self, user_id: Optional[str] = None) -> list[dict[str, Any]]:
        """Counts grouped by (status, type)."""
        sql = "SELECT status, type, COUNT(*) AS count FROM processing_jobs"
        params: list[Any] = []
        if user_id is not None:
            sql += " WHERE user_id = ?"
            params.append(user_id)
        sql += " GROUP BY status, type ORDER BY status, type"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def delete_terminal_jobs(
        self, older_than_days: int, user_id: Optional[str] = None
    ) -> int:
        """Delete completed/failed job records finished before the cutoff."""
        cutoff = (parse_utc_timestamp(utc_now()) - timedelta(days=older_than_days)).isoformat()
        sql = """
            DELETE FROM processing_jobs
            WHERE status IN (?, ?) AND completed_at IS NOT NULL
              AND julianday(completed_at) < julianday(?)
        """
        params: list[Any] = [JobStatus.COMPLETED.value, JobStatus.FAILED.value, cutoff]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._lock:
            cursor = self._conn.execute(sql, params)
        deleted = cursor.rowcount
        if deleted:
            logger.info("Deleted %d job records older than %d days", deleted, older_than_days)
        return deleted

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
