"""Durable priority task queue backed by SQLite.

Claims are exclusive: a single UPDATE ... RETURNING runs inside BEGIN IMMEDIATE,
so concurrent claimants serialise on the write lock and never see rows another
claimant already moved to 'processing'.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import structlog

from cli.retry import sqlite_retry
from db import immediate_transaction, wal_connect

from .models import (
    CLAIMABLE_STATUSES,
    DEFAULT_MAX_RETRIES,
    Task,
    TaskStatus,
    TaskType,
    backoff_delay,
    claim_order_key,
    from_iso,
    to_iso,
    truncate_error,
    utcnow,
)

logger = structlog.get_logger().bind(source="learning_queue")

_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS learning_tasks (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 5,
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    scheduled_for TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    result_summary TEXT,
    processing_duration_ms INTEGER
)
"""

_CLAIM_SQL = """
UPDATE learning_tasks
SET status = 'processing', started_at = ?
WHERE id IN (
    SELECT id FROM learning_tasks
    WHERE status IN ({statuses}) AND scheduled_for <= ?
    ORDER BY priority ASC, scheduled_for ASC
    LIMIT ?
)
RETURNING *
""".format(statuses=", ".join(f"'{s.value}'" for s in CLAIMABLE_STATUSES))


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        type=TaskType(row["type"]),
        priority=row["priority"],
        payload=json.loads(row["payload"] or "{}"),
        status=TaskStatus(row["status"]),
        scheduled_for=from_iso(row["scheduled_for"]),
        created_at=from_iso(row["created_at"]),
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        error_message=row["error_message"],
        result_summary=json.loads(row["result_summary"]) if row["result_summary"] else None,
        processing_duration_ms=row["processing_duration_ms"],
    )


class QueueStore:
    """Persistent task queue: enqueue, exclusive claim, completion, sweeps."""

    def __init__(
        self,
        db_path: str | Path,
        max_retries: int = DEFAULT_MAX_RETRIES,
        stuck_timeout_minutes: int = 60,
        stuck_retry_delay_minutes: int = 5,
        retention_days: int = 7,
    ):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_retries = max_retries
        self.stuck_timeout = timedelta(minutes=stuck_timeout_minutes)
        self.stuck_retry_delay = timedelta(minutes=stuck_retry_delay_minutes)
        self.retention = timedelta(days=retention_days)
        self._init_db()

    def _init_db(self):
        with wal_connect(self.db_path) as conn:
            conn.execute(_TASKS_DDL)
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_learning_tasks_claim
                   ON learning_tasks(status, priority, scheduled_for)"""
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_learning_tasks_type
                   ON learning_tasks(type, status)"""
            )

    # --- producers ---

    def enqueue(
        self,
        task_type: TaskType | str,
        payload: Optional[dict] = None,
        priority: int = 5,
        scheduled_for: Optional[datetime] = None,
        max_retries: Optional[int] = None,
    ) -> Optional[str]:
        """Insert a pending task. Returns its id, or None on failure (logged)."""
        try:
            task_type = TaskType(task_type)
            now = utcnow()
            task_id = uuid.uuid4().hex
            with wal_connect(self.db_path) as conn:
                conn.execute(
                    """INSERT INTO learning_tasks
                       (id, type, priority, payload, status, scheduled_for, created_at,
                        retry_count, max_retries)
                       VALUES (?, ?, ?, ?, 'pending', ?, ?, 0, ?)""",
                    (
                        task_id,
                        task_type.value,
                        int(priority),
                        json.dumps(payload or {}, default=str),
                        to_iso(scheduled_for or now),
                        to_iso(now),
                        self.max_retries if max_retries is None else max_retries,
                    ),
                )
        except (sqlite3.Error, ValueError, TypeError) as e:
            logger.error("queue.enqueue_failed", task_type=str(task_type), error=str(e))
            return None
        logger.debug("queue.enqueued", task_id=task_id, task_type=task_type.value, priority=priority)
        return task_id

    # --- claimants ---

    def claim_batch(self, limit: int = 5, now: Optional[datetime] = None) -> list[Task]:
        """Atomically move up to `limit` eligible tasks to 'processing'.

        Returns the claimed tasks in claim order. A persistently locked
        database yields an empty batch instead of raising.
        """
        if limit <= 0:
            return []
        try:
            tasks = self._claim(limit, now or utcnow())
        except sqlite3.OperationalError as e:
            logger.error("queue.claim_failed", error=str(e))
            return []
        tasks.sort(key=claim_order_key)
        if tasks:
            logger.debug("queue.claimed", count=len(tasks), task_ids=[t.id for t in tasks])
        return tasks

    @sqlite_retry(max_attempts=5)
    def _claim(self, limit: int, now: datetime) -> list[Task]:
        stamp = to_iso(now)
        with immediate_transaction(self.db_path) as conn:
            rows = conn.execute(_CLAIM_SQL, (stamp, stamp, limit)).fetchall()
        return [_row_to_task(r) for r in rows]

    def complete(
        self,
        task_id: str,
        result_summary: Optional[dict] = None,
        duration_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        with wal_connect(self.db_path) as conn:
            cur = conn.execute(
                """UPDATE learning_tasks
                   SET status = 'completed', completed_at = ?, result_summary = ?,
                       processing_duration_ms = ?, error_message = NULL
                   WHERE id = ? AND status = 'processing'""",
                (
                    to_iso(now or utcnow()),
                    json.dumps(result_summary or {}, default=str),
                    duration_ms,
                    task_id,
                ),
            )
        return cur.rowcount > 0

    def fail(self, task: Task, error: str, now: Optional[datetime] = None) -> TaskStatus:
        """Record a handler failure on a claimed task.

        While budget remains the task goes to 'retry' with retry_count + 1 and an
        exponential delay; otherwise it becomes 'failed' with retry_count left
        at max_retries.
        """
        now = now or utcnow()
        message = truncate_error(error)
        new_count = task.retry_count + 1
        with wal_connect(self.db_path) as conn:
            if new_count <= task.max_retries:
                conn.execute(
                    """UPDATE learning_tasks
                       SET status = 'retry', retry_count = ?, scheduled_for = ?,
                           error_message = ?, started_at = NULL
                       WHERE id = ? AND status = 'processing'""",
                    (new_count, to_iso(now + backoff_delay(new_count)), message, task.id),
                )
                return TaskStatus.RETRY
            conn.execute(
                """UPDATE learning_tasks
                   SET status = 'failed', completed_at = ?, error_message = ?
                   WHERE id = ? AND status = 'processing'""",
                (to_iso(now), message, task.id),
            )
        return TaskStatus.FAILED

    # --- maintenance ---

    def sweep_stuck(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Recover tasks left in 'processing' past the stuck timeout."""
        now = now or utcnow()
        cutoff = to_iso(now - self.stuck_timeout)
        with immediate_transaction(self.db_path) as conn:
            reset = conn.execute(
                """UPDATE learning_tasks
                   SET status = 'retry', retry_count = retry_count + 1,
                       scheduled_for = ?, started_at = NULL,
                       error_message = 'Task stuck in processing; reset by sweep'
                   WHERE status = 'processing' AND started_at < ?
                     AND retry_count < max_retries""",
                (to_iso(now + self.stuck_retry_delay), cutoff),
            ).rowcount
            failed = conn.execute(
                """UPDATE learning_tasks
                   SET status = 'failed', completed_at = ?,
                       error_message = 'Task stuck in processing with no retries left'
                   WHERE status = 'processing' AND started_at < ?
                     AND retry_count >= max_retries""",
                (to_iso(now), cutoff),
            ).rowcount
        if reset or failed:
            logger.warning("queue.stuck_swept", reset=reset, failed=failed)
        return {"reset": reset, "failed": failed}

    def sweep_retention(self, now: Optional[datetime] = None) -> int:
        """Delete terminal tasks that finished more than the retention window ago."""
        cutoff = to_iso((now or utcnow()) - self.retention)
        with wal_connect(self.db_path) as conn:
            deleted = conn.execute(
                """DELETE FROM learning_tasks
                   WHERE status IN ('completed', 'failed') AND completed_at < ?""",
                (cutoff,),
            ).rowcount
        if deleted:
            logger.info("queue.retention_swept", deleted=deleted)
        return deleted

    # --- introspection ---

    def get(self, task_id: str) -> Optional[Task]:
        with wal_connect(self.db_path, row_factory=True) as conn:
            row = conn.execute("SELECT * FROM learning_tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(
        self,
        status: Optional[TaskStatus | str] = None,
        task_type: Optional[TaskType | str] = None,
        limit: int = 50,
    ) -> list[Task]:
        query = "SELECT * FROM learning_tasks WHERE 1=1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(str(status))
        if task_type:
            query += " AND type = ?"
            params.append(str(task_type))
        query += " ORDER BY priority ASC, scheduled_for ASC LIMIT ?"
        params.append(limit)
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_task(r) for r in rows]

    def counts_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        with wal_connect(self.db_path) as conn:
            for status, n in conn.execute(
                "SELECT status, COUNT(*) FROM learning_tasks GROUP BY status"
            ):
                counts[status] = n
        return counts

    def overdue_count(self, task_type: TaskType | str, now: Optional[datetime] = None) -> int:
        """Pending/retry rows of this type whose scheduled time has passed."""
        with wal_connect(self.db_path) as conn:
            row = conn.execute(
                """SELECT COUNT(*) FROM learning_tasks
                   WHERE type = ? AND status IN ('pending', 'retry') AND scheduled_for <= ?""",
                (str(task_type), to_iso(now or utcnow())),
            ).fetchone()
        return row[0]

    def last_completed_at(self, task_type: TaskType | str) -> Optional[datetime]:
        with wal_connect(self.db_path) as conn:
            row = conn.execute(
                """SELECT MAX(completed_at) FROM learning_tasks
                   WHERE type = ? AND status = 'completed'""",
                (str(task_type),),
            ).fetchone()
        return from_iso(row[0]) if row else None

    def type_performance(self, days: int = 7, now: Optional[datetime] = None) -> dict[str, dict]:
        """Per-type totals, completions, failures and average duration."""
        since = to_iso((now or utcnow()) - timedelta(days=days))
        with wal_connect(self.db_path, row_factory=True) as conn:
            rows = conn.execute(
                """SELECT type,
                          COUNT(*) AS total,
                          SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                          SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                          AVG(processing_duration_ms) AS avg_duration_ms
                   FROM learning_tasks
                   WHERE created_at >= ?
                   GROUP BY type""",
                (since,),
            ).fetchall()
        return {
            r["type"]: {
                "total": r["total"],
                "completed": r["completed"] or 0,
                "failed": r["failed"] or 0,
                "avg_duration_ms": round(r["avg_duration_ms"], 1)
                if r["avg_duration_ms"] is not None
                else None,
            }
            for r in rows
        }

    def error_rate(self, hours: int = 24, now: Optional[datetime] = None) -> float:
        """Share of tasks finished in the window that ended 'failed'."""
        since = to_iso((now or utcnow()) - timedelta(hours=hours))
        with wal_connect(self.db_path) as conn:
            total, failed = conn.execute(
                """SELECT COUNT(*), SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END)
                   FROM learning_tasks
                   WHERE status IN ('completed', 'failed') AND completed_at >= ?""",
                (since,),
            ).fetchone()
        if not total:
            return 0.0
        return (failed or 0) / total
