"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe queue implementation using:
- sqlite-utils for schema management and reads
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic lease/ack/nack
- Exponential backoff retry for database lock handling
- Lease deadlines stored per job so a restarted process can reclaim work
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..sqlite import ThreadLocalSQLite
from .backends import QueueBackend
from .models import (
    GENERATION_QUEUE_DEFAULTS,
    PUBLISH_QUEUE_DEFAULTS,
    TERMINAL_STATES,
    BackoffStrategy,
    Job,
    JobCounts,
    JobState,
    QueueSettings,
    utc_now,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Jobs, one table for every named queue
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    attempts INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    backoff_type TEXT NOT NULL,
    backoff_delay_s REAL NOT NULL,
    state TEXT NOT NULL,
    created_at TEXT NOT NULL,
    run_at TEXT,
    processed_at TEXT,
    finished_at TEXT,
    lease_expires_at TEXT,
    worker_id TEXT,
    cancel_requested INTEGER DEFAULT 0,
    result TEXT,
    failure_reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_lease
    ON jobs(queue_name, state, priority DESC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(state, finished_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS job_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    detail TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_job ON job_events(job_id, timestamp);
"""

DEFAULT_QUEUES = (GENERATION_QUEUE_DEFAULTS, PUBLISH_QUEUE_DEFAULTS)


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width timestamps keep lexicographic comparison in SQL correct
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteQueue(ThreadLocalSQLite, QueueBackend):
    """SQLite-based durable queue with atomic lease operations.

    Features:
    - Atomic lease via BEGIN IMMEDIATE + UPDATE...RETURNING
    - Exponential backoff retry for database lock contention
    - Lease deadlines with heartbeat extension and startup reclaim
    - Count-based retention of terminal jobs per queue
    - Automatic state transition logging

    Concurrency safety:
    - Each thread gets its own connection (sqlite3 connections are not shared)
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      slots can never select the same job before the update lands
    """

    def __init__(
        self,
        db_path: str,
        queues: Iterable[QueueSettings] = DEFAULT_QUEUES,
        clock: Optional[Callable[[], datetime]] = None,
        busy_timeout_s: float = 5.0,
    ):
        """Initialize queue database.

        Args:
            db_path: Path to SQLite database file
            queues: Settings for every queue name this backend accepts
            clock: Time source (injectable for tests)
            busy_timeout_s: How long sqlite waits on a locked database

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        super().__init__(db_path, busy_timeout_s=busy_timeout_s)
        self.queues: Dict[str, QueueSettings] = {q.name: q for q in queues}
        self._clock = clock or utc_now
        self._listeners: List[Callable[[str], None]] = []

        self._with_retry(self._create_schema)

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def _now(self) -> datetime:
        return self._clock()

    def _settings(self, queue_name: str) -> QueueSettings:
        try:
            return self.queues[queue_name]
        except KeyError:
            raise ValueError(
                f"Unknown queue '{queue_name}' (known: {', '.join(sorted(self.queues))})"
            ) from None

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        priority: int = 0,
        delay_s: float = 0.0,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffStrategy] = None,
    ) -> str:
        """Persist a new job and wake any idle workers of the queue.

        Args:
            queue_name: Target queue (must be configured)
            job_type: Handler-facing job type label
            payload: JSON-serializable payload (already validated by caller)
            priority: Higher leases first
            delay_s: If > 0 the job starts ``delayed`` until now + delay_s
            max_attempts: Override of the queue default
            backoff: Override of the queue default

        Returns:
            The new job id
        """
        settings = self._settings(queue_name)
        backoff = backoff or settings.backoff
        now = self._now()
        job_id = str(uuid.uuid4())
        state = JobState.DELAYED if delay_s > 0 else JobState.WAITING

        row = {
            "id": job_id,
            "queue_name": queue_name,
            "type": job_type,
            "payload": json.dumps(payload),
            "priority": priority,
            "attempts": 0,
            "max_attempts": max_attempts or settings.max_attempts,
            "backoff_type": backoff.type,
            "backoff_delay_s": backoff.delay_s,
            "state": state.value,
            "created_at": _ts(now),
            "run_at": _ts(now + timedelta(seconds=delay_s)) if delay_s > 0 else None,
            "cancel_requested": 0,
        }

        def op():
            with self._transaction() as conn:
                columns = ", ".join(row)
                placeholders = ", ".join(f":{key}" for key in row)
                conn.execute(f"INSERT INTO jobs ({columns}) VALUES ({placeholders})", row)
                self._log_transition(conn, job_id, None, state.value)

        self._with_retry(op)
        logger.info("Enqueued %s job %s on '%s' (priority=%d)", job_type, job_id, queue_name, priority)
        self._notify(queue_name)
        return job_id

    def lease(self, queue_name: str, worker_id: Optional[str] = None) -> Optional[Job]:
        """Atomically claim the next eligible job and mark it active.

        Eligible jobs are ``waiting`` ones and ``delayed`` ones whose run_at
        has passed, ordered by priority DESC, then creation order.
        """
        settings = self._settings(queue_name)

        def op():
            now = self._now()
            with self._transaction() as conn:
                candidate = conn.execute(
                    """
                    SELECT id, state FROM jobs
                    WHERE queue_name = ?
                      AND (state = ? OR (state = ? AND run_at <= ?))
                    ORDER BY priority DESC, created_at ASC, rowid ASC
                    LIMIT 1
                    """,
                    (queue_name, JobState.WAITING.value, JobState.DELAYED.value, _ts(now)),
                ).fetchone()
                if candidate is None:
                    return None

                job_id, from_state = candidate
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        processed_at = ?,
                        lease_expires_at = ?,
                        worker_id = ?,
                        run_at = NULL
                    WHERE id = ?
                    RETURNING *
                    """,
                    (
                        JobState.ACTIVE.value,
                        _ts(now),
                        _ts(now + timedelta(seconds=settings.lease_timeout_s)),
                        worker_id,
                        job_id,
                    ),
                )
                rows = cursor.fetchall()
                columns = [d[0] for d in cursor.description]
                self._log_transition(conn, job_id, from_state, JobState.ACTIVE.value, worker_id)
                return dict(zip(columns, rows[0]))

        record = self._with_retry(op)
        return self._row_to_job(record) if record else None

    def extend_lease(self, job_id: str) -> None:
        """Heartbeat: move the lease deadline of an active job forward."""

        def op():
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT queue_name FROM jobs WHERE id = ? AND state = ?",
                    (job_id, JobState.ACTIVE.value),
                ).fetchone()
                if row is None:
                    return
                settings = self._settings(row[0])
                conn.execute(
                    "UPDATE jobs SET lease_expires_at = ? WHERE id = ?",
                    (_ts(self._now() + timedelta(seconds=settings.lease_timeout_s)), job_id),
                )

        self._with_retry(op)

    def ack(
        self,
        job_id: str,
        result: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        """Mark an active job completed and store its result.

        Returns:
            True if the job transitioned, False if it was not active
            (already terminal, reclaimed or removed) or, with ``worker_id``,
            is now leased by another worker; those calls are no-ops.
        """

        def op():
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT state, queue_name, worker_id FROM jobs WHERE id = ?", (job_id,)
                ).fetchone()
                if row is None or row[0] != JobState.ACTIVE.value:
                    return False
                if worker_id is not None and row[2] != worker_id:
                    return False
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, result = ?, finished_at = ?, lease_expires_at = NULL
                    WHERE id = ?
                    """,
                    (
                        JobState.COMPLETED.value,
                        json.dumps(result) if result is not None else None,
                        _ts(self._now()),
                        job_id,
                    ),
                )
                self._log_transition(conn, job_id, row[0], JobState.COMPLETED.value)
                self._trim_terminal(conn, row[1], JobState.COMPLETED)
                return True

        transitioned = self._with_retry(op)
        if not transitioned:
            logger.debug("ack ignored for job %s (not active or lease lost)", job_id)
        return transitioned

    def nack(
        self,
        job_id: str,
        error: str,
        retry: bool = True,
        worker_id: Optional[str] = None,
    ) -> Optional[JobState]:
        """Record a failed attempt and schedule a retry or fail permanently.

        Args:
            job_id: Job identifier
            error: Failure detail (truncated to 500 chars)
            retry: False for failures that must not be retried
            worker_id: If set, only the current lease holder may nack

        Returns:
            The job's new state, or None if the job was not active or is
            leased by another worker.

        Retry logic:
        - attempts is incremented first, so it never exceeds max_attempts
        - attempts < max_attempts (and retry, and no cancel): ``delayed``
          by backoff.delay_for(attempts)
        - otherwise: ``failed`` (terminal)
        """
        error_snippet = error[:500] if error else None

        def op():
            now = self._now()
            with self._transaction() as conn:
                row = conn.execute(
                    """
                    SELECT state, queue_name, attempts, max_attempts,
                           backoff_type, backoff_delay_s, cancel_requested, worker_id
                    FROM jobs WHERE id = ?
                    """,
                    (job_id,),
                ).fetchone()
                if row is None or row[0] != JobState.ACTIVE.value:
                    return None

                (state, queue_name, attempts, max_attempts,
                 backoff_type, backoff_delay_s, cancel_requested, holder) = row
                if worker_id is not None and holder != worker_id:
                    return None
                attempts += 1

                if retry and not cancel_requested and attempts < max_attempts:
                    backoff = BackoffStrategy(type=backoff_type, delay_s=backoff_delay_s)
                    run_at = now + timedelta(seconds=backoff.delay_for(attempts))
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, attempts = ?, failure_reason = ?, run_at = ?,
                            worker_id = NULL, lease_expires_at = NULL
                        WHERE id = ?
                        """,
                        (JobState.DELAYED.value, attempts, error_snippet, _ts(run_at), job_id),
                    )
                    new_state = JobState.DELAYED
                else:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, attempts = ?, failure_reason = ?, finished_at = ?,
                            lease_expires_at = NULL
                        WHERE id = ?
                        """,
                        (JobState.FAILED.value, attempts, error_snippet, _ts(now), job_id),
                    )
                    new_state = JobState.FAILED

                self._log_transition(conn, job_id, state, new_state.value, error=error_snippet)
                if new_state is JobState.FAILED:
                    self._trim_terminal(conn, queue_name, JobState.FAILED)
                return new_state

        new_state = self._with_retry(op)
        if new_state is None:
            logger.debug("nack ignored for job %s (not active or lease lost)", job_id)
        return new_state

    def get_job(self, job_id: str) -> Optional[Job]:
        """Query a job by id."""

        def op():
            rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
            return rows[0] if rows else None

        row = self._with_retry(op)
        return self._row_to_job(row) if row else None

    def get_events(self, job_id: str) -> List[Dict[str, Any]]:
        """State transition history of a job, oldest first."""

        def op():
            return list(
                self.db["job_events"].rows_where("job_id = ?", [job_id], order_by="id")
            )

        return self._with_retry(op)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job.

        Returns:
            True if a waiting/delayed job was removed. An active job is only
            flagged (it is not interrupted, will not be retried and will not
            chain a follow-up job) and False is returned, as for unknown or
            terminal jobs.
        """

        def op():
            with self._transaction() as conn:
                row = conn.execute("SELECT state FROM jobs WHERE id = ?", (job_id,)).fetchone()
                if row is None:
                    return False
                if row[0] in (JobState.WAITING.value, JobState.DELAYED.value):
                    conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
                    conn.execute("DELETE FROM job_events WHERE job_id = ?", (job_id,))
                    return True
                if row[0] == JobState.ACTIVE.value:
                    conn.execute("UPDATE jobs SET cancel_requested = 1 WHERE id = ?", (job_id,))
                    self._log_transition(
                        conn, job_id, row[0], row[0], detail="cancel requested"
                    )
                return False

        removed = self._with_retry(op)
        if removed:
            logger.info("Cancelled job %s", job_id)
        return removed

    def is_cancel_requested(self, job_id: str) -> bool:
        job = self.get_job(job_id)
        return bool(job and job.cancel_requested)

    def counts(self, queue_name: str) -> JobCounts:
        """Job counts by state for one queue."""
        self._settings(queue_name)

        def op():
            return self.db.execute(
                "SELECT state, COUNT(*) FROM jobs WHERE queue_name = ? GROUP BY state",
                [queue_name],
            ).fetchall()

        return JobCounts(**{state: count for state, count in self._with_retry(op)})

    def purge(
        self,
        older_than: timedelta,
        states: Iterable[JobState] = TERMINAL_STATES,
        queue_name: Optional[str] = None,
    ) -> int:
        """Delete terminal jobs that finished before now - older_than.

        Returns:
            Count of deleted jobs
        """
        states = [JobState(s) for s in states]
        if any(s not in TERMINAL_STATES for s in states):
            raise ValueError("Only completed/failed jobs can be purged")
        if not states:
            return 0
        cutoff = _ts(self._now() - older_than)

        def op():
            with self._transaction() as conn:
                sql = (
                    f"SELECT id FROM jobs WHERE state IN ({', '.join('?' for _ in states)}) "
                    "AND finished_at < ?"
                )
                params: List[Any] = [s.value for s in states] + [cutoff]
                if queue_name:
                    sql += " AND queue_name = ?"
                    params.append(queue_name)
                ids = [r[0] for r in conn.execute(sql, params).fetchall()]
                self._delete_jobs(conn, ids)
                return len(ids)

        deleted = self._with_retry(op)
        logger.info("Purged %d job(s) older than %s", deleted, older_than)
        return deleted

    def reclaim_expired(self) -> int:
        """Crash recovery: return active jobs with expired leases to waiting.

        Resets without incrementing attempts. Called on startup before any
        worker slot begins leasing.
        """

        def op():
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, worker_id = NULL, lease_expires_at = NULL
                    WHERE state = ? AND lease_expires_at <= ?
                    RETURNING id
                    """,
                    (JobState.WAITING.value, JobState.ACTIVE.value, _ts(self._now())),
                ).fetchall()
                for (job_id,) in rows:
                    self._log_transition(
                        conn, job_id, JobState.ACTIVE.value, JobState.WAITING.value,
                        detail="lease expired (reclaimed)",
                    )
                return len(rows)

        reclaimed = self._with_retry(op)
        if reclaimed:
            logger.warning("Reclaimed %d job(s) with expired leases", reclaimed)
        return reclaimed

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(self, queue_name: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(queue_name)
            except Exception:
                logger.exception("Enqueue listener failed for queue '%s'", queue_name)

    def _trim_terminal(self, conn: sqlite3.Connection, queue_name: str, state: JobState) -> None:
        """Keep only the newest N terminal jobs of a state for a queue."""
        settings = self.queues.get(queue_name)
        if settings is None:
            return
        keep = settings.keep_completed if state is JobState.COMPLETED else settings.keep_failed
        if keep is None:
            return
        ids = [
            r[0]
            for r in conn.execute(
                """
                SELECT id FROM jobs
                WHERE queue_name = ? AND state = ?
                ORDER BY finished_at DESC, rowid DESC
                LIMIT -1 OFFSET ?
                """,
                (queue_name, state.value, keep),
            ).fetchall()
        ]
        self._delete_jobs(conn, ids)

    def _delete_jobs(self, conn: sqlite3.Connection, ids: List[str]) -> None:
        for job_id in ids:
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            conn.execute("DELETE FROM job_events WHERE job_id = ?", (job_id,))

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        """Convert a jobs row to a Job model."""
        return Job(
            id=row["id"],
            queue_name=row["queue_name"],
            type=row["type"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            backoff=BackoffStrategy(type=row["backoff_type"], delay_s=row["backoff_delay_s"]),
            state=JobState(row["state"]),
            created_at=_parse_ts(row["created_at"]),
            run_at=_parse_ts(row["run_at"]),
            processed_at=_parse_ts(row["processed_at"]),
            finished_at=_parse_ts(row["finished_at"]),
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
            worker_id=row["worker_id"],
            cancel_requested=bool(row["cancel_requested"]),
            result=json.loads(row["result"]) if row["result"] else None,
            failure_reason=row["failure_reason"],
        )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        """Log state transition to audit trail (inside the caller's transaction)."""
        conn.execute(
            """
            INSERT INTO job_events (job_id, from_state, to_state, timestamp, worker_id, detail)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                from_state,
                to_state,
                _ts(self._now()),
                worker_id,
                (error or detail or "")[:200] or None,
            ),
        )
