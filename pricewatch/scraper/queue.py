"""Job queue interface for scrape jobs.

The Postgres backend uses ``FOR UPDATE SKIP LOCKED`` so that several
workers can poll the same table without handing out a job twice. Jobs that
fail are rescheduled with exponential backoff; jobs whose worker stops
heart-beating are requeued once and then failed.
"""
from __future__ import annotations

import contextlib
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol
from urllib.parse import urlparse

import psycopg2
from psycopg2.extras import DictCursor, Json

from ..models import ScrapeJob

LOGGER = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


class JobStatus(str, Enum):
    """Job execution status."""

    PENDING = "pending"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


def validate_url(url: str) -> bool:
    """Return True for an ``http``/``https`` URL with a host."""
    if not isinstance(url, str):
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def backoff_delay(attempts: int, base: float) -> float:
    """Seconds to wait before the next attempt after ``attempts`` failures."""
    if attempts < 1:
        return 0.0
    return base * 2 ** (attempts - 1)


class JobQueue(Protocol):
    """Abstract job queue interface."""

    def enqueue(self, url: str) -> str:
        """Add a job for ``url`` and return its id."""
        ...

    def dequeue(self, worker_id: str, limit: int = 1) -> List[ScrapeJob]:
        """Claim up to ``limit`` ready jobs for ``worker_id``."""
        ...

    def mark_completed(self, job_id: str, result: Dict[str, Any]) -> None:
        ...

    def mark_failed(self, job_id: str, error: str, retry: bool = True) -> None:
        """Mark job as failed.

        Parameters
        ----------
        job_id : str
            Job ID
        error : str
            Error message
        retry : bool
            Whether the job may be rescheduled
        """
        ...

    def update_progress(self, job_id: str, percent: int) -> None:
        ...

    def heartbeat(self, job_id: str) -> None:
        """Extend the lock of a job that is still being processed."""
        ...

    def requeue_stalled(self) -> int:
        """Return the number of stalled jobs put back on the queue."""
        ...

    def get_stats(self) -> Dict[str, int]:
        ...


class PostgresJobQueue:
    """Postgres-based job queue over the ``scrape_jobs`` table."""

    def __init__(
        self,
        conn_string: str,
        *,
        max_attempts: int = 3,
        backoff: float = 5.0,
        stall_interval: float = 30.0,
        max_stalled: int = 1,
        conn_factory: Optional[Callable[[], Any]] = None,
        ensure_table: bool = True,
    ) -> None:
        """Initialize Postgres queue.

        Parameters
        ----------
        conn_string : str
            PostgreSQL connection string
        max_attempts : int
            Attempts per job before it is failed for good
        backoff : float
            Base delay in seconds, doubled for each failed attempt
        stall_interval : float
            Seconds without a heartbeat after which an active job is stalled
        max_stalled : int
            Stalls tolerated before the job is failed
        conn_factory : callable, optional
            Returns a new DB-API connection (defaults to ``psycopg2.connect``)
        """
        self.conn_string = conn_string
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.stall_interval = stall_interval
        self.max_stalled = max_stalled
        self._conn_factory = conn_factory
        if ensure_table:
            self._ensure_table()

    def _get_connection(self):
        if self._conn_factory is not None:
            return self._conn_factory()
        return psycopg2.connect(self.conn_string)

    @contextlib.contextmanager
    def _cursor(self, **cursor_kwargs):
        conn = self._get_connection()
        try:
            with conn:
                with conn.cursor(**cursor_kwargs) as cur:
                    yield cur
        finally:
            conn.close()

    def _ensure_table(self) -> None:
        create_sql = """
        CREATE TABLE IF NOT EXISTS scrape_jobs (
            job_id VARCHAR(64) PRIMARY KEY,
            url TEXT NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            stalled_count INTEGER NOT NULL DEFAULT 0,
            progress INTEGER NOT NULL DEFAULT 0,
            run_after TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            locked_until TIMESTAMPTZ,
            worker_id VARCHAR(100),
            result JSONB,
            error_message TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ
        );

        CREATE INDEX IF NOT EXISTS idx_scrape_jobs_ready
            ON scrape_jobs(status, run_after, created_at);
        CREATE INDEX IF NOT EXISTS idx_scrape_jobs_locked
            ON scrape_jobs(status, locked_until);
        """
        with self._cursor() as cur:
            cur.execute(create_sql)
        LOGGER.info("Ensured scrape_jobs table exists")

    def enqueue(self, url: str) -> str:
        """Add a job for ``url``.

        Raises
        ------
        ValueError
            If ``url`` is not an http(s) URL with a host
        """
        return self.enqueue_batch([url])[0]

    def enqueue_batch(self, urls: Iterable[str]) -> List[str]:
        """Add one job per URL in a single transaction; return the job ids."""
        urls = [url.strip() for url in urls]
        for url in urls:
            if not validate_url(url):
                raise ValueError(f"Invalid URL: {url!r}")

        insert_sql = """
        INSERT INTO scrape_jobs (job_id, url, max_attempts)
        VALUES (%s, %s, %s)
        """
        job_ids = []
        with self._cursor() as cur:
            for url in urls:
                job_id = uuid.uuid4().hex
                cur.execute(insert_sql, (job_id, url, self.max_attempts))
                job_ids.append(job_id)

        LOGGER.debug("Enqueued %d job(s)", len(job_ids))
        return job_ids

    def dequeue(self, worker_id: str, limit: int = 1) -> List[ScrapeJob]:
        """Claim ready jobs, skipping rows locked by other workers."""
        select_sql = """
        UPDATE scrape_jobs
        SET status = 'active',
            started_at = NOW(),
            locked_until = NOW() + make_interval(secs => %s),
            worker_id = %s
        WHERE job_id IN (
            SELECT job_id
            FROM scrape_jobs
            WHERE status IN ('pending', 'delayed')
              AND run_after <= NOW()
            ORDER BY run_after ASC, created_at ASC
            LIMIT %s
            FOR UPDATE SKIP LOCKED
        )
        RETURNING job_id, url, attempts, created_at
        """
        with self._cursor(cursor_factory=DictCursor) as cur:
            cur.execute(select_sql, (self.stall_interval, worker_id, limit))
            rows = cur.fetchall()

        jobs = [
            ScrapeJob(
                id=row["job_id"],
                url=row["url"],
                attempts_made=row["attempts"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
        if jobs:
            LOGGER.info("Dequeued %d job(s) for worker %s", len(jobs), worker_id)
        return jobs

    def mark_completed(self, job_id: str, result: Dict[str, Any]) -> None:
        update_sql = """
        UPDATE scrape_jobs
        SET status = 'completed',
            progress = 100,
            result = %s,
            error_message = NULL,
            locked_until = NULL,
            completed_at = NOW()
        WHERE job_id = %s
        """
        with self._cursor() as cur:
            cur.execute(update_sql, (Json(result), job_id))
        LOGGER.debug("Marked job %s as completed", job_id)

    def mark_failed(self, job_id: str, error: str, retry: bool = True) -> None:
        check_sql = "SELECT attempts, max_attempts FROM scrape_jobs WHERE job_id = %s FOR UPDATE"
        with self._cursor() as cur:
            cur.execute(check_sql, (job_id,))
            row = cur.fetchone()
            if not row:
                LOGGER.warning("Job %s not found", job_id)
                return

            attempts = row[0] + 1
            max_attempts = row[1]
            if retry and attempts < max_attempts:
                delay = backoff_delay(attempts, self.backoff)
                cur.execute(
                    """
                    UPDATE scrape_jobs
                    SET status = 'delayed',
                        attempts = %s,
                        error_message = %s,
                        locked_until = NULL,
                        run_after = NOW() + make_interval(secs => %s)
                    WHERE job_id = %s
                    """,
                    (attempts, error, delay, job_id),
                )
                new_status = JobStatus.DELAYED
            else:
                cur.execute(
                    """
                    UPDATE scrape_jobs
                    SET status = 'failed',
                        attempts = %s,
                        error_message = %s,
                        locked_until = NULL,
                        completed_at = NOW()
                    WHERE job_id = %s
                    """,
                    (attempts, error, job_id),
                )
                new_status = JobStatus.FAILED

        LOGGER.warning(
            "Marked job %s as %s (attempt %d/%d): %s",
            job_id,
            new_status.value,
            attempts,
            max_attempts,
            error,
        )

    def update_progress(self, job_id: str, percent: int) -> None:
        """Store progress and extend the job's lock (heartbeat)."""
        update_sql = """
        UPDATE scrape_jobs
        SET progress = %s,
            locked_until = NOW() + make_interval(secs => %s)
        WHERE job_id = %s AND status = 'active'
        """
        with self._cursor() as cur:
            cur.execute(update_sql, (percent, self.stall_interval, job_id))

    def heartbeat(self, job_id: str) -> None:
        """Extend the job's lock without touching its progress."""
        update_sql = """
        UPDATE scrape_jobs
        SET locked_until = NOW() + make_interval(secs => %s)
        WHERE job_id = %s AND status = 'active'
        """
        with self._cursor() as cur:
            cur.execute(update_sql, (self.stall_interval, job_id))

    def requeue_stalled(self) -> int:
        """Requeue active jobs whose lock expired; fail repeat offenders."""
        fail_sql = """
        UPDATE scrape_jobs
        SET status = 'failed',
            error_message = %s,
            locked_until = NULL,
            completed_at = NOW()
        WHERE status = 'active'
          AND locked_until < NOW()
          AND stalled_count >= %s
        RETURNING job_id
        """
        requeue_sql = """
        UPDATE scrape_jobs
        SET status = 'pending',
            stalled_count = stalled_count + 1,
            locked_until = NULL,
            worker_id = NULL
        WHERE status = 'active'
          AND locked_until < NOW()
        RETURNING job_id
        """
        with self._cursor() as cur:
            cur.execute(fail_sql, (STALLED_ERROR, self.max_stalled))
            failed = [row[0] for row in cur.fetchall()]
            cur.execute(requeue_sql)
            requeued = [row[0] for row in cur.fetchall()]

        for job_id in failed:
            LOGGER.error("Job %s failed: %s", job_id, STALLED_ERROR)
        for job_id in requeued:
            LOGGER.warning("Job %s stalled, requeued", job_id)
        return len(requeued)

    def get_stats(self) -> Dict[str, int]:
        stats_sql = """
        SELECT status, COUNT(*) AS count
        FROM scrape_jobs
        GROUP BY status
        """
        with self._cursor(cursor_factory=DictCursor) as cur:
            cur.execute(stats_sql)
            rows = cur.fetchall()
        return {row["status"]: row["count"] for row in rows}

    def purge_completed(self, older_than_days: int = 7) -> int:
        """Remove completed jobs finished more than ``older_than_days`` ago."""
        delete_sql = """
        DELETE FROM scrape_jobs
        WHERE status = 'completed'
          AND completed_at < NOW() - make_interval(days => %s)
        """
        with self._cursor() as cur:
            cur.execute(delete_sql, (older_than_days,))
            count = cur.rowcount

        if count > 0:
            LOGGER.info("Purged %d completed job(s)", count)
        return count
