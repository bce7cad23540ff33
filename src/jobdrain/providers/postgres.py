"""PostgreSQL queue provider."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any

from psycopg import Connection, connect
from psycopg import Error as PsycopgError
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from jobdrain.exceptions import JobSerializationError, StorageError
from jobdrain.jobs import DEFAULT_QUEUE, Job, decode_job, encode_job, job_type
from jobdrain.queue import (
    JobRecord,
    JobStatus,
    Lease,
    LeasedJob,
    error_detail,
    utcnow,
)
from jobdrain.settings import SharedSettings

logger = logging.getLogger(__name__)

_ELIGIBLE = """
    queue = %(queue)s
    AND status IN ('pending', 'running')
    AND available_at <= NOW()
    AND (locked_until IS NULL OR locked_until <= NOW())
"""

_POP_QUERY = f"""
    WITH next_jobs AS (
        SELECT id
        FROM queue_jobs
        WHERE {_ELIGIBLE}
        ORDER BY available_at, created_at
        LIMIT %(count)s
        FOR UPDATE SKIP LOCKED
    )
    UPDATE queue_jobs AS j
    SET status = 'running',
        attempts = j.attempts + 1,
        locked_until = NOW() + make_interval(
            secs => COALESCE(j.timeout_seconds, %(lease_seconds)s)
        ),
        failed = FALSE,
        updated_at = NOW()
    FROM next_jobs
    WHERE j.id = next_jobs.id
    RETURNING j.*;
"""


def get_postgres_connection(settings: SharedSettings) -> Connection:
    """Create a PostgreSQL connection from shared settings."""
    return connect(settings.postgres_url)


def is_postgres_healthy(settings: SharedSettings) -> bool:
    """Return whether Postgres is reachable and queryable."""
    try:
        with get_postgres_connection(settings) as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
        return True
    except Exception:
        return False


def _parse_status(value: str) -> JobStatus:
    """Cast DB status text into `JobStatus`."""
    try:
        return JobStatus(value)
    except ValueError:
        logger.warning("Unknown job status from DB: %s", value)
        return JobStatus.FAILED


def _as_record(row: dict[str, Any], job: Job | None) -> JobRecord:
    """Build a typed job record from a DB row."""
    return JobRecord(
        id=str(row["id"]),
        queue=row["queue"],
        job_type=row["job_type"],
        job=job,
        status=_parse_status(row["status"]),
        attempts=row["attempts"],
        available_at=row["available_at"],
        lease=Lease(locked_until=row["locked_until"], failed=row["failed"]),
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _decode_row(row: dict[str, Any]) -> Job | None:
    try:
        return decode_job(row["payload"] or {})
    except JobSerializationError:
        logger.exception("Undecodable payload for job_id=%s", row["id"])
        return None


class PostgresLeasedJob(LeasedJob):
    """Leased job backed by a `queue_jobs` row."""

    def __init__(self, record: JobRecord, provider: PostgresProvider) -> None:
        super().__init__(record)
        self.provider = provider

    def delete(self) -> None:
        self.provider.forget(self.id)

    def _renew(self) -> Lease | None:
        row = self.provider._fetchone(
            """
            UPDATE queue_jobs
            SET locked_until = NOW() + make_interval(
                    secs => COALESCE(timeout_seconds, %(lease_seconds)s)
                ),
                updated_at = NOW()
            WHERE id = %(id)s AND status = 'running' AND attempts = %(attempts)s
            RETURNING locked_until;
            """,
            {
                "id": self.id,
                "attempts": self.attempts,
                "lease_seconds": self.provider.lease_seconds,
            },
        )
        if row is None:
            return None
        return Lease(locked_until=row["locked_until"])

    def _release(self, error: str, retry_at: datetime) -> None:
        self.provider._execute(
            """
            UPDATE queue_jobs
            SET status = 'pending',
                locked_until = %s,
                failed = TRUE,
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s;
            """,
            (retry_at, error, self.id),
        )

    def _mark_failed(self, error: str) -> None:
        self.provider._execute(
            """
            UPDATE queue_jobs
            SET status = 'failed',
                locked_until = NULL,
                failed = TRUE,
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s;
            """,
            (error, self.id),
        )


class PostgresProvider:
    """Provider persisting jobs in the `queue_jobs` table.

    Pushes issued before `mark_ready` are buffered in memory and written in
    order once the provider is marked ready, so jobs dispatched during
    process bootstrap are not lost while the database is still being set up.
    """

    def __init__(self, settings: SharedSettings, *, ready: bool = True) -> None:
        self.settings = settings
        self.lease_seconds = settings.queue_lease_seconds
        self._ready = ready
        self._buffer: list[Job] = []
        self._buffer_lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready

    def mark_ready(self) -> int:
        """Flush buffered pushes. Returns how many jobs were written."""
        with self._buffer_lock:
            self._ready = True
            buffered, self._buffer = self._buffer, []
        for job in buffered:
            self._insert(job)
        if buffered:
            logger.info("Flushed %s buffered jobs", len(buffered))
        return len(buffered)

    def push(self, job: Job) -> bool:
        with self._buffer_lock:
            if not self._ready:
                self._buffer.append(job)
                return True
        self._insert(job)
        return True

    def pop(self, queue: str = DEFAULT_QUEUE, count: int = 1) -> list[LeasedJob]:
        if count < 1:
            return []
        params = {"queue": queue, "count": count, "lease_seconds": self.lease_seconds}
        leased: list[LeasedJob] = []
        broken: list[tuple[str, str]] = []
        try:
            with get_postgres_connection(self.settings) as conn:
                with conn.cursor(row_factory=dict_row) as cursor:
                    cursor.execute(_POP_QUERY, params)
                    rows = sorted(
                        cursor.fetchall(),
                        key=lambda row: (row["available_at"], row["created_at"]),
                    )
                    for row in rows:
                        job = _decode_row(row)
                        if job is None:
                            broken.append((str(row["id"]), "JobSerializationError: undecodable payload"))
                            continue
                        leased.append(PostgresLeasedJob(_as_record(row, job), self))
                    for job_id, error in broken:
                        cursor.execute(
                            """
                            UPDATE queue_jobs
                            SET status = 'failed',
                                locked_until = NULL,
                                failed = TRUE,
                                last_error = %s,
                                updated_at = NOW()
                            WHERE id = %s;
                            """,
                            (error, job_id),
                        )
        except PsycopgError as exc:
            raise StorageError(f"Failed to pop from queue {queue}: {error_detail(exc)}") from exc
        return leased

    def pending_count(self, queue: str = DEFAULT_QUEUE) -> int:
        row = self._fetchone(
            f"SELECT COUNT(*) AS pending FROM queue_jobs WHERE {_ELIGIBLE};",
            {"queue": queue},
        )
        return int(row["pending"]) if row else 0

    def in_queue(self, job: Job, queue: str | None = None) -> bool:
        row = self._fetchone(
            """
            SELECT 1 AS found
            FROM queue_jobs
            WHERE queue = %(queue)s
              AND status IN ('pending', 'running')
              AND payload = %(payload)s
            LIMIT 1;
            """,
            {"queue": queue or job.queue, "payload": Jsonb(encode_job(job))},
        )
        return row is not None

    def next_available_at(self, queue: str = DEFAULT_QUEUE) -> datetime | None:
        row = self._fetchone(
            """
            SELECT MIN(ready_at) AS next_at
            FROM (
                SELECT GREATEST(available_at, COALESCE(locked_until, available_at)) AS ready_at
                FROM queue_jobs
                WHERE queue = %(queue)s AND status IN ('pending', 'running')
            ) AS upcoming
            WHERE ready_at > NOW();
            """,
            {"queue": queue},
        )
        return row["next_at"] if row else None

    def find(self, job_id: str) -> JobRecord | None:
        row = self._fetchone("SELECT * FROM queue_jobs WHERE id = %(id)s;", {"id": job_id})
        if row is None:
            return None
        return _as_record(row, _decode_row(row))

    def failed_jobs(self, queue: str | None = None, limit: int = 50) -> list[JobRecord]:
        query = "SELECT * FROM queue_jobs WHERE status = 'failed'"
        params: dict[str, Any] = {"limit": limit}
        if queue is not None:
            query += " AND queue = %(queue)s"
            params["queue"] = queue
        query += " ORDER BY updated_at DESC LIMIT %(limit)s;"
        try:
            with get_postgres_connection(self.settings) as conn:
                with conn.cursor(row_factory=dict_row) as cursor:
                    cursor.execute(query, params)
                    rows = cursor.fetchall()
        except PsycopgError as exc:
            raise StorageError(f"Failed to list failed jobs: {error_detail(exc)}") from exc
        return [_as_record(row, _decode_row(row)) for row in rows]

    def retry(self, job_id: str) -> JobRecord | None:
        """Put a failed row back on its queue with a fresh attempt budget."""
        row = self._fetchone(
            """
            UPDATE queue_jobs
            SET status = 'pending',
                attempts = 0,
                available_at = NOW(),
                locked_until = NULL,
                failed = FALSE,
                last_error = NULL,
                updated_at = NOW()
            WHERE id = %(id)s AND status = 'failed'
            RETURNING *;
            """,
            {"id": job_id},
        )
        if row is None:
            return None
        return _as_record(row, _decode_row(row))

    def forget(self, job_id: str) -> bool:
        row = self._fetchone(
            "DELETE FROM queue_jobs WHERE id = %(id)s RETURNING id;",
            {"id": job_id},
        )
        return row is not None

    def _insert(self, job: Job) -> None:
        payload = encode_job(job)
        row = self._fetchone(
            """
            INSERT INTO queue_jobs (
                queue,
                job_type,
                payload,
                status,
                attempts,
                timeout_seconds,
                available_at
            ) VALUES (
                %(queue)s,
                %(job_type)s,
                %(payload)s,
                'pending',
                0,
                %(timeout)s,
                COALESCE(%(available_at)s, NOW())
            )
            RETURNING id;
            """,
            {
                "queue": job.queue,
                "job_type": job_type(job),
                "payload": Jsonb(payload),
                "timeout": job.timeout,
                "available_at": job.available_at(utcnow()) if job.delay is not None else None,
            },
        )
        if row is not None:
            logger.debug("Pushed job_id=%s queue=%s", row["id"], job.queue)

    def _fetchone(self, query: str, params: dict[str, Any]) -> dict[str, Any] | None:
        try:
            with get_postgres_connection(self.settings) as conn:
                with conn.cursor(row_factory=dict_row) as cursor:
                    cursor.execute(query, params)
                    return cursor.fetchone()
        except PsycopgError as exc:
            raise StorageError(f"Queue storage query failed: {error_detail(exc)}") from exc

    def _execute(self, query: str, params: tuple[Any, ...]) -> None:
        try:
            with get_postgres_connection(self.settings) as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
        except PsycopgError as exc:
            raise StorageError(f"Queue storage update failed: {error_detail(exc)}") from exc
