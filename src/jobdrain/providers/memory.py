"""In-process queue provider."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from jobdrain.jobs import DEFAULT_QUEUE, Job, job_type
from jobdrain.queue import (
    Clock,
    JobRecord,
    JobStatus,
    Lease,
    LeasedJob,
    utcnow,
)

logger = logging.getLogger(__name__)


class MemoryLeasedJob(LeasedJob):
    """Leased job backed by a `MemoryProvider` record."""

    def __init__(self, record: JobRecord, provider: MemoryProvider) -> None:
        super().__init__(record, clock=provider.clock)
        self.provider = provider

    def delete(self) -> None:
        self.provider.forget(self.id)

    def _renew(self) -> Lease | None:
        seconds = self.job.timeout or self.provider.lease_seconds
        return self.provider._extend_lease(self.id, self.attempts, seconds)

    def _release(self, error: str, retry_at: datetime) -> None:
        self.provider._update(
            self.id,
            status=JobStatus.PENDING,
            lease=Lease(locked_until=retry_at, failed=True),
            last_error=error,
        )

    def _mark_failed(self, error: str) -> None:
        self.provider._update(
            self.id,
            status=JobStatus.FAILED,
            lease=Lease(locked_until=None, failed=True),
            last_error=error,
        )


class MemoryProvider:
    """Thread-safe provider holding jobs in process memory.

    Jobs are stored as live objects, so closures and lambdas work here even
    though a serializing provider would reject them.
    """

    def __init__(self, *, lease_seconds: int = 600, clock: Clock = utcnow) -> None:
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, JobRecord] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()

    def push(self, job: Job) -> bool:
        now = self.clock()
        record = JobRecord(
            id=str(uuid4()),
            queue=job.queue,
            job_type=job_type(job),
            job=job,
            status=JobStatus.PENDING,
            attempts=0,
            available_at=job.available_at(now),
            lease=Lease(),
            last_error=None,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._records[record.id] = record
            self._sequence[record.id] = next(self._counter)
        logger.debug("Pushed job_id=%s queue=%s type=%s", record.id, record.queue, record.job_type)
        return True

    def pop(self, queue: str = DEFAULT_QUEUE, count: int = 1) -> list[LeasedJob]:
        now = self.clock()
        leased: list[LeasedJob] = []
        with self._lock:
            for record in self._eligible(queue, now)[: max(0, count)]:
                assert record.job is not None
                lease_seconds = record.job.timeout or self.lease_seconds
                claimed = replace(
                    record,
                    status=JobStatus.RUNNING,
                    attempts=record.attempts + 1,
                    lease=Lease(locked_until=now + timedelta(seconds=lease_seconds)),
                    updated_at=now,
                )
                self._records[record.id] = claimed
                leased.append(MemoryLeasedJob(claimed, self))
        return leased

    def pending_count(self, queue: str = DEFAULT_QUEUE) -> int:
        now = self.clock()
        with self._lock:
            return len(self._eligible(queue, now))

    def in_queue(self, job: Job, queue: str | None = None) -> bool:
        queue = queue or job.queue
        with self._lock:
            return any(
                record.queue == queue
                and record.status != JobStatus.FAILED
                and record.job == job
                for record in self._records.values()
            )

    def next_available_at(self, queue: str = DEFAULT_QUEUE) -> datetime | None:
        now = self.clock()
        with self._lock:
            upcoming = [
                max(record.available_at, record.lease.locked_until or record.available_at)
                for record in self._records.values()
                if record.queue == queue and record.status != JobStatus.FAILED
            ]
        future = [moment for moment in upcoming if moment > now]
        return min(future) if future else None

    def find(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._records.get(job_id)

    def failed_jobs(self, queue: str | None = None, limit: int = 50) -> list[JobRecord]:
        with self._lock:
            failed = [
                record
                for record in self._records.values()
                if record.status == JobStatus.FAILED and (queue is None or record.queue == queue)
            ]
        return failed[:limit]

    def retry(self, job_id: str) -> JobRecord | None:
        """Put a failed record back on its queue with a fresh attempt budget."""
        with self._lock:
            record = self._records.get(job_id)
            if record is None or record.status != JobStatus.FAILED:
                return None
            now = self.clock()
            revived = replace(
                record,
                status=JobStatus.PENDING,
                attempts=0,
                available_at=now,
                lease=Lease(),
                last_error=None,
                updated_at=now,
            )
            self._records[job_id] = revived
            return revived

    def forget(self, job_id: str) -> bool:
        with self._lock:
            self._sequence.pop(job_id, None)
            return self._records.pop(job_id, None) is not None

    def _eligible(self, queue: str, now: datetime) -> list[JobRecord]:
        records = [
            record
            for record in self._records.values()
            if record.queue == queue and record.eligible(now)
        ]
        return sorted(records, key=lambda record: (record.available_at, self._sequence[record.id]))

    def _extend_lease(self, job_id: str, attempts: int, seconds: float) -> Lease | None:
        now = self.clock()
        with self._lock:
            record = self._records.get(job_id)
            if (
                record is None
                or record.status != JobStatus.RUNNING
                or record.attempts != attempts
            ):
                return None
            lease = Lease(locked_until=now + timedelta(seconds=seconds))
            self._records[job_id] = replace(record, lease=lease, updated_at=now)
            return lease

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                logger.warning("Cannot update missing job_id=%s", job_id)
                return
            self._records[job_id] = replace(record, updated_at=self.clock(), **changes)
