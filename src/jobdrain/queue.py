"""Queue records, leases and the provider contract."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from jobdrain.exceptions import MaxAttemptsExceeded
from jobdrain.jobs import DEFAULT_QUEUE, Job

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class JobStatus(StrEnum):
    """Persistent job state values used across providers."""

    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"


@dataclass(frozen=True)
class Lease:
    """Per-job claim state."""

    locked_until: datetime | None = None
    failed: bool = False

    def active(self, now: datetime) -> bool:
        """An expired lease counts as no lease at all."""
        return self.locked_until is not None and now < self.locked_until


@dataclass(frozen=True)
class JobRecord:
    """Row-shape view of a persisted job."""

    id: str
    queue: str
    job_type: str
    job: Job | None
    status: JobStatus
    attempts: int
    available_at: datetime
    lease: Lease
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    def eligible(self, now: datetime) -> bool:
        """Whether `pop` may hand this record to a batch."""
        return (
            self.status in {JobStatus.PENDING, JobStatus.RUNNING}
            and self.available_at <= now
            and not self.lease.active(now)
        )


def error_detail(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class LeasedJob(ABC):
    """A job claimed by one batch run.

    Providers return subclasses from `pop`. The worker renews each lease
    right before running the job, then releases it through `delete` on
    success or `fail` on error. Ownership is tracked by attempt number,
    since every claim increments it.
    """

    def __init__(self, record: JobRecord, *, clock: Clock = utcnow) -> None:
        if record.job is None:
            raise ValueError(f"Leased record {record.id} has no decodable job")
        self.record = record
        self.clock = clock
        self.has_failed = False

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def queue(self) -> str:
        return self.record.queue

    @property
    def attempts(self) -> int:
        return self.record.attempts

    @property
    def job(self) -> Job:
        assert self.record.job is not None
        return self.record.job

    def renew(self) -> bool:
        """Re-lock the job for its own run budget right before it starts.

        Returns False when the lease lapsed and another batch has claimed
        the job since, in which case this batch must not run it.
        """
        lease = self._renew()
        if lease is None:
            return False
        self.record = replace(self.record, lease=lease)
        return True

    def fire(self) -> Any:
        """Run the wrapped job."""
        return self.job.handle()

    def fail(self, error: BaseException) -> bool:
        """Record a failed attempt. Returns True when the job failed for good."""
        self.has_failed = True
        now = self.clock()
        job = self.job
        final = (
            isinstance(error, MaxAttemptsExceeded)
            or self.attempts >= job.max_tries
            or job.expired(now)
        )

        if not final:
            retry_at = now + timedelta(seconds=max(0.0, job.retry_after or 0))
            logger.info(
                "Releasing job_id=%s for retry attempt=%s retry_at=%s",
                self.id,
                self.attempts,
                retry_at.isoformat(),
            )
            self._release(error_detail(error), retry_at)
            return False

        logger.warning(
            "Job failed permanently job_id=%s type=%s attempts=%s error=%s",
            self.id,
            self.record.job_type,
            self.attempts,
            error_detail(error),
        )
        self._mark_failed(error_detail(error))
        try:
            job.failed(error)
        except Exception:
            logger.exception("Failure hook raised for job_id=%s", self.id)
        return True

    @abstractmethod
    def _renew(self) -> Lease | None:
        """Extend the lease if this claim still owns the record."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the job after a successful run."""

    @abstractmethod
    def _release(self, error: str, retry_at: datetime) -> None:
        """Return the job to the queue, locked until retry_at."""

    @abstractmethod
    def _mark_failed(self, error: str) -> None:
        """Retain the job as a terminal failed record."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id} job={self.job.display_name}>"


@runtime_checkable
class Provider(Protocol):
    """Pluggable job storage."""

    def push(self, job: Job) -> bool:
        """Persist job durably."""

    def pop(self, queue: str = DEFAULT_QUEUE, count: int = 1) -> list[LeasedJob]:
        """Lease up to count of the oldest eligible jobs of queue."""

    def pending_count(self, queue: str = DEFAULT_QUEUE) -> int:
        """Number of eligible jobs in queue."""

    def in_queue(self, job: Job, queue: str | None = None) -> bool:
        """Whether an equal job is waiting in queue."""


@runtime_checkable
class ReportsAvailability(Protocol):
    """Providers that can tell when the next waiting job becomes eligible."""

    def next_available_at(self, queue: str = DEFAULT_QUEUE) -> datetime | None:
        """Earliest future instant a delayed or leased job can be claimed."""


@runtime_checkable
class InspectsJobs(Protocol):
    """Providers that expose retained records to operators."""

    def find(self, job_id: str) -> JobRecord | None: ...

    def failed_jobs(
        self, queue: str | None = None, limit: int = 50
    ) -> list[JobRecord]: ...

    def retry(self, job_id: str) -> JobRecord | None: ...

    def forget(self, job_id: str) -> bool: ...


def parse_queue_names(raw_queue_names: str) -> list[str]:
    """Normalize comma-separated queue names."""
    names = [name.strip() for name in raw_queue_names.split(",")]
    return [name for name in names if name]
