"""Batch worker that drains leased jobs from a queue."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from jobdrain.events import (
    EventDispatcher,
    JobFailed,
    JobProcessed,
    JobProcessing,
    RunComplete,
    RunStart,
)
from jobdrain.exceptions import JobTimeoutError, MaxAttemptsExceeded
from jobdrain.jobs import DEFAULT_QUEUE
from jobdrain.manager import QueueManager
from jobdrain.queue import Clock, LeasedJob, error_detail, utcnow

logger = logging.getLogger(__name__)


def _run_with_timeout(job: LeasedJob, timeout: float) -> Any:
    """Run the job on a helper thread and give up after timeout seconds.

    Python threads cannot be killed, so an overrunning handler keeps running
    in the background while its record stays locked.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"job-{job.id}")
    future = executor.submit(job.fire)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        raise JobTimeoutError(
            f"{job.job.display_name} exceeded its {timeout:g}s timeout"
        ) from exc
    finally:
        executor.shutdown(wait=False)


class Worker:
    """Pop one batch from a queue and run each job in order."""

    def __init__(
        self,
        manager: QueueManager,
        events: EventDispatcher,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.manager = manager
        self.events = events
        self.clock = clock

    def run(self, batch_size: int, queue: str = DEFAULT_QUEUE) -> int:
        """Process up to batch_size jobs. Returns the number that succeeded."""
        provider = self.manager.get_provider()
        jobs = provider.pop(queue, batch_size)
        logger.info("Starting run queue=%s jobs=%s", queue, len(jobs))

        succeeded = 0
        try:
            self.events.dispatch(RunStart(provider=provider, queue=queue, jobs=jobs))
            for job in jobs:
                if not self._still_owned(job):
                    continue
                self.events.dispatch(JobProcessing(provider=provider, job=job))
                try:
                    self.process(job)
                except Exception as exc:
                    logger.exception(
                        "Job failed job_id=%s attempt=%s error=%s",
                        job.id,
                        job.attempts,
                        error_detail(exc),
                    )
                    job.fail(exc)
                    self.events.dispatch(JobFailed(provider=provider, job=job, error=exc))
                    continue

                job.delete()
                succeeded += 1
                logger.info("Completed job_id=%s type=%s", job.id, job.job.display_name)
                self.events.dispatch(JobProcessed(provider=provider, job=job))
        finally:
            self.events.dispatch(RunComplete(provider=provider, queue=queue, jobs=jobs))

        logger.info("Finished run queue=%s succeeded=%s total=%s", queue, succeeded, len(jobs))
        return succeeded

    def _still_owned(self, job: LeasedJob) -> bool:
        try:
            owned = job.renew()
        except Exception as exc:
            logger.error("Cannot renew lease job_id=%s: %s", job.id, error_detail(exc))
            return False
        if not owned:
            logger.warning("Skipping job_id=%s: lease lapsed and another run claimed it", job.id)
        return owned

    def process(self, job: LeasedJob) -> Any:
        """Run one leased job, enforcing its attempt and time limits."""
        policy = job.job
        if policy.tries is not None and job.attempts > policy.max_tries:
            raise MaxAttemptsExceeded(
                f"{policy.display_name} has been attempted too many times ({job.attempts})"
            )
        if policy.expired(self.clock()):
            raise JobTimeoutError(f"{policy.display_name} passed its retry deadline")

        if policy.timeout:
            return _run_with_timeout(job, policy.timeout)
        return job.fire()
