"""Producer-facing job dispatch."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from jobdrain.events import EventDispatcher, JobQueued
from jobdrain.jobs import Job, ShouldQueue, as_job
from jobdrain.lifecycle import Lifecycle
from jobdrain.manager import QueueManager

logger = logging.getLogger(__name__)

Dispatchable = Job | Callable[..., Any]


class Dispatcher:
    """Route work to the default provider or run it in place."""

    def __init__(
        self,
        manager: QueueManager,
        events: EventDispatcher,
        lifecycle: Lifecycle,
    ) -> None:
        self.manager = manager
        self.events = events
        self.lifecycle = lifecycle

    def dispatch(self, work: Dispatchable) -> Any:
        """Queue work, or run it now when it is not a `ShouldQueue` job.

        Returns the provider's push result for queued work and the handler's
        return value for synchronous work.
        """
        job = as_job(work)
        if not isinstance(job, ShouldQueue):
            return self.dispatch_now(job)

        provider = self.manager.get_provider()
        pushed = provider.push(job)
        logger.info("Queued job=%s queue=%s", job.display_name, job.queue)
        self.events.dispatch(JobQueued(provider=provider, job=job, queue=job.queue))
        return pushed

    def dispatch_now(self, work: Dispatchable) -> Any:
        """Run work synchronously in the caller's context."""
        return as_job(work).handle()

    def dispatch_after_response(self, work: Dispatchable) -> None:
        """Run work synchronously once the current unit of work ends."""
        job = as_job(work)
        self.lifecycle.after_response(lambda: self.dispatch_now(job))

    def dispatch_unless_queued(self, work: Dispatchable) -> bool:
        """Queue work unless an equal job is already waiting on its queue."""
        job = as_job(work)
        provider = self.manager.get_provider()
        if provider.in_queue(job, job.queue):
            logger.debug("Skipping duplicate job=%s queue=%s", job.display_name, job.queue)
            return False
        self.dispatch(job)
        return True
