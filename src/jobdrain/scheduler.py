"""Adaptive scheduler that sizes concurrent drain runs to the backlog."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable

from jobdrain.events import EventDispatcher, JobQueued, RunComplete
from jobdrain.jobs import DEFAULT_QUEUE
from jobdrain.lifecycle import Lifecycle
from jobdrain.manager import QueueManager
from jobdrain.queue import Clock, ReportsAvailability, error_detail, utcnow
from jobdrain.settings import QueueOptionName, SharedSettings
from jobdrain.triggers import TriggerFacility
from jobdrain.worker import Worker

logger = logging.getLogger(__name__)

STAGGER_SECONDS = 5


class Scheduler:
    """Keep enough staggered triggers registered to drain each queue.

    Queues touched during a unit of work are collected and scheduled once,
    when the lifecycle terminates. Each finished run reschedules its queue,
    so the loop stops on its own when the queue is empty.

    One scheduler serves every worker thread and request, so the collected
    set is guarded by a lock. A queue collected while another unit of work's
    flush is pending is scheduled by that flush.
    """

    def __init__(
        self,
        manager: QueueManager,
        triggers: TriggerFacility,
        worker: Worker,
        lifecycle: Lifecycle,
        settings: SharedSettings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.manager = manager
        self.triggers = triggers
        self.worker = worker
        self.lifecycle = lifecycle
        self.settings = settings
        self.clock = clock
        self._pending: dict[str, None] = {}
        self._attached = False
        self._pending_lock = threading.Lock()

    def register(self, events: EventDispatcher) -> None:
        events.listen(JobQueued, self.on_job_queued)
        events.listen(RunComplete, self.on_run_complete)

    @property
    def pending_queues(self) -> list[str]:
        with self._pending_lock:
            return list(self._pending)

    def on_job_queued(self, event: JobQueued) -> None:
        with self._pending_lock:
            self._pending[event.queue] = None
            if self._attached:
                return
            self._attached = True
        self.lifecycle.after_response(self.flush)

    def flush(self) -> None:
        """Schedule every queue collected since the last flush."""
        with self._pending_lock:
            queues = list(self._pending)
            self._pending.clear()
            self._attached = False
        for queue in queues:
            self.schedule_next_run(queue)

    def option(self, key: QueueOptionName, queue: str) -> int:
        return int(
            self.settings.queue_option(key, queue=queue, provider=self.manager.default_driver())
        )

    def schedule_next_run(self, queue: str = DEFAULT_QUEUE) -> bool:
        """Register the triggers needed to drain queue. Returns True if any were added.

        Drain triggers occupy the stagger slots `now + delay + i * STAGGER_SECONDS`
        for `i < max_concurrent_batches`. While the queue has eligible work, a
        trigger beyond the last slot (a wake-up for delayed jobs) is cancelled
        so it neither holds a slot nor delays the backlog; a fresh wake-up is
        registered once the queue drains.
        """
        try:
            provider = self.manager.get_provider()
            pending = provider.pending_count(queue)
        except Exception as exc:
            logger.error("Cannot size queue=%s: %s", queue, error_detail(exc))
            return False

        if pending == 0:
            self.unschedule(queue)
            self._schedule_wake_up(provider, queue)
            return False

        max_batches = max(1, self.option("max_concurrent_batches", queue))
        batch_size = max(1, self.option("batch_size", queue))
        delay = max(0, self.option("delay", queue))

        first_slot = int(self.clock().timestamp()) + delay
        last_slot = first_slot + (max_batches - 1) * STAGGER_SECONDS
        taken: set[int] = set()
        try:
            for trigger in self.triggers.scheduled(queue):
                if trigger.fire_at > last_slot:
                    self.triggers.cancel(trigger.id)
                    logger.debug("Cancelled wake-up queue=%s fire_at=%s", queue, trigger.fire_at)
                else:
                    taken.add(trigger.fire_at)
        except Exception as exc:
            logger.error("Cannot read triggers queue=%s: %s", queue, error_detail(exc))
            return False

        already = len(taken)
        to_schedule = min(max_batches, math.ceil(pending / batch_size)) - already
        if to_schedule <= 0:
            return False

        scheduled = 0
        for index in range(max_batches):
            if scheduled == to_schedule:
                break
            fire_at = first_slot + index * STAGGER_SECONDS
            if fire_at in taken:
                continue
            if self._register(queue, fire_at):
                scheduled += 1

        logger.info(
            "Scheduled queue=%s pending=%s existing=%s added=%s",
            queue,
            pending,
            already,
            scheduled,
        )
        return scheduled > 0

    def schedule(self, queue: str = DEFAULT_QUEUE, delay: int = 0) -> bool:
        fire_at = int(self.clock().timestamp()) + int(delay)
        return self._register(queue, fire_at)

    def unschedule(self, queue: str = DEFAULT_QUEUE) -> int:
        """Cancel every trigger registered for queue. Returns how many were cancelled."""
        cancelled = 0
        for trigger in self.triggers.scheduled(queue):
            if self.triggers.cancel(trigger.id):
                cancelled += 1
        if cancelled:
            logger.debug("Unscheduled queue=%s triggers=%s", queue, cancelled)
        return cancelled

    def scheduled_count(self, queue: str = DEFAULT_QUEUE) -> int:
        return len(self.triggers.scheduled(queue))

    def run(self, queue: str | None = None, scheduled_at: int | None = None) -> int:
        """Drain one batch of queue; called when a trigger fires."""
        queue = queue or DEFAULT_QUEUE
        logger.debug("Trigger fired queue=%s scheduled_at=%s", queue, scheduled_at)
        return self.worker.run(self.option("batch_size", queue), queue)

    def on_run_complete(self, event: RunComplete) -> None:
        self.schedule_next_run(event.queue)

    def reconcile(self, queues: Iterable[str]) -> int:
        """Re-run sizing for queues; recovers queues whose runs died mid-batch."""
        return sum(1 for queue in queues if self.schedule_next_run(queue))

    def _schedule_wake_up(self, provider: object, queue: str) -> None:
        if not isinstance(provider, ReportsAvailability):
            return
        try:
            next_at = provider.next_available_at(queue)
        except Exception as exc:
            logger.error("Cannot read next availability queue=%s: %s", queue, error_detail(exc))
            return
        if next_at is None:
            return
        fire_at = math.ceil(next_at.timestamp())
        if self._register(queue, fire_at):
            logger.debug("Scheduled wake-up queue=%s fire_at=%s", queue, fire_at)

    def _register(self, queue: str, fire_at: int) -> bool:
        try:
            trigger = self.triggers.register(fire_at, (queue, fire_at))
        except Exception as exc:
            logger.error("Trigger registration failed queue=%s: %s", queue, error_detail(exc))
            return False
        return trigger is not None
