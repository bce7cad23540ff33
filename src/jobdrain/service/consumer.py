"""Trigger poller process entrypoint."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable

from jobdrain.logging import configure_logging
from jobdrain.scheduler import Scheduler
from jobdrain.service.config import WorkerSettings, settings
from jobdrain.triggers import Trigger, TriggerFacility

logger = logging.getLogger(__name__)

FireCallback = Callable[[Trigger], None]


class TriggerPoller:
    """Claim due triggers and hand them off, reconciling queues now and then."""

    def __init__(
        self,
        triggers: TriggerFacility,
        scheduler: Scheduler,
        fire: FireCallback,
        settings: WorkerSettings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.triggers = triggers
        self.scheduler = scheduler
        self.fire = fire
        self.settings = settings
        self.clock = clock
        self._last_reconcile: float | None = None

    def poll_once(self) -> int:
        """Fire every due trigger. Returns how many were handed off."""
        now = self.clock()
        self._maybe_reconcile(now)

        fired = 0
        for trigger in self.triggers.claim_due(int(now), self.settings.trigger_claim_limit):
            try:
                self.fire(trigger)
                fired += 1
            except Exception:
                logger.exception("Failed to fire trigger=%s", trigger.id)
        return fired

    def run_forever(self, stop: threading.Event) -> None:
        logger.info(
            "Polling triggers queues=%s interval=%ss",
            self.settings.queue_names,
            self.settings.trigger_poll_interval_seconds,
        )
        while not stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Trigger poll iteration failed")
            stop.wait(self.settings.trigger_poll_interval_seconds)

    def _maybe_reconcile(self, now: float) -> None:
        if (
            self._last_reconcile is not None
            and now - self._last_reconcile < self.settings.reconcile_interval_seconds
        ):
            return
        self._last_reconcile = now
        scheduled = self.scheduler.reconcile(self.settings.queue_names)
        if scheduled:
            logger.info("Reconcile scheduled %s queues", scheduled)


def send_to_dramatiq(trigger: Trigger) -> None:
    """Deliver a fired trigger to the drain actor."""
    from jobdrain.service.actors import drain_queue

    drain_queue.send(trigger.queue, trigger.fire_at)


def _safe_import_actors() -> bool:
    """Import actors while surfacing startup errors clearly."""
    try:
        import jobdrain.service.actors  # noqa: F401

        return True
    except Exception:
        logger.exception("Failed to import actor module during worker startup")
        return False


def run() -> None:
    """Start the Dramatiq worker and the trigger poller."""
    import dramatiq
    from dramatiq import Worker

    from jobdrain.service.container import get_queue_system

    worker: Worker | None = None
    stop_requested = threading.Event()

    if not _safe_import_actors():
        raise RuntimeError("Worker startup aborted due to actor import failure.")

    configure_logging(settings.log_level)

    def _handle_shutdown_signal(signal_number: int, _frame: object) -> None:
        logger.info(
            "Received shutdown signal=%s for worker=%s",
            signal_number,
            settings.worker_name,
        )
        stop_requested.set()

    if hasattr(signal, "SIGINT"):
        signal.signal(signal.SIGINT, _handle_shutdown_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_shutdown_signal)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _handle_shutdown_signal)

    try:
        system = get_queue_system()
        broker = dramatiq.get_broker()
        logger.debug("Resolved dramatiq broker=%s", type(broker).__name__)

        worker = Worker(broker, queues={settings.dramatiq_queue_name})
        logger.info(
            "Starting worker name=%s queues=%s", settings.worker_name, settings.queue_names
        )
        worker.start()

        poller = TriggerPoller(system.triggers, system.scheduler, send_to_dramatiq, settings)
        poller.run_forever(stop_requested)
    except Exception:
        logger.exception("Worker initialization or execution failed name=%s", settings.worker_name)
        raise
    finally:
        if worker is not None:
            try:
                logger.info("Stopping worker name=%s", settings.worker_name)
                worker.stop(timeout=settings.dramatiq_stop_timeout_seconds * 1000)
            except Exception:
                logger.exception("Worker stop failed name=%s", settings.worker_name)


if __name__ == "__main__":
    run()
