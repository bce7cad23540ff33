"""Per-process wiring of the queue components."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from jobdrain.dispatcher import Dispatcher
from jobdrain.events import EventDispatcher
from jobdrain.lifecycle import Lifecycle
from jobdrain.manager import QueueManager
from jobdrain.providers.memory import MemoryProvider
from jobdrain.providers.postgres import PostgresProvider
from jobdrain.scheduler import Scheduler
from jobdrain.settings import SharedSettings
from jobdrain.triggers import RedisTriggers, TriggerFacility
from jobdrain.worker import Worker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueSystem:
    """Wired queue components sharing one event bus and lifecycle."""

    settings: SharedSettings
    events: EventDispatcher
    lifecycle: Lifecycle
    manager: QueueManager
    worker: Worker
    dispatcher: Dispatcher
    triggers: TriggerFacility
    scheduler: Scheduler


def build_queue_system(
    settings: SharedSettings,
    *,
    triggers: TriggerFacility | None = None,
    manager: QueueManager | None = None,
) -> QueueSystem:
    """Build the component graph. Drivers `postgres` and `memory` are registered."""
    events = EventDispatcher()
    lifecycle = Lifecycle()
    if manager is None:
        manager = QueueManager(settings)
        manager.add_provider("postgres", PostgresProvider)
        manager.add_provider(
            "memory", lambda: MemoryProvider(lease_seconds=settings.queue_lease_seconds)
        )
    if triggers is None:
        triggers = RedisTriggers.from_settings(settings)

    worker = Worker(manager, events)
    dispatcher = Dispatcher(manager, events, lifecycle)
    scheduler = Scheduler(manager, triggers, worker, lifecycle, settings)
    scheduler.register(events)

    logger.debug(
        "Built queue system default_driver=%s triggers=%s",
        manager.default_driver(),
        type(triggers).__name__,
    )
    return QueueSystem(
        settings=settings,
        events=events,
        lifecycle=lifecycle,
        manager=manager,
        worker=worker,
        dispatcher=dispatcher,
        triggers=triggers,
        scheduler=scheduler,
    )


_system: QueueSystem | None = None
_system_lock = threading.Lock()


def get_queue_system() -> QueueSystem:
    """Return the process-wide queue system, building it on first use."""
    global _system
    with _system_lock:
        if _system is None:
            from jobdrain.service.config import settings

            _system = build_queue_system(settings)
        return _system


def reset_queue_system() -> None:
    global _system
    with _system_lock:
        _system = None
