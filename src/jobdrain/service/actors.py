"""Dramatiq actor that runs one drain batch per fired trigger."""

from __future__ import annotations

import logging

import dramatiq
from dramatiq.brokers.redis import RedisBroker

from jobdrain.logging import configure_logging
from jobdrain.service.config import settings
from jobdrain.service.container import get_queue_system

logger = logging.getLogger(__name__)
configure_logging(settings.log_level)

DRAMATIQ_BROKER = RedisBroker(url=settings.redis_url)
dramatiq.set_broker(DRAMATIQ_BROKER)


def _drain(queue: str, scheduled_at: int | None) -> int:
    system = get_queue_system()
    # Exiting runs the scheduler flush for jobs dispatched by handlers in this batch.
    with system.lifecycle.unit_of_work():
        return system.scheduler.run(queue, scheduled_at)


@dramatiq.actor(queue_name=settings.dramatiq_queue_name, max_retries=0)
def drain_queue(queue: str, scheduled_at: int | None = None) -> None:
    """Entry-point actor for fired triggers."""
    succeeded = _drain(queue, scheduled_at)
    logger.info(
        "Drained queue=%s scheduled_at=%s succeeded=%s", queue, scheduled_at, succeeded
    )
