"""Shared fixtures for queue unit tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar

import pytest

from jobdrain.dispatcher import Dispatcher
from jobdrain.events import EventDispatcher
from jobdrain.jobs import Job, ShouldQueue
from jobdrain.lifecycle import Lifecycle
from jobdrain.manager import QueueManager
from jobdrain.providers.memory import MemoryProvider
from jobdrain.scheduler import Scheduler
from jobdrain.settings import SharedSettings
from jobdrain.triggers import MemoryTriggers
from jobdrain.worker import Worker


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingJob(Job, ShouldQueue):
    """Queued job that appends its label to a shared list."""

    calls: ClassVar[list[str]] = []

    label: str
    fail: bool = False

    def handle(self) -> Any:
        RecordingJob.calls.append(self.label)
        if self.fail:
            raise RuntimeError(f"boom {self.label}")
        return self.label


@pytest.fixture(autouse=True)
def _reset_recorded_calls() -> None:
    RecordingJob.calls.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_settings() -> SharedSettings:
    return SharedSettings(queue_default="memory")


@pytest.fixture
def provider(clock: FakeClock) -> MemoryProvider:
    return MemoryProvider(lease_seconds=60, clock=clock)


@pytest.fixture
def events() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture
def lifecycle() -> Lifecycle:
    return Lifecycle()


@pytest.fixture
def manager(queue_settings: SharedSettings, provider: MemoryProvider) -> QueueManager:
    manager = QueueManager(queue_settings)
    manager.add_provider("memory", provider)
    return manager


@pytest.fixture
def triggers() -> MemoryTriggers:
    return MemoryTriggers()


@pytest.fixture
def worker(manager: QueueManager, events: EventDispatcher, clock: FakeClock) -> Worker:
    return Worker(manager, events, clock=clock)


@pytest.fixture
def dispatcher(
    manager: QueueManager, events: EventDispatcher, lifecycle: Lifecycle
) -> Dispatcher:
    return Dispatcher(manager, events, lifecycle)


@pytest.fixture
def scheduler(
    manager: QueueManager,
    triggers: MemoryTriggers,
    worker: Worker,
    lifecycle: Lifecycle,
    queue_settings: SharedSettings,
    events: EventDispatcher,
    clock: FakeClock,
) -> Scheduler:
    scheduler = Scheduler(
        manager, triggers, worker, lifecycle, queue_settings, clock=clock
    )
    scheduler.register(events)
    return scheduler
