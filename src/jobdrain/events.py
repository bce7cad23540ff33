"""Queue lifecycle events and their dispatcher."""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from jobdrain.jobs import Job
from jobdrain.queue import LeasedJob, Provider

Listener = Callable[[Any], Any]


@dataclass(frozen=True)
class JobQueued:
    provider: Provider
    job: Job
    queue: str


@dataclass(frozen=True)
class RunStart:
    provider: Provider
    queue: str
    jobs: list[LeasedJob] = field(default_factory=list)


@dataclass(frozen=True)
class JobProcessing:
    provider: Provider
    job: LeasedJob


@dataclass(frozen=True)
class JobProcessed:
    provider: Provider
    job: LeasedJob


@dataclass(frozen=True)
class JobFailed:
    provider: Provider
    job: LeasedJob
    error: BaseException


@dataclass(frozen=True)
class RunComplete:
    provider: Provider
    queue: str
    jobs: list[LeasedJob] = field(default_factory=list)


class EventDispatcher:
    """Synchronous in-process event bus.

    Listeners run in registration order on the dispatching thread. A listener
    that raises stops delivery and the error reaches the caller.
    """

    def __init__(self) -> None:
        self._listeners: dict[type, list[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def listen(self, event_type: type, listener: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(listener)

    def listeners(self, event_type: type) -> list[Listener]:
        with self._lock:
            return list(self._listeners.get(event_type, ()))

    def dispatch(self, event: Any) -> None:
        for listener in self.listeners(type(event)):
            listener(event)
