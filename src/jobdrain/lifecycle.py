"""End-of-unit-of-work callbacks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any

logger = logging.getLogger(__name__)

Callbacks = list[Callable[[], Any]]


class Lifecycle:
    """Collects callbacks to run once the current request or task finishes.

    Every unit of work (an API request, an actor invocation, a CLI command)
    opens its own callback list with `begin` or `unit_of_work`, so one
    request's `terminate` never runs callbacks registered by another. The
    list lives in a context variable; contexts copied from it, such as the
    one `asyncio.to_thread` runs in, share the same list. Outside a unit of
    work the caller's context gets a list on first use.

    `terminate` drains the callbacks in registration order. Callbacks
    registered while draining run in the same pass. A failing callback is
    logged and does not prevent the rest from running.
    """

    def __init__(self) -> None:
        self._callbacks: ContextVar[Callbacks | None] = ContextVar(
            "jobdrain_lifecycle_callbacks", default=None
        )
        self._lock = threading.Lock()

    def begin(self) -> Token[Callbacks | None]:
        """Start a unit of work with an empty callback list."""
        return self._callbacks.set([])

    def end(self, token: Token[Callbacks | None]) -> None:
        """Restore the callback list that was current before `begin`."""
        self._callbacks.reset(token)

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        token = self.begin()
        try:
            yield
        finally:
            try:
                self.terminate()
            finally:
                self.end(token)

    def after_response(self, callback: Callable[[], Any]) -> None:
        callbacks = self._current()
        with self._lock:
            callbacks.append(callback)

    @property
    def pending(self) -> int:
        callbacks = self._current()
        with self._lock:
            return len(callbacks)

    def terminate(self) -> int:
        """Run every queued callback of the current unit of work. Returns how many ran."""
        callbacks = self._current()
        ran = 0
        while True:
            with self._lock:
                if not callbacks:
                    return ran
                callback = callbacks.pop(0)
            try:
                callback()
            except Exception:
                logger.exception("Deferred callback %r failed", callback)
            ran += 1

    def _current(self) -> Callbacks:
        callbacks = self._callbacks.get()
        if callbacks is None:
            callbacks = []
            self._callbacks.set(callbacks)
        return callbacks
