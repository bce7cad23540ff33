"""Unit tests for deferred callbacks and the event bus."""

import logging
import threading

import pytest

from jobdrain.events import EventDispatcher, JobQueued, RunComplete
from jobdrain.lifecycle import Lifecycle


def test_terminate_runs_callbacks_once_in_order() -> None:
    """Callbacks should drain in registration order and not run twice."""
    lifecycle = Lifecycle()
    calls: list[str] = []
    lifecycle.after_response(lambda: calls.append("a"))
    lifecycle.after_response(lambda: calls.append("b"))

    assert lifecycle.pending == 2
    assert lifecycle.terminate() == 2
    assert lifecycle.terminate() == 0
    assert calls == ["a", "b"]


def test_callbacks_added_while_draining_run_in_same_pass() -> None:
    """A callback that registers another should see it run before terminate returns."""
    lifecycle = Lifecycle()
    calls: list[str] = []

    def _outer() -> None:
        calls.append("outer")
        lifecycle.after_response(lambda: calls.append("inner"))

    lifecycle.after_response(_outer)

    assert lifecycle.terminate() == 2
    assert calls == ["outer", "inner"]


def test_failing_callback_is_logged_and_rest_still_run(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """One failing callback should not block the others."""
    lifecycle = Lifecycle()
    calls: list[str] = []

    def _explode() -> None:
        raise RuntimeError("callback failed")

    lifecycle.after_response(_explode)
    lifecycle.after_response(lambda: calls.append("after"))

    with caplog.at_level(logging.ERROR, logger="jobdrain.lifecycle"):
        lifecycle.terminate()

    assert calls == ["after"]
    assert "Deferred callback" in caplog.text


def test_unit_of_work_runs_only_its_own_callbacks() -> None:
    """Terminating one unit of work should leave callbacks of the enclosing one queued."""
    lifecycle = Lifecycle()
    calls: list[str] = []
    lifecycle.after_response(lambda: calls.append("outer"))

    with lifecycle.unit_of_work():
        lifecycle.after_response(lambda: calls.append("inner"))
        assert lifecycle.pending == 1

    assert calls == ["inner"]
    assert lifecycle.pending == 1
    assert lifecycle.terminate() == 1
    assert calls == ["inner", "outer"]


def test_concurrent_threads_keep_separate_callbacks() -> None:
    """A thread finishing its work should not run callbacks another thread deferred."""
    lifecycle = Lifecycle()
    calls: list[str] = []
    registered = threading.Event()
    release = threading.Event()

    def _slow_request() -> None:
        with lifecycle.unit_of_work():
            lifecycle.after_response(lambda: calls.append("slow"))
            registered.set()
            release.wait(timeout=5)

    thread = threading.Thread(target=_slow_request)
    thread.start()
    registered.wait(timeout=5)

    with lifecycle.unit_of_work():
        lifecycle.after_response(lambda: calls.append("fast"))

    assert calls == ["fast"]
    release.set()
    thread.join()
    assert calls == ["fast", "slow"]


def test_event_dispatcher_routes_by_type_in_registration_order() -> None:
    """Listeners should only see their event type, in the order they subscribed."""
    events = EventDispatcher()
    seen: list[str] = []
    events.listen(RunComplete, lambda event: seen.append(f"first:{event.queue}"))
    events.listen(RunComplete, lambda event: seen.append(f"second:{event.queue}"))
    events.listen(JobQueued, lambda event: seen.append("queued"))

    events.dispatch(RunComplete(provider=None, queue="q"))  # type: ignore[arg-type]

    assert seen == ["first:q", "second:q"]


def test_event_dispatcher_propagates_listener_errors() -> None:
    """A raising listener should surface to the dispatcher's caller."""
    events = EventDispatcher()

    def _fail(event: object) -> None:
        raise ValueError("listener broke")

    events.listen(RunComplete, _fail)

    with pytest.raises(ValueError, match="listener broke"):
        events.dispatch(RunComplete(provider=None, queue="q"))  # type: ignore[arg-type]
