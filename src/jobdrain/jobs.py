"""Job types and their storage payload encoding."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, PrivateAttr, ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python

from jobdrain.exceptions import JobSerializationError

DEFAULT_QUEUE = "default"

_ROUTING_FIELDS = ("queue", "delay", "tries", "timeout", "retry_after", "timeout_at")

FailureCallback = Callable[[BaseException], Any]


class ShouldQueue:
    """Marker for jobs that must be persisted and run by a worker."""


class Job(BaseModel):
    """Base class for dispatchable work.

    Subclasses declare their arguments as model fields and implement
    `handle`. Routing and retry policy fields are copied onto the stored
    record when the job is pushed, so class-level defaults act as the
    handler's policy. A job that does not also inherit `ShouldQueue` is run
    synchronously by the dispatcher.
    """

    model_config = ConfigDict(validate_assignment=True)

    queue: str = DEFAULT_QUEUE
    delay: float | datetime | None = None
    tries: int | None = None
    timeout: float | None = None
    retry_after: float | None = None
    timeout_at: datetime | None = None

    _failure_callbacks: list[FailureCallback] = PrivateAttr(default_factory=list)

    def handle(self) -> Any:
        """Perform the work."""
        raise NotImplementedError(f"{type(self).__name__} must implement handle()")

    def failed(self, error: BaseException) -> None:
        """Final-failure hook; runs callbacks registered with `catch`."""
        for callback in self._failure_callbacks:
            callback(error)

    def catch(self, callback: FailureCallback) -> Self:
        """Register a callback invoked once the job has failed for good."""
        self._failure_callbacks.append(callback)
        return self

    def on_queue(self, queue: str) -> Self:
        self.queue = queue
        return self

    def with_delay(self, delay: float | timedelta | datetime) -> Self:
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        self.delay = delay
        return self

    @property
    def max_tries(self) -> int:
        return max(1, self.tries or 1)

    @property
    def display_name(self) -> str:
        return type(self).__name__

    def available_at(self, now: datetime) -> datetime:
        """Return the first instant the job may be claimed."""
        if self.delay is None:
            return now
        if isinstance(self.delay, datetime):
            if self.delay.tzinfo is None:
                return self.delay.replace(tzinfo=timezone.utc)
            return self.delay
        return now + timedelta(seconds=max(0.0, self.delay))

    def expired(self, now: datetime) -> bool:
        """Whether the retry window set by `timeout_at` has closed."""
        if self.timeout_at is None:
            return False
        deadline = self.timeout_at
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        return now >= deadline


class CallableJob(Job, ShouldQueue):
    """Inline job wrapping a plain callable and its arguments."""

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    fn: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = {}

    def handle(self) -> Any:
        return self.fn(*self.args, **self.kwargs)

    @property
    def display_name(self) -> str:
        return getattr(self.fn, "__qualname__", repr(self.fn))


def as_job(work: Job | Callable[..., Any]) -> Job:
    """Wrap bare callables so every dispatch path sees a `Job`."""
    if isinstance(work, Job):
        return work
    if callable(work):
        return CallableJob(fn=work)
    raise TypeError(f"Cannot dispatch {type(work).__name__}: expected a Job or callable")


def callable_ref(obj: Any) -> str:
    """Return the importable `module:qualname` reference for obj."""
    module = getattr(obj, "__module__", None)
    qualname = getattr(obj, "__qualname__", None)
    if not module or not qualname or "<" in qualname:
        raise JobSerializationError(
            f"Cannot store {obj!r}: only module-level callables can be referenced"
        )
    return f"{module}:{qualname}"


def import_ref(ref: str) -> Any:
    """Resolve a `module:qualname` reference."""
    module_name, _, qualname = ref.partition(":")
    if not module_name or not qualname:
        raise JobSerializationError(f"Malformed callable reference: {ref!r}")
    try:
        target: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as exc:
        raise JobSerializationError(f"Cannot resolve callable reference {ref!r}") from exc
    return target


def job_type(job: Job) -> str:
    """Human-readable type name stored next to the payload."""
    if isinstance(job, CallableJob):
        return job.display_name
    cls = type(job)
    return f"{cls.__module__}:{cls.__qualname__}"


def encode_job(job: Job) -> dict[str, Any]:
    """Encode a job as a JSON-compatible tagged payload."""
    try:
        if isinstance(job, CallableJob):
            routing = job.model_dump(mode="json", include=set(_ROUTING_FIELDS))
            return {
                "kind": "inline",
                "ref": callable_ref(job.fn),
                "args": to_jsonable_python(list(job.args)),
                "kwargs": to_jsonable_python(dict(job.kwargs)),
                "catch": [callable_ref(cb) for cb in job._failure_callbacks],
                **routing,
            }
        return {
            "kind": "typed",
            "type": callable_ref(type(job)),
            "data": job.model_dump(mode="json"),
        }
    except PydanticSerializationError as exc:
        raise JobSerializationError(f"Cannot encode {job.display_name}: {exc}") from exc


def decode_job(payload: dict[str, Any]) -> Job:
    """Rebuild a job from a payload produced by `encode_job`."""
    kind = payload.get("kind")
    if kind == "inline":
        routing = {key: payload[key] for key in _ROUTING_FIELDS if key in payload}
        try:
            job: Job = CallableJob(
                fn=import_ref(payload["ref"]),
                args=tuple(payload.get("args", [])),
                kwargs=payload.get("kwargs", {}),
                **routing,
            )
        except (KeyError, ValidationError) as exc:
            raise JobSerializationError(f"Invalid inline job payload: {exc}") from exc
        for ref in payload.get("catch", []):
            job.catch(import_ref(ref))
        return job

    if kind == "typed":
        cls = import_ref(str(payload.get("type", "")))
        if not (isinstance(cls, type) and issubclass(cls, Job)):
            raise JobSerializationError(f"{payload.get('type')!r} is not a Job class")
        try:
            return cls.model_validate(payload.get("data", {}))
        except ValidationError as exc:
            raise JobSerializationError(f"Invalid payload for {cls.__name__}: {exc}") from exc

    raise JobSerializationError(f"Unknown job payload kind: {kind!r}")
