"""Trigger facilities: deferred one-shot calls keyed by fire time and args."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from redis import Redis

from jobdrain.settings import SharedSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Trigger:
    """One registered wake-up."""

    id: str
    fire_at: int
    args: tuple[Any, ...]

    @property
    def queue(self) -> str | None:
        return self.args[0] if self.args else None


def trigger_id(fire_at: int, args: tuple[Any, ...]) -> str:
    """Stable identity for (fire_at, args); equal pairs share an id."""
    return json.dumps({"fire_at": int(fire_at), "args": list(args)}, sort_keys=True)


def parse_trigger(member: str | bytes) -> Trigger:
    if isinstance(member, bytes):
        member = member.decode()
    data = json.loads(member)
    return Trigger(id=member, fire_at=int(data["fire_at"]), args=tuple(data["args"]))


def _matches(trigger: Trigger, filter_args: tuple[Any, ...]) -> bool:
    return trigger.args[: len(filter_args)] == filter_args


@runtime_checkable
class TriggerFacility(Protocol):
    """External one-shot timer used by the scheduler."""

    def register(self, fire_at: int, args: tuple[Any, ...]) -> str | None:
        """Register a trigger. Returns None when an identical one exists."""

    def scheduled(self, *filter_args: Any) -> list[Trigger]:
        """Triggers whose args start with filter_args."""

    def cancel(self, trigger_id: str) -> bool: ...

    def claim_due(self, now: int, limit: int = 100) -> list[Trigger]:
        """Remove and return triggers with fire_at <= now."""


class MemoryTriggers:
    """Process-local trigger facility."""

    def __init__(self) -> None:
        self._triggers: dict[str, Trigger] = {}
        self._lock = threading.Lock()

    def register(self, fire_at: int, args: tuple[Any, ...]) -> str | None:
        key = trigger_id(fire_at, args)
        with self._lock:
            if key in self._triggers:
                return None
            self._triggers[key] = Trigger(id=key, fire_at=int(fire_at), args=tuple(args))
        return key

    def scheduled(self, *filter_args: Any) -> list[Trigger]:
        with self._lock:
            triggers = list(self._triggers.values())
        matching = [trigger for trigger in triggers if _matches(trigger, filter_args)]
        return sorted(matching, key=lambda trigger: trigger.fire_at)

    def cancel(self, trigger_id: str) -> bool:
        with self._lock:
            return self._triggers.pop(trigger_id, None) is not None

    def claim_due(self, now: int, limit: int = 100) -> list[Trigger]:
        with self._lock:
            due = sorted(
                (trigger for trigger in self._triggers.values() if trigger.fire_at <= now),
                key=lambda trigger: trigger.fire_at,
            )[:limit]
            for trigger in due:
                del self._triggers[trigger.id]
        return due


def get_redis_connection(settings: SharedSettings) -> Redis:
    """Create a Redis connection from shared settings."""
    return Redis.from_url(
        settings.redis_url,
        socket_connect_timeout=settings.redis_socket_connect_timeout,
        socket_timeout=settings.redis_socket_timeout,
    )


class RedisTriggers:
    """Trigger facility stored in a Redis sorted set.

    Members are the JSON trigger ids and scores are fire times, so `ZADD NX`
    rejects duplicates and a due trigger belongs to whichever poller
    manages to `ZREM` it.
    """

    def __init__(self, redis: Redis, key: str = "jobdrain:triggers") -> None:
        self.redis = redis
        self.key = key

    @classmethod
    def from_settings(cls, settings: SharedSettings) -> RedisTriggers:
        return cls(get_redis_connection(settings), key=settings.trigger_key)

    def register(self, fire_at: int, args: tuple[Any, ...]) -> str | None:
        key = trigger_id(fire_at, args)
        added = self.redis.zadd(self.key, {key: int(fire_at)}, nx=True)
        return key if added else None

    def scheduled(self, *filter_args: Any) -> list[Trigger]:
        members = self.redis.zrange(self.key, 0, -1)
        triggers = [parse_trigger(member) for member in members]
        return [trigger for trigger in triggers if _matches(trigger, filter_args)]

    def cancel(self, trigger_id: str) -> bool:
        return bool(self.redis.zrem(self.key, trigger_id))

    def claim_due(self, now: int, limit: int = 100) -> list[Trigger]:
        members = self.redis.zrangebyscore(self.key, "-inf", now, start=0, num=limit)
        claimed: list[Trigger] = []
        for member in members:
            if self.redis.zrem(self.key, member):
                claimed.append(parse_trigger(member))
            else:
                logger.debug("Trigger %s already claimed by another poller", member)
        return claimed
