"""Named provider registry."""

from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Callable
from typing import Any

from jobdrain.exceptions import InvalidConfiguration, UnknownProvider
from jobdrain.queue import Provider
from jobdrain.settings import SharedSettings

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., Any]


def _accepts_settings(factory: Callable[..., Any]) -> bool:
    """Whether factory takes exactly one positional argument."""
    try:
        signature = inspect.signature(factory)
    except (TypeError, ValueError):
        return False
    positional = [
        param
        for param in signature.parameters.values()
        if param.kind
        in {inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD}
        and param.default is inspect.Parameter.empty
    ]
    return len(positional) == 1


def _is_provider_class(value: Any) -> bool:
    return isinstance(value, type) and all(
        callable(getattr(value, name, None))
        for name in ("push", "pop", "pending_count", "in_queue")
    )


class QueueManager:
    """Resolve driver names to live providers.

    Each registered name maps to a provider instance, a provider class or a
    factory. Classes and factories are built on first use and the resulting
    connection is reused for every later lookup of the same name.
    """

    def __init__(self, settings: SharedSettings) -> None:
        self.settings = settings
        self._registry: dict[str, Provider | ProviderFactory] = {}
        self._connections: dict[str, Provider] = {}
        self._lock = threading.RLock()

    def add_provider(self, name: str, provider: Provider | ProviderFactory) -> None:
        """Register a provider instance, class or factory under name."""
        if isinstance(provider, Provider) and not isinstance(provider, type):
            value: Provider | ProviderFactory = provider
        elif isinstance(provider, type):
            if not _is_provider_class(provider):
                raise InvalidConfiguration(
                    f"Provider class {provider.__name__} does not implement the provider contract"
                )
            value = provider
        elif callable(provider):
            value = provider
        else:
            raise InvalidConfiguration(
                f"Provider {name!r} must be a provider, provider class or factory, "
                f"got {type(provider).__name__}"
            )

        with self._lock:
            self._registry[name] = value
            self._connections.pop(name, None)
        logger.debug("Registered queue provider name=%s", name)

    def default_driver(self) -> str:
        return self.settings.default_provider_name

    def providers(self) -> list[str]:
        with self._lock:
            return list(self._registry)

    def get_provider(self, name: str | None = None) -> Provider:
        """Return the live provider registered under name (default driver if None)."""
        name = name or self.default_driver()
        with self._lock:
            connection = self._connections.get(name)
            if connection is not None:
                return connection
            connection = self._resolve(name)
            self._connections[name] = connection
            return connection

    def _resolve(self, name: str) -> Provider:
        if name not in self._registry:
            raise UnknownProvider(f"No queue provider registered for {name!r}")

        registered = self._registry[name]
        if isinstance(registered, Provider) and not isinstance(registered, type):
            return registered

        if _accepts_settings(registered):
            instance = registered(self.settings)
        else:
            instance = registered()

        if not isinstance(instance, Provider):
            raise UnknownProvider(
                f"Factory for {name!r} returned {type(instance).__name__}, not a provider"
            )
        return instance
