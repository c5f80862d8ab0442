"""Message broker abstractions for event-driven services.

A backend provides a ``Publisher`` and a ``Subscriber``; backends are
registered by name and built with ``new``. The ``memory`` backend delivers
messages synchronously in-process and suits tests and local development.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional


@dataclass
class Message:
    """A message published to or received from a broker."""

    id: str = ""
    topic: str = ""
    key: str = ""
    payload: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


Handler = Callable[[Message], None]
"""Processes a received message; returning normally acknowledges it."""


@dataclass
class SubscribeConfig:
    """Settings for one subscription. ``ack_timeout`` is in seconds."""

    group: str = ""
    concurrency: int = 1
    max_retries: int = 3
    ack_timeout: float = 30.0


@dataclass
class Config:
    """Settings for building a broker with ``new``."""

    backend: str = ""
    addr: str = ""
    options: dict[str, Any] = field(default_factory=dict)


class UnknownBackendError(ValueError):
    """No broker backend is registered under the requested name."""


class Publisher(ABC):
    """Sends messages to a broker."""

    @abstractmethod
    def publish(self, *msgs: Message) -> None:
        """Publish the given messages in order."""

    @abstractmethod
    def close(self) -> None:
        """Release the publisher's resources."""


class Subscriber(ABC):
    """Receives messages from a broker."""

    @abstractmethod
    def subscribe(
        self, topic: str, handler: Handler, config: Optional[SubscribeConfig] = None
    ) -> None:
        """Deliver messages on ``topic`` to ``handler``."""

    @abstractmethod
    def close(self) -> None:
        """Stop receiving and release resources."""


BrokerFactory = Callable[[Config], "tuple[Optional[Publisher], Optional[Subscriber]]"]

_registry: dict[str, BrokerFactory] = {}


def register(name: str, factory: BrokerFactory) -> None:
    """Register a backend factory under ``name``."""
    _registry[name] = factory


def unregister(name: str) -> None:
    """Remove the backend registered under ``name``, if any."""
    _registry.pop(name, None)


def registered_names() -> list[str]:
    """Return the registered backend names, sorted."""
    return sorted(_registry)


def new(config: Config) -> tuple[Optional[Publisher], Optional[Subscriber]]:
    """Build the publisher and subscriber of the backend ``config.backend``."""
    factory = _registry.get(config.backend)
    if factory is None:
        raise UnknownBackendError(
            f"broker: unknown backend {config.backend!r} "
            f"(registered: {registered_names()})"
        )
    return factory(config)


@dataclass(frozen=True)
class _Registration:
    group: str
    handler: Handler


class MemoryBroker(Publisher, Subscriber):
    """In-process broker that delivers messages synchronously.

    Every handler subscribed to a topic receives each message, except that
    within a non-empty consumer group only the first registered handler does.
    Handler errors are ignored.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[_Registration]] = {}

    def publish(self, *msgs: Message) -> None:
        for msg in msgs:
            with self._lock:
                registrations = list(self._handlers.get(msg.topic, ()))
            delivered: set[str] = set()
            for reg in registrations:
                if reg.group and reg.group in delivered:
                    continue
                try:
                    reg.handler(msg)
                except Exception:
                    pass
                if reg.group:
                    delivered.add(reg.group)

    def subscribe(
        self, topic: str, handler: Handler, config: Optional[SubscribeConfig] = None
    ) -> None:
        cfg = config or SubscribeConfig()
        with self._lock:
            self._handlers.setdefault(topic, []).append(_Registration(cfg.group, handler))

    def close(self) -> None:
        """Drop every subscription held by the broker."""
        with self._lock:
            self._handlers.clear()


def _memory_factory(_config: Config) -> tuple[Publisher, Subscriber]:
    broker = MemoryBroker()
    return broker, broker


register("memory", _memory_factory)