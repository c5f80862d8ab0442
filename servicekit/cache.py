"""Cache abstraction with in-memory and Redis backends.

``MemoryCache`` suits development and tests; ``RedisCache`` suits production.
``get_or_load`` implements cache-aside with per-key deduplication of loads.
TTLs are in seconds; zero or less means no expiry.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import redis


class CacheNotFoundError(LookupError):
    """The key is not in the cache."""

    def __init__(self, message: str = "cache: key not found") -> None:
        super().__init__(message)

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "cache: key not found"


class UnknownBackendError(ValueError):
    """No cache backend is registered under the requested name."""


class Cache(ABC):
    """A byte-valued key/value cache."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the value for ``key`` or raise ``CacheNotFoundError``."""

    @abstractmethod
    def set(self, key: str, value: bytes, ttl: float = 0.0) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds (0: no expiry)."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Tell whether ``key`` holds a live value."""


@dataclass
class Config:
    """Settings for building a cache with ``new``."""

    backend: str = ""
    addr: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    ttl: float = 0.0


CacheFactory = Callable[[Config], Cache]

_registry: dict[str, CacheFactory] = {}


def register(name: str, factory: CacheFactory) -> None:
    """Register a backend factory under ``name``."""
    _registry[name] = factory


def unregister(name: str) -> None:
    """Remove the backend registered under ``name``, if any."""
    _registry.pop(name, None)


def registered_names() -> list[str]:
    """Return the registered backend names, sorted."""
    return sorted(_registry)


def new(config: Config) -> Cache:
    """Build a cache for ``config.backend`` (``"memory"`` when empty)."""
    backend = config.backend or "memory"
    factory = _registry.get(backend)
    if factory is None:
        raise UnknownBackendError(
            f"cache: unknown backend {backend!r} (registered: {registered_names()})"
        )
    return factory(config)


class _Call:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Any = None
        self.error: Optional[BaseException] = None


class _SingleFlight:
    """Collapses concurrent calls for the same key into one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, _Call] = {}

    def do(self, key: str, fn: Callable[[], Any]) -> Any:
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if leader:
                call = _Call()
                self._calls[key] = call
        if leader:
            try:
                call.value = fn()
            except BaseException as exc:
                call.error = exc
            finally:
                with self._lock:
                    del self._calls[key]
                call.done.set()
        else:
            call.done.wait()
        if call.error is not None:
            raise call.error
        return call.value


_group = _SingleFlight()


def get_or_load(
    cache: Cache, key: str, ttl: float, loader: Callable[[], bytes]
) -> bytes:
    """Return the cached value, or load, store and return it on a miss.

    Concurrent misses for one key share a single ``loader`` call. A failure
    to store the loaded value is ignored.
    """
    try:
        return cache.get(key)
    except CacheNotFoundError:
        pass

    def load() -> bytes:
        data = loader()
        try:
            cache.set(key, data, ttl)
        except Exception:
            pass
        return data

    return _group.do(key, load)


@dataclass
class _Entry:
    data: bytes
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class MemoryCache(Cache):
    """Thread-safe in-process cache for development and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def get(self, key: str) -> bytes:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                raise CacheNotFoundError()
            if entry.expired(time.monotonic()):
                del self._entries[key]
                raise CacheNotFoundError()
            return entry.data

    def set(self, key: str, value: bytes, ttl: float = 0.0) -> None:
        expires_at = time.monotonic() + ttl if ttl > 0 else None
        entry = _Entry(bytes(value), expires_at)
        with self._lock:
            self._entries[key] = entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
        return entry is not None and not entry.expired(time.monotonic())


class RedisCache(Cache):
    """Cache backed by a Redis client (``redis.Redis`` or compatible)."""

    def __init__(self, client: Any) -> None:
        self.client = client

    def get(self, key: str) -> bytes:
        value = self.client.get(key)
        if value is None:
            raise CacheNotFoundError()
        return bytes(value)

    def set(self, key: str, value: bytes, ttl: float = 0.0) -> None:
        if ttl > 0:
            self.client.set(key, value, px=max(1, round(ttl * 1000)))
        else:
            self.client.set(key, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def exists(self, key: str) -> bool:
        return self.client.exists(key) > 0


def _redis_client(addr: str) -> redis.Redis:
    if "://" in addr:
        return redis.Redis.from_url(addr)
    host, sep, port = (addr or "localhost:6379").rpartition(":")
    if not sep:
        host, port = port, "6379"
    return redis.Redis(host=host.strip("[]") or "localhost", port=int(port or 6379))


def _memory_factory(_config: Config) -> Cache:
    return MemoryCache()


def _redis_factory(config: Config) -> Cache:
    return RedisCache(_redis_client(config.addr))


register("memory", _memory_factory)
register("redis", _redis_factory)