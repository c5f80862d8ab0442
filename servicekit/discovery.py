"""Service discovery: resolve a service name to network addresses.

``StaticResolver`` serves a fixed map for development and tests;
``ConsulResolver`` asks a Consul agent over its HTTP API.
"""

from __future__ import annotations

import json
import os
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence


class DiscoveryError(Exception):
    """Discovery failed or was misconfigured."""


class ServiceNotFoundError(LookupError):
    """The service has no known addresses."""

    def __init__(self, message: str = "discovery: service not found") -> None:
        super().__init__(message)

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "discovery: service not found"


class Resolver(ABC):
    """Finds service addresses by name."""

    @abstractmethod
    def resolve(self, service_name: str) -> list[str]:
        """Return ``host:port`` addresses or raise ``ServiceNotFoundError``."""


@dataclass
class Config:
    """Settings for building a resolver with ``new``.

    ``backend`` is required. ``addr`` is used by network backends,
    ``addresses`` by the static backend only.
    """

    backend: str = ""
    addr: str = ""
    addresses: dict[str, list[str]] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


ResolverFactory = Callable[[Config], Resolver]

_registry: dict[str, ResolverFactory] = {}


def register(name: str, factory: ResolverFactory) -> None:
    """Register a backend factory under ``name``."""
    _registry[name] = factory


def unregister(name: str) -> None:
    """Remove the backend registered under ``name``, if any."""
    _registry.pop(name, None)


def registered_names() -> list[str]:
    """Return the registered backend names, sorted."""
    return sorted(_registry)


def new(config: Config) -> Resolver:
    """Build a resolver for ``config.backend``."""
    if not config.backend:
        raise DiscoveryError(
            f"discovery: Backend is required (registered: {registered_names()})"
        )
    factory = _registry.get(config.backend)
    if factory is None:
        raise DiscoveryError(
            f"discovery: unknown backend {config.backend!r} "
            f"(registered: {registered_names()})"
        )
    return factory(config)


class StaticResolver(Resolver):
    """Resolver over a fixed address map, copied at construction."""

    def __init__(self, addresses: Optional[Mapping[str, Sequence[str]]] = None) -> None:
        self._addresses = {name: list(addrs) for name, addrs in (addresses or {}).items()}

    def resolve(self, service_name: str) -> list[str]:
        addrs = self._addresses.get(service_name)
        if not addrs:
            raise ServiceNotFoundError()
        return list(addrs)


def static(addresses: Optional[Mapping[str, Sequence[str]]]) -> StaticResolver:
    """Return a resolver with a fixed address map."""
    return StaticResolver(addresses)


def _consul_base_url(addr: str) -> str:
    if not addr:
        addr = os.environ.get("CONSUL_HTTP_ADDR") or "127.0.0.1:8500"
    if "://" in addr:
        return addr.rstrip("/")
    return "http://" + addr


class ConsulResolver(Resolver):
    """Resolver backed by the Consul health API.

    With ``only_healthy`` (the default) only instances passing their health
    checks are returned.
    """

    def __init__(self, addr: str = "", only_healthy: bool = True, timeout: float = 10.0) -> None:
        self.base_url = _consul_base_url(addr)
        self.only_healthy = only_healthy
        self.timeout = timeout

    def resolve(self, service_name: str) -> list[str]:
        url = f"{self.base_url}/v1/health/service/{urllib.parse.quote(service_name, safe='')}"
        if self.only_healthy:
            url += "?passing=1"
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as response:
                entries = json.load(response)
        except (OSError, ValueError) as exc:
            raise DiscoveryError(
                f"discovery: consul resolve {service_name!r}: {exc}"
            ) from exc
        if not entries:
            raise ServiceNotFoundError()

        addrs = []
        for entry in entries:
            service = entry.get("Service") or {}
            address = service.get("Address") or (entry.get("Node") or {}).get("Address", "")
            addrs.append(f"{address}:{service.get('Port', 0)}")
        return addrs


def consul(addr: str = "", only_healthy: bool = True) -> ConsulResolver:
    """Return a resolver backed by Consul at ``addr``."""
    return ConsulResolver(addr, only_healthy)


def _static_factory(config: Config) -> Resolver:
    return static(config.addresses)


def _consul_factory(config: Config) -> Resolver:
    return consul(config.addr)


register("static", _static_factory)
register("consul", _consul_factory)