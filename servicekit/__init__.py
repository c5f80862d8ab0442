"""Building blocks for services: circuit breaker, cache, service discovery and event-driven messaging."""

__version__ = "0.1.0"

__all__ = ["breaker", "cache", "discovery", "eda"]